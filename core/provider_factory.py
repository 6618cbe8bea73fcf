from __future__ import annotations

from typing import Any, Dict, Optional

from base_classes import APIProvider, ConfigError
from providers.mock_provider import MockProvider
from providers.openai_provider import OpenAIProvider

PROVIDERS = {
    'openai': OpenAIProvider,
    'openrouter': OpenAIProvider,
    'mock': MockProvider,
}


class ProviderFactory:
    """
    Centralized provider construction.

    Provider params are composed from DEFAULT + the provider's own section +
    explicit overrides, so each provider only sees one flat dict.
    """

    @staticmethod
    def provider_params(config, provider_name: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = config.get_section(provider_name)
        params.update(overrides or {})
        # Identify as this provider
        params['provider'] = provider_name
        return params

    @classmethod
    def build(cls, config, logger=None, provider_name: Optional[str] = None,
              overrides: Optional[Dict[str, Any]] = None) -> APIProvider:
        name = provider_name or str(config.get_option('DEFAULT', 'provider', fallback='OpenAI'))
        provider_cls = PROVIDERS.get(name.lower())
        if provider_cls is None:
            raise ConfigError(f"Provider '{name}' not found. Available: {', '.join(sorted(PROVIDERS))}")
        params = cls.provider_params(config, name, overrides)
        if logger:
            logger.settings({'provider': name, 'model': params.get('default_model')})
        return provider_cls(params, logger=logger)
