from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config_manager import ConfigManager, SessionConfig
from core.coordinator import SessionCoordinator
from core.export_processor import ExportWriter
from core.provider_factory import ProviderFactory
from core.thread_store import ThreadStore
from base_classes import APIProvider
from utils.logging_utils import LoggingHandler

# CLI option name -> (section, option) in the session config
OVERRIDE_KEYS = {
    'model': ('DEFAULT', 'default_model'),
    'db': ('DEFAULT', 'user_db'),
    'provider': ('DEFAULT', 'provider'),
    'theme': ('DEFAULT', 'theme'),
    'export_dir': ('DEFAULT', 'export_dir'),
}


@dataclass
class SessionContext:
    """Everything one running session shares: config, logger, store, provider and exporter."""

    config: SessionConfig
    logger: LoggingHandler
    store: ThreadStore
    provider: APIProvider
    exporter: ExportWriter

    def coordinator(self, display: Any) -> SessionCoordinator:
        return SessionCoordinator(
            store=self.store,
            provider=self.provider,
            display=display,
            config=self.config,
            logger=self.logger,
            exporter=self.exporter,
        )

    def close(self) -> None:
        self.store.close()
        self.logger.log('session_end', component='session', aspect='settings', data={
            'model': self.config.model,
        })


class SessionBuilder:
    """
    Builds fully configured sessions.
    """

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager

    def build(self, debug: bool = False, api_provider: Optional[APIProvider] = None, **options) -> SessionContext:
        overrides: Dict[str, Any] = {}
        section_overrides: Dict[str, Dict[str, Any]] = {}
        for key, value in options.items():
            if value is None:
                continue
            section, option = OVERRIDE_KEYS.get(key, ('DEFAULT', key))
            if section == 'DEFAULT':
                overrides[option] = value
            else:
                section_overrides.setdefault(section, {})[option] = value

        session_config = self.config_manager.create_session_config(overrides)
        for section, values in section_overrides.items():
            for option, value in values.items():
                session_config.set_option(section, option, value)

        logger = LoggingHandler(session_config, debug=debug)
        logger.settings({
            'provider': session_config.get_option('DEFAULT', 'provider'),
            'model': session_config.model,
            'db': session_config.get_option('DEFAULT', 'user_db'),
            'temperature': session_config.temperature,
            'max_tokens': session_config.max_tokens,
        })

        store = ThreadStore.open(
            str(session_config.get_option('DEFAULT', 'user_db')),
            logger=logger,
            enable_wal=bool(session_config.get_option('DEFAULT', 'enable_wal', fallback=False)),
        )
        provider = api_provider or ProviderFactory.build(session_config, logger=logger)
        exporter = ExportWriter(
            str(session_config.get_option('DEFAULT', 'export_dir', fallback='exports')),
            logger=logger,
        )
        return SessionContext(
            config=session_config,
            logger=logger,
            store=store,
            provider=provider,
            exporter=exporter,
        )
