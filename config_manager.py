import os
import re
from configparser import ConfigParser, NoOptionError, NoSectionError
from typing import Dict, Any, Optional, List

from base_classes import ConfigError

THEMES = ('dark', 'light', 'cyberpunk')

DEFAULT_USER_CONFIG = """\
[DEFAULT]
default_model = openai/gpt-3.5-turbo
user_db = ~/.local/share/memex-threads/conversations.db
theme = cyberpunk

[LOG]
active = false
"""

# Environment variable -> (section, option)
ENV_OVERRIDES = {
    'OPENAI_API_KEY': ('OpenAI', 'api_key'),
    'MEMEX_DB_PATH': ('DEFAULT', 'user_db'),
    'MEMEX_LOG_LEVEL': ('LOG', 'verbosity'),
}


class ConfigManager:
    """
    Immutable configuration manager - reads config files once and provides
    session-specific configuration objects
    """

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        self.base_config = self._load_configs(config_file)
        self._apply_environment(os.environ if environ is None else environ)

    def _load_configs(self, config_file: Optional[str] = None) -> ConfigParser:
        """
        Load and merge configuration files
        :param config_file: optional path to a custom config file
        :return: ConfigParser object
        """
        default_config_file = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.ini')
        if not os.path.exists(default_config_file):
            raise ConfigError(f'Could not find the default config file at {default_config_file}')

        config = ConfigParser()
        config.read(default_config_file)

        # Get the user config location from the default config file and check and read it
        if 'user_config' in config['DEFAULT']:
            user_config = self.resolve_file_path(config['DEFAULT']['user_config'])
            if user_config is not None:
                config.read(user_config)

        # If a custom config file was specified, check and read it
        if config_file is not None:
            file = self.resolve_file_path(config_file)
            if file is None:
                raise ConfigError(f'Could not find the custom config file at {config_file}')
            config.read(file)

        return config

    def _apply_environment(self, environ) -> None:
        for var, (section, option) in ENV_OVERRIDES.items():
            value = environ.get(var)
            if not value:
                continue
            if section != 'DEFAULT' and not self.base_config.has_section(section):
                self.base_config.add_section(section)
            self.base_config.set(section, option, value)

    def create_session_config(self, overrides: Optional[Dict[str, Any]] = None) -> 'SessionConfig':
        """Create a mutable session-specific config"""
        session_config = SessionConfig(self.base_config, overrides or {})
        session_config.validate()
        return session_config

    def list_models(self) -> List[str]:
        models = self._get_base_option('DEFAULT', 'models', fallback=[])
        if isinstance(models, str):
            models = [models]
        return list(models)

    def _get_base_option(self, section: str, option: str, fallback: Any = None) -> Any:
        """Get an option from the base configuration"""
        try:
            return self.fix_values(self.base_config.get(section, option))
        except (NoSectionError, NoOptionError):
            return fallback

    @staticmethod
    def fix_values(value: Any) -> Any:
        """Fix some values due to how they are stored and retrieved with ConfigParser"""
        if isinstance(value, str):
            value = value.strip()

            # Handle path expansion only for strings that clearly look like paths
            if (value.startswith(('~', './', '/', '\\')) and
                    not value.startswith(('{', '[', '"', "'"))):
                expanded = os.path.expanduser(value)
                if expanded != value:
                    value = expanded

            # Handle list-like strings
            if value.startswith('[') and value.endswith(']'):
                return [ConfigManager.fix_values(item.strip()) for item in re.findall(r'[^,\s]+', value[1:-1])]

            # Check for integer values
            if value.isdigit():
                return int(value)

            # Check for float values
            if re.fullmatch(r'\d+\.\d*|\.\d+', value):
                return float(value)

            # Handle boolean values
            lower_value = value.lower()
            if lower_value in ('true', 'yes'):
                return True
            if lower_value in ('false', 'no'):
                return False

            # Remove quotes if present
            if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                return value[1:-1]

        return value

    @staticmethod
    def resolve_file_path(file_name: str, base_dir: Optional[str] = None) -> Optional[str]:
        """
        Works out the path to a file based on the filename and optional base directory
        :param file_name: name of the file to resolve the path to
        :param base_dir: optional base directory to resolve the path from
        :return: absolute path to the file or None
        """
        if file_name is None:
            return None

        if base_dir is None:
            base_dir = os.getcwd()
        base_dir = os.path.expanduser(base_dir)
        if not os.path.isdir(base_dir):
            return None

        file_name = os.path.expanduser(file_name)
        path = file_name if os.path.isabs(file_name) else os.path.join(base_dir, file_name)
        return path if os.path.isfile(path) else None


def init_config(path: str, overwrite: bool = False) -> bool:
    """Write a starter user config; returns False when one already exists."""
    path = os.path.expanduser(path)
    if os.path.exists(path) and not overwrite:
        return False
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(DEFAULT_USER_CONFIG)
    return True


class SessionConfig:
    """
    Mutable configuration for a specific session.
    Runtime overrides (from the CLI, :set and :model) shadow the files.
    """

    def __init__(self, base_config: ConfigParser, overrides: Optional[Dict[str, Any]] = None):
        self.base_config = base_config
        self.overrides: Dict[str, Dict[str, Any]] = {}
        for key, value in (overrides or {}).items():
            self.set_option('DEFAULT', key, value)

    def get_option(self, section: str, option: str, fallback: Any = None) -> Any:
        """Get an option; session overrides win over the loaded files"""
        section_overrides = self.overrides.get(section, {})
        if option in section_overrides:
            return section_overrides[option]
        try:
            return ConfigManager.fix_values(self.base_config.get(section, option))
        except (NoSectionError, NoOptionError):
            return fallback

    def set_option(self, section: str, option: str, value: Any) -> None:
        self.overrides.setdefault(section, {})[option] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """All options visible in a section (DEFAULT values included, as configparser does)"""
        if section == 'DEFAULT':
            items = dict(self.base_config['DEFAULT'])
        elif self.base_config.has_section(section):
            items = dict(self.base_config[section])
        else:
            items = dict(self.base_config['DEFAULT'])
        params = {k: ConfigManager.fix_values(v) for k, v in items.items()}
        params.update(self.overrides.get('DEFAULT', {}))
        params.update(self.overrides.get(section, {}))
        return params

    @property
    def model(self) -> str:
        return str(self.get_option('DEFAULT', 'default_model', fallback=''))

    @property
    def temperature(self) -> float:
        return float(self.get_option('DEFAULT', 'temperature', fallback=0.7))

    @property
    def max_tokens(self) -> int:
        return int(self.get_option('DEFAULT', 'max_tokens', fallback=4096))

    @property
    def theme(self) -> str:
        return str(self.get_option('DEFAULT', 'theme', fallback='dark'))

    def validate(self) -> None:
        """Raise ConfigError when a loaded value is out of range"""
        try:
            temperature = self.temperature
            max_tokens = self.max_tokens
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric configuration value: {e}") from e
        if not 0 <= temperature <= 2:
            raise ConfigError("temperature must be between 0 and 2")
        if max_tokens < 1:
            raise ConfigError("max_tokens must be greater than 0")
        if self.theme not in THEMES:
            raise ConfigError(f"Unknown theme '{self.theme}'. Available: {', '.join(THEMES)}")
        if not self.model:
            raise ConfigError("default_model is not set")
