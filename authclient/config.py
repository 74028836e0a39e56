"""
Configuration Management for the authenticated API client.

This module handles client configuration including the API base URL, request
timeout, session storage and logging, with support for configuration files
and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    'server': {
        'base_url': 'http://localhost:5000/v1',
        'timeout': 120.0,
    },
    'auth': {
        'unauthenticated_route': '/',
        'identity_field': 'userId',
        'token_storage': 'secure',
        'service_name': 'authclient',
    },
    'ui': {
        'show_notifications': True,
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
        'audit_file': None,
    },
}

ENV_MAPPINGS = {
    'AUTHCLIENT_BASE_URL': ('server', 'base_url'),
    'AUTHCLIENT_TIMEOUT': ('server', 'timeout'),
    'AUTHCLIENT_UNAUTHENTICATED_ROUTE': ('auth', 'unauthenticated_route'),
    'AUTHCLIENT_IDENTITY_FIELD': ('auth', 'identity_field'),
    'AUTHCLIENT_TOKEN_STORAGE': ('auth', 'token_storage'),
    'AUTHCLIENT_SHOW_NOTIFICATIONS': ('ui', 'show_notifications'),
    'AUTHCLIENT_LOG_LEVEL': ('logging', 'level'),
    'AUTHCLIENT_LOG_FORMAT': ('logging', 'format'),
    'AUTHCLIENT_LOG_FILE': ('logging', 'file'),
}

TOKEN_STORAGE_BACKENDS = ('secure', 'memory')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
LOG_FORMATS = ('standard', 'json', 'detailed')


class ClientConfiguration:
    """
    Configuration manager for the authenticated API client.

    Supports configuration from:
    1. Overrides, e.g. command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating it on first use."""
        config_dir = Path.home() / '.authclient'
        user_config_path = config_dir / 'client.conf'

        if not user_config_path.exists():
            try:
                config_dir.mkdir(parents=True, exist_ok=True)
                self._create_default_config(str(user_config_path))
            except OSError as e:
                logger.warning(f"Could not create default configuration: {e}")

        return str(user_config_path)

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        default_config = """# Authenticated API client configuration
# Configuration file: {config_path}

[server]
# Base URL of the remote API
base_url = http://localhost:5000/v1

# Total request timeout in seconds
timeout = 120

[auth]
# Route the host navigates to when the session is dropped
unauthenticated_route = /

# Body field the user id is injected under for POST/PUT/PATCH
identity_field = userId

# Session storage: secure (keyring / encrypted file) or memory
token_storage = secure

[ui]
show_notifications = true

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO

# Format: standard, json, detailed
format = standard
""".format(config_path=config_path)

        with open(config_path, 'w') as f:
            f.write(default_config)

        logger.info(f"Created default configuration file: {config_path}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()
        self._validate()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers and booleans
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})

            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            else:
                try:
                    section_data[key] = float(value) if '.' in value else int(value)
                except ValueError:
                    section_data[key] = value

    def _set_defaults(self) -> None:
        """Merge defaults under the loaded values."""
        for section, section_defaults in DEFAULT_CONFIG.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    def _validate(self) -> None:
        """Reject values the client cannot run with."""
        timeout = self.get_config('server.timeout')
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigurationError(f"Invalid server timeout: {timeout!r}", config_key='server.timeout')

        backend = self.get_config('auth.token_storage')
        if backend not in TOKEN_STORAGE_BACKENDS:
            raise ConfigurationError(f"Unknown token storage backend: {backend!r}", config_key='auth.token_storage')

        level = str(self.get_config('logging.level')).upper()
        if level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {level!r}", config_key='logging.level')

        log_format = str(self.get_config('logging.format')).lower()
        if log_format not in LOG_FORMATS:
            raise ConfigurationError(f"Invalid log format: {log_format!r}", config_key='logging.format')

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data, overrides applied."""
        merged = {section: dict(values) for section, values in self._config_data.items()}
        for key, value in self._overrides.items():
            if '.' in key:
                section, config_key = key.split('.', 1)
                merged.setdefault(section, {})[config_key] = value
        return merged

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def get_base_url(self) -> str:
        return str(self.get_config('server.base_url')).rstrip('/')

    def get_server_timeout(self) -> float:
        return float(self.get_config('server.timeout'))

    def get_unauthenticated_route(self) -> str:
        return self.get_config('auth.unauthenticated_route')

    def get_identity_field(self) -> str:
        return self.get_config('auth.identity_field')

    def get_token_storage_backend(self) -> str:
        return self.get_config('auth.token_storage')

    def get_service_name(self) -> str:
        return self.get_config('auth.service_name')

    def should_show_notifications(self) -> bool:
        return bool(self.get_config('ui.show_notifications'))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
