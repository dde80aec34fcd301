"""
load the config from config.yaml and .env
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional


DEFAULTS: Dict[str, Any] = {
    'fetcher': {
        'timeout': 30000,
        'max_redirects': 10,
        'max_response_size': 10 * 1024 * 1024,
        'delay_min_ms': 500,
        'delay_max_ms': 3000,
    },
    'content': {
        'size_limit': 50000,
        'min_size_limit': 4096,
    },
    'chunks': {
        'ttl_seconds': 600,
    },
    'browser': {
        'headless': True,
        'executable_path': None,
        'max_attempts': 3,
        'backoff_base': 1.0,
        'backoff_max': 10.0,
        'wait_for_timeout': 5000,
        'max_content_size': 10 * 1024 * 1024,
    },
    'logging': {
        'level': 'INFO',
        'debug': False,
    },
    'i18n': {
        'locale': 'en',
    },
    'api': {
        'host': '127.0.0.1',
        'port': 8000,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Configuration loader that reads from config.yaml and environment variables."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml file. If None, looks for config.yaml
                        in the same directory as this module.
            environ: Environment mapping used for overrides. Defaults to os.environ.
        """
        if config_path is None:
            config_path = Path(__file__).parent / "config.yaml"

        self.config_path = Path(config_path)
        self._environ = os.environ if environ is None else environ
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file and override with environment variables."""
        try:
            with open(self.config_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        except FileNotFoundError:
            loaded = {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        config = _merge(DEFAULTS, loaded)
        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration."""
        env_mappings = {
            'WEBFETCH_TIMEOUT': ('fetcher', 'timeout'),
            'WEBFETCH_MAX_REDIRECTS': ('fetcher', 'max_redirects'),
            'WEBFETCH_CONTENT_SIZE_LIMIT': ('content', 'size_limit'),
            'WEBFETCH_CHUNK_TTL': ('chunks', 'ttl_seconds'),
            'WEBFETCH_BROWSER_HEADLESS': ('browser', 'headless'),
            'PLAYWRIGHT_EXECUTABLE_PATH': ('browser', 'executable_path'),
            'DEBUG': ('logging', 'debug'),
            'WEBFETCH_DEBUG': ('logging', 'debug'),
            'LOG_LEVEL': ('logging', 'level'),
            'WEBFETCH_LANG': ('i18n', 'locale'),
            'API_HOST': ('api', 'host'),
            'API_PORT': ('api', 'port'),
        }

        for env_var, config_path in env_mappings.items():
            env_value = self._environ.get(env_var)
            if env_value is not None:
                current = config
                for key in config_path[:-1]:
                    if key not in current:
                        current[key] = {}
                    current = current[key]

                final_key = config_path[-1]
                current[final_key] = self._convert_env_value(env_value)

        return config

    def _convert_env_value(self, value: str):
        """Convert environment variable string to appropriate Python type."""
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def get(self, *keys, default=None):
        """Get configuration value using dot notation.

        Args:
            *keys: Configuration keys (e.g., 'content', 'size_limit')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        current = self._config
        for key in keys:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    @property
    def fetcher(self) -> Dict[str, Any]:
        """Get HTTP fetcher configuration."""
        return self.get('fetcher', default={})

    @property
    def content(self) -> Dict[str, Any]:
        """Get content size configuration."""
        return self.get('content', default={})

    @property
    def chunks(self) -> Dict[str, Any]:
        """Get chunk store configuration."""
        return self.get('chunks', default={})

    @property
    def browser(self) -> Dict[str, Any]:
        """Get browser automation configuration."""
        return self.get('browser', default={})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.get('logging', default={})

    @property
    def i18n(self) -> Dict[str, Any]:
        """Get translation configuration."""
        return self.get('i18n', default={})

    @property
    def api(self) -> Dict[str, Any]:
        """Get HTTP API configuration."""
        return self.get('api', default={})

    @property
    def debug(self) -> bool:
        return bool(self.logging.get('debug', False))


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config
