"""Configuration loading and parsing."""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ConfigError(Exception):
    """Configuration-related errors."""
    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    'metadata_api': {
        'client_id': '',
        'client_secret': '',
        'base_url': 'https://api.igdb.com/v4',
        'token_url': 'https://id.twitch.tv/oauth2/token',
        'request_timeout': 15,
    },
    'paths': {
        'roms': [],
        'output': './data',
        'images': None,
    },
    'rate_limit': {
        'requests_per_second': 4,
        'refill_interval_ms': 1000,
        'max_concurrency': 4,
        'adaptive': True,
        'max_retries': 5,
        'initial_backoff_seconds': 2,
    },
    'cache': {
        'ttl_hours': 24,
        'max_items': 5000,
        'max_bytes': 50 * 1024 * 1024,
        'durable': True,
        'directory': None,
        'reconnect_interval_seconds': 30,
    },
    'matching': {
        'fuzzy_threshold': 0.4,
        'score_threshold': 50,
        'high_confidence': 90,
        'auto_select_confidence': 0.8,
    },
    'runtime': {
        'batch_size': 10,
        'checkpoint_every': 20,
        'lazy_download': False,
        'offline_mode': False,
        'retry_unmatched': False,
    },
    'output': {
        'format': 'json',
    },
    'logging': {
        'level': 'INFO',
        'console': True,
        'file': None,
    },
}

ENV_CLIENT_ID = 'ROMSHELF_CLIENT_ID'
ENV_CLIENT_SECRET = 'ROMSHELF_CLIENT_SECRET'


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge ``override`` into a copy of ``base``.

    Nested dictionaries merge key by key; any other value replaces.
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _resolve_derived_paths(config: Dict[str, Any]) -> None:
    paths = config['paths']
    if isinstance(paths.get('roms'), str):
        paths['roms'] = [paths['roms']]

    output = Path(str(paths.get('output') or './data')).expanduser()
    if not paths.get('images'):
        paths['images'] = str(output / 'images')
    if not config['cache'].get('directory'):
        config['cache']['directory'] = str(output / '.cache')


def load_config(config_path: Optional[str] = None, require_file: bool = True) -> Dict[str, Any]:
    """
    Load and parse configuration file.

    Values from the file are merged over DEFAULT_CONFIG. Client credentials
    missing from the file are taken from the ROMSHELF_CLIENT_ID and
    ROMSHELF_CLIENT_SECRET environment variables.

    Args:
        config_path: Path to config.yaml file. If None, uses ./config.yaml
        require_file: When False, a missing file yields the defaults

    Returns:
        Parsed configuration dictionary

    Raises:
        ConfigError: If config file cannot be loaded or parsed
    """
    if config_path is None:
        config_path = Path.cwd() / "config.yaml"
    else:
        config_path = Path(config_path)

    user_config: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read config file: {e}")

        if not isinstance(user_config, dict):
            raise ConfigError("Configuration file must contain a YAML dictionary")
    elif require_file:
        raise ConfigError(
            f"Configuration file not found: {config_path}\n"
            f"Copy config.yaml.example to config.yaml and configure it."
        )

    for section, value in user_config.items():
        if section in DEFAULT_CONFIG and value is not None and not isinstance(value, dict):
            raise ConfigError(f"Configuration section '{section}' must be a dictionary")

    config = merge_config(DEFAULT_CONFIG, {k: v for k, v in user_config.items() if v is not None})

    api = config['metadata_api']
    if not api.get('client_id'):
        api['client_id'] = os.environ.get(ENV_CLIENT_ID, '')
    if not api.get('client_secret'):
        api['client_secret'] = os.environ.get(ENV_CLIENT_SECRET, '')

    _resolve_derived_paths(config)
    return config


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get a nested configuration value using dot notation.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., 'rate_limit.max_concurrency')
        default: Default value if path not found

    Returns:
        Configuration value or default

    Example:
        >>> get_config_value(config, 'runtime.batch_size')
        10
    """
    keys = path.split('.')
    value = config

    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default

    return value
