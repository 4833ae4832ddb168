"""Configuration validation."""

import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Configuration validation errors."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )


OUTPUT_FORMATS = ['json', 'xml', 'csv']
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Args:
        config: Configuration dictionary from loader

    Raises:
        ValidationError: If configuration is invalid
    """
    offline = bool(config.get('runtime', {}).get('offline_mode', False))

    errors = []
    errors.extend(_validate_metadata_api(config.get('metadata_api', {}), offline))
    errors.extend(_validate_paths(config.get('paths', {})))
    errors.extend(_validate_rate_limit(config.get('rate_limit', {})))
    errors.extend(_validate_cache(config.get('cache', {})))
    errors.extend(_validate_matching(config.get('matching', {})))
    errors.extend(_validate_runtime(config.get('runtime', {})))
    errors.extend(_validate_output(config.get('output', {})))
    errors.extend(_validate_logging(config.get('logging', {})))

    if errors:
        raise ValidationError(errors)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_metadata_api(section: Dict[str, Any], offline: bool) -> List[str]:
    """Validate metadata API credentials section."""
    errors = []

    if not offline:
        if not section.get('client_id'):
            errors.append("metadata_api.client_id is required unless runtime.offline_mode is set")
        if not section.get('client_secret'):
            errors.append("metadata_api.client_secret is required unless runtime.offline_mode is set")

    for key in ('base_url', 'token_url'):
        url = section.get(key)
        if url is not None and (not isinstance(url, str) or not url.startswith(('http://', 'https://'))):
            errors.append(f"metadata_api.{key} must be an http(s) URL")

    timeout = section.get('request_timeout', 15)
    if not _is_number(timeout) or timeout <= 0:
        errors.append("metadata_api.request_timeout must be a positive number")

    return errors


def _validate_paths(section: Dict[str, Any]) -> List[str]:
    """Validate paths section."""
    errors = []

    roms = section.get('roms', [])
    if not isinstance(roms, list):
        errors.append("paths.roms must be a list of directories")
    elif any(not isinstance(r, str) or not r for r in roms):
        errors.append("paths.roms entries must be non-empty strings")

    if not section.get('output') or not isinstance(section.get('output'), str):
        errors.append("paths.output is required")

    images = section.get('images')
    if images is not None and not isinstance(images, str):
        errors.append("paths.images must be a string path")

    return errors


def _validate_rate_limit(section: Dict[str, Any]) -> List[str]:
    """Validate rate limiting section."""
    errors = []

    rps = section.get('requests_per_second', 4)
    if not _is_int(rps) or rps < 1:
        errors.append("rate_limit.requests_per_second must be a positive integer")

    interval = section.get('refill_interval_ms', 1000)
    if not _is_number(interval) or interval <= 0:
        errors.append("rate_limit.refill_interval_ms must be a positive number")

    concurrency = section.get('max_concurrency', 4)
    if not _is_int(concurrency) or not (1 <= concurrency <= 64):
        errors.append("rate_limit.max_concurrency must be between 1 and 64")

    if not isinstance(section.get('adaptive', True), bool):
        errors.append("rate_limit.adaptive must be a boolean")

    retries = section.get('max_retries', 5)
    if not _is_int(retries) or not (0 <= retries <= 10):
        errors.append("rate_limit.max_retries must be between 0 and 10")

    backoff = section.get('initial_backoff_seconds', 2)
    if not _is_number(backoff) or backoff < 0:
        errors.append("rate_limit.initial_backoff_seconds must be non-negative")

    return errors


def _validate_cache(section: Dict[str, Any]) -> List[str]:
    """Validate cache section."""
    errors = []

    ttl = section.get('ttl_hours', 24)
    if not _is_number(ttl) or ttl <= 0:
        errors.append("cache.ttl_hours must be a positive number")

    for key in ('max_items', 'max_bytes'):
        value = section.get(key, 1)
        if not _is_int(value) or value < 1:
            errors.append(f"cache.{key} must be a positive integer")

    if not isinstance(section.get('durable', True), bool):
        errors.append("cache.durable must be a boolean")

    reconnect = section.get('reconnect_interval_seconds', 30)
    if not _is_number(reconnect) or reconnect <= 0:
        errors.append("cache.reconnect_interval_seconds must be a positive number")

    return errors


def _validate_matching(section: Dict[str, Any]) -> List[str]:
    """Validate matching thresholds."""
    errors = []

    for key in ('fuzzy_threshold', 'auto_select_confidence'):
        value = section.get(key, 0.5)
        if not _is_number(value) or not (0.0 <= value <= 1.0):
            errors.append(f"matching.{key} must be between 0.0 and 1.0")

    for key in ('score_threshold', 'high_confidence'):
        value = section.get(key, 0)
        if not _is_number(value) or value < 0:
            errors.append(f"matching.{key} must be a non-negative number")

    return errors


def _validate_runtime(section: Dict[str, Any]) -> List[str]:
    """Validate runtime options section."""
    errors = []

    batch_size = section.get('batch_size', 10)
    if not _is_int(batch_size) or batch_size < 1:
        errors.append("runtime.batch_size must be a positive integer")

    checkpoint_every = section.get('checkpoint_every', 20)
    if not _is_int(checkpoint_every) or checkpoint_every < 1:
        errors.append("runtime.checkpoint_every must be a positive integer")

    for flag in ('lazy_download', 'offline_mode', 'retry_unmatched'):
        if not isinstance(section.get(flag, False), bool):
            errors.append(f"runtime.{flag} must be a boolean")

    return errors


def _validate_output(section: Dict[str, Any]) -> List[str]:
    """Validate output options section."""
    errors = []

    fmt = section.get('format', 'json')
    if fmt not in OUTPUT_FORMATS:
        errors.append(f"output.format must be one of: {', '.join(OUTPUT_FORMATS)}")

    return errors


def _validate_logging(section: Dict[str, Any]) -> List[str]:
    """Validate logging options section."""
    errors = []

    level = section.get('level', 'INFO')
    if level not in LOG_LEVELS:
        errors.append(f"logging.level must be one of: {', '.join(LOG_LEVELS)}")

    console = section.get('console', True)
    if not isinstance(console, bool):
        errors.append("logging.console must be a boolean")

    if 'file' in section and section['file'] is not None:
        if not isinstance(section['file'], str):
            errors.append("logging.file must be a string path or null")

    return errors
