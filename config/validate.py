"""
Configuration schema validation for the subscription ledger.

Validates that required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import DEFAULT_CHAIN_ID, get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_chain_config(config: dict[str, Any]) -> list[str]:
    """Validate chains/<id>.json has required fields."""
    return _check_keys(
        config,
        [
            "chain_id",
            "rpc.http_url",
            "contracts.subscription_manager",
            "contracts.subscription_nft",
        ],
        "chains/<id>.json",
    )


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields and sane values."""
    errors = _check_keys(
        config,
        [
            "event_source.poll_interval_seconds",
            "event_source.confirmation_blocks",
            "event_source.max_block_range",
        ],
        "timing.json",
    )
    if not errors:
        source = config["event_source"]
        if source["max_block_range"] <= 0:
            errors.append("event_source.max_block_range: must be positive")
        if source["poll_interval_seconds"] <= 0:
            errors.append("event_source.poll_interval_seconds: must be positive")
        if source["confirmation_blocks"] < 0:
            errors.append("event_source.confirmation_blocks: must be >= 0")
    return errors


def validate_cache_config(config: dict[str, Any]) -> list[str]:
    """Validate cache.json has required fields."""
    return _check_keys(
        config,
        [
            "event_cache.max_events_per_key",
            "block_timestamps.max_entries",
        ],
        "cache.json",
    )


def validate_analytics_config(config: dict[str, Any]) -> list[str]:
    """Validate analytics.json has required fields and a known error policy."""
    errors = _check_keys(config, ["error_policy", "default_granularity"], "analytics.json")
    if not errors:
        if config["error_policy"] not in ("raise", "zero_fallback"):
            errors.append("error_policy: must be 'raise' or 'zero_fallback'")
        if config["default_granularity"] not in ("daily", "weekly", "monthly"):
            errors.append("default_granularity: must be 'daily', 'weekly' or 'monthly'")
    return errors


def validate_all_configs(chain_id: int = DEFAULT_CHAIN_ID) -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        f"chains/{chain_id}.json": (
            lambda: loader.get_chain_config(chain_id),
            validate_chain_config,
        ),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "cache.json": (loader.get_cache_config, validate_cache_config),
        "analytics.json": (loader.get_analytics_config, validate_analytics_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))
