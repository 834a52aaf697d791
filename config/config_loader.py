"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this — never hardcoded values.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_billing_config() -> Dict[str, Any]:
    """Returns the billing block."""
    return load_config()["billing"]


def get_analytics_config() -> Dict[str, Any]:
    """Returns the analytics block."""
    return load_config()["analytics"]


def get_reminder_config() -> Dict[str, Any]:
    """Returns the reminders block."""
    return load_config()["reminders"]


def get_currency_rates() -> Dict[str, float]:
    """Returns currency rates expressed as units per 1 USD."""
    return load_config()["currency"]["rates"]


def get_currency_precision() -> int:
    return load_config()["currency"]["precision"]


def get_notification_channels(event_key: str) -> list[str]:
    """
    Returns the default channel hints for a notification event.

    Raises:
        KeyError: If event_key is not configured.
    """
    channels = load_config()["notifications"]["channels"]
    if event_key not in channels:
        raise KeyError(
            f"No channel config for '{event_key}'. "
            f"Available: {list(channels.keys())}"
        )
    return channels[event_key]


def get_supported_cycles() -> list[str]:
    """Returns all billing cycles with a monthly-equivalent factor."""
    return list(get_analytics_config()["cycles_per_year"].keys())


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
