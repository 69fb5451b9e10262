"""Configuration loader for the WhatsApp gateway."""

from __future__ import annotations

import configparser
import importlib
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .logger import get_logger

logger = get_logger()


def load_settings(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with GWA_):
      GWA_CONFIG - Path to config.ini file (default: config.ini)
      GWA_DB_PATH - Database path (default: /data/whatsapp_service.db)
      GWA_TRANSPORT_FACTORY - ``module:callable`` building a transport per account
      GWA_SESSIONS_DIR - Directory holding per-account session data (default: ./sessions)
      GWA_DEFAULT_COUNTRY_CODE - Prefix for numbers without a leading + (default: +91)
      GWA_ADDRESS_SUFFIX - Transport address suffix (default: @c.us)
      GWA_WEBHOOK_TIMEOUT - Webhook POST timeout in seconds (default: 10)
      GWA_LOG_DELIVERY_ACTIVITY - Log every webhook delivery outcome (default: False)

    Config file sections/keys:
      [storage] db_path
      [transport] factory, sessions_dir
      [delivery] default_country_code, address_suffix, webhook_timeout_seconds
      [logging] delivery_activity
    """
    path = Path(config_path or os.getenv("GWA_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("GWA_DB_PATH", "/data/whatsapp_service.db")),
        "transport_factory": get("transport", "factory", os.getenv("GWA_TRANSPORT_FACTORY")),
        "sessions_dir": get("transport", "sessions_dir", os.getenv("GWA_SESSIONS_DIR", "./sessions")),
        "default_country_code": get(
            "delivery", "default_country_code", os.getenv("GWA_DEFAULT_COUNTRY_CODE", "+91")
        ),
        "address_suffix": get("delivery", "address_suffix", os.getenv("GWA_ADDRESS_SUFFIX", "@c.us")),
        "webhook_timeout": get_float(
            "delivery", "webhook_timeout_seconds", os.getenv("GWA_WEBHOOK_TIMEOUT"), default=10.0
        ),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("GWA_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "sessions_dir"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    factory = settings.get("transport_factory")
    if isinstance(factory, str):
        factory = factory.strip() or None
    settings["transport_factory"] = factory
    return settings


def resolve_factory(dotted: Optional[str]) -> Callable[..., Any]:
    """Import a ``module:callable`` (or ``module.callable``) reference."""
    if not dotted:
        raise ValueError("Transport factory is not configured (set GWA_TRANSPORT_FACTORY)")
    if ":" in dotted:
        module_name, attr = dotted.split(":", 1)
    else:
        module_name, _, attr = dotted.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Invalid factory reference: {dotted!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"Factory {attr!r} not found in module {module_name!r}") from exc
    if not callable(factory):
        raise ValueError(f"Factory reference {dotted!r} is not callable")
    logger.info(f"Resolved transport factory {dotted}")
    return factory
