"""Load application settings from config/settings.yaml.

The file only needs the keys it overrides; everything else comes from
_DEFAULTS. The merged result is checked by validate_settings() before it is
cached.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

STORAGE_PROVIDERS = ("memory", "sqlite", "composite")

_DEFAULTS: dict[str, Any] = {
    "event_bus": {
        "max_concurrency": 32,
        "persist_events": True,
        "persist_ttl": 86400,  # 24 h
    },
    "storage": {
        # memory | sqlite | composite (sqlite primary, memory fallback)
        "provider": "memory",
        "db_path": "data/storage.db",
        "busy_timeout": 5000,
    },
    "handlers": {
        "audit": {
            "enabled": True,
            "latency": 0.05,
            "retention": 7776000,  # 90 days
            "history_limit": 1000,
        },
        "notification": {
            "enabled": True,
            "webhook_url": None,
            "suspicious_ips": [],
            "history_limit": 1000,
            "latencies": {
                "email": 0.1,
                "sms": 0.05,
                "push": 0.03,
                "in_app": 0.01,
                "webhook": 0.2,
            },
        },
        "analytics": {
            "enabled": True,
            "latency": 0.1,
            "history_limit": 1000,
        },
    },
    "logging": {
        "file": "data/logs/app.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# Dot paths that must hold an integer >= 1
_POSITIVE_INTS = (
    "event_bus.max_concurrency",
    "handlers.audit.history_limit",
    "handlers.notification.history_limit",
    "handlers.analytics.history_limit",
)

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates and returns base.

    A key written as ``key:`` with no value in YAML loads as None and keeps the
    default. Nested sections merge key by key; lists and scalars replace.
    """
    for key, value in overlay.items():
        if value is None:
            continue
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _deep_merge(current, value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a fresh copy of the defaults; callers may mutate it freely."""
    return _copy_tree(_DEFAULTS)


def _copy_tree(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _copy_tree(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_copy_tree(x) for x in obj]
    return obj


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a nested value by dot path, e.g. 'handlers.audit.retention'.

    Returns default when any segment is missing or an intermediate value is not
    a section. An explicit None stored in settings is returned as None.
    """
    node: Any = settings
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def validate_settings(settings: dict[str, Any]) -> None:
    """Raise ValueError for values the event bus and handlers cannot run with."""
    for path in _POSITIVE_INTS:
        value = get_setting(settings, path)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"{path} must be an integer >= 1, got {value!r}")
    provider = get_setting(settings, "storage.provider")
    if provider not in STORAGE_PROVIDERS:
        raise ValueError(
            f"storage.provider must be one of {', '.join(STORAGE_PROVIDERS)}, got {provider!r}"
        )


def reload_settings() -> None:
    """Drop the cached settings so the next load_settings() rereads the file."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Return defaults overlaid with config_dir/settings.yaml (default: <repo>/config).

    A missing file yields the defaults. A file that cannot be read or parsed is
    logged and ignored. The merged result is validated, then cached until
    reload_settings(); config_dir is ignored while a cached copy exists.
    """
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Settings: could not read %s, using defaults: %s", path, e)
            data = None
        if isinstance(data, dict):
            _deep_merge(result, data)
        elif data is not None:
            logger.warning("Settings: %s is not a mapping, using defaults", path)

    validate_settings(result)
    _cached = result
    return result
