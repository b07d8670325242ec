import json
from typing import Any, Optional

from .models import DEFAULTS, Settings
from .storage import config_all, config_get, config_set

# keys that live in the config table without being policy settings
CONTROL_KEYS = {"shutdown"}


def normalize_key(key: str) -> str:
    """`max-retries` and `max_retries` name the same key."""
    return key.strip().replace("-", "_")


def _decode(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def get_config(key: str) -> Optional[str]:
    return config_get(normalize_key(key))


def set_config(key: str, value: str) -> None:
    """Validate against Settings before writing so a bad value never reaches the workers."""
    key = normalize_key(key)
    if key not in DEFAULTS and key not in CONTROL_KEYS:
        raise ValueError(f"Unknown config key {key!r}. Allowed: {', '.join(sorted([*DEFAULTS, *CONTROL_KEYS]))}")
    if key in DEFAULTS:
        current = Settings().model_dump()
        current[key] = _decode(value)
        Settings.model_validate(current)
    config_set(key, value)


def load_settings() -> Settings:
    """Read the config table fresh; callers keep the result for one pass only."""
    stored = config_all()
    data = {k: _decode(v) for k, v in stored.items() if k in DEFAULTS}
    return Settings.model_validate(data)


def shutdown_requested() -> bool:
    return config_get("shutdown", "false") == "true"
