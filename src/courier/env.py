import os
from collections.abc import Callable, Mapping
from typing import Any

from .types import AuthConfig, ClientConfig, RetryPolicy


def _parse_env_file(env_path: str) -> dict[str, str]:
    """Parse a simple .env file into a dict without modifying os.environ.

    Supports basic KEY=VALUE pairs, ignoring comments and blank lines.
    Surrounding single/double quotes are stripped if present.
    """
    values: dict[str, str] = {}
    try:
        with open(env_path) as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export ") :]
                if "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key:
                    values[key] = val
    except FileNotFoundError:
        pass
    return values


def _convert(env_map: Mapping[str, str], name: str, cast: Callable[[str], Any]) -> Any:
    raw = env_map[name]
    try:
        return cast(raw)
    except ValueError as e:
        raise ValueError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


# suffix -> (section, field, cast)
_FIELDS = {
    "BASE_URL": ("client", "base_url", str),
    "TIMEOUT": ("client", "timeout", float),
    "CONCURRENCY_LIMIT": ("client", "concurrency_limit", int),
    "MAX_NOTIFICATIONS": ("client", "max_notifications", int),
    "MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "BASE_DELAY": ("retry", "base_delay", float),
    "BACKOFF_MULTIPLIER": ("retry", "backoff_multiplier", float),
    "MAX_DELAY": ("retry", "max_delay", float),
    "AUTH_HEADER": ("auth", "header", str),
    "AUTH_SCHEME": ("auth", "scheme", str),
}


def load_client_config_from_env(
    prefix: str = "COURIER_",
    env_path: str | None = None,
    **overrides,
) -> ClientConfig:
    """Build a ClientConfig from ``<prefix><NAME>`` environment variables.

    - If 'env_path' is provided, variables from the .env file fill in anything
        the process environment does not define; the real environment wins.
    - Unset or empty variables keep the dataclass defaults.
    - Keyword 'overrides' are ClientConfig fields applied last.

    Recognised names: BASE_URL, TIMEOUT, CONCURRENCY_LIMIT, MAX_NOTIFICATIONS,
    MAX_ATTEMPTS, BASE_DELAY, BACKOFF_MULTIPLIER, MAX_DELAY, AUTH_HEADER,
    AUTH_SCHEME. A TIMEOUT of "none" or "0" disables the request timeout.
    """
    file_env = _parse_env_file(env_path) if env_path else {}
    env_map: dict[str, str] = {**file_env, **os.environ}

    sections: dict[str, dict[str, Any]] = {"client": {}, "retry": {}, "auth": {}}
    for suffix, (section, field_name, cast) in _FIELDS.items():
        name = f"{prefix}{suffix}"
        if not env_map.get(name, "").strip():
            continue
        if suffix == "TIMEOUT" and env_map[name].strip().lower() in ("none", "0"):
            sections["client"]["timeout"] = None
            continue
        sections[section][field_name] = _convert(env_map, name, cast)

    client = sections["client"]
    if sections["retry"]:
        client["retry"] = RetryPolicy(**sections["retry"])
    if sections["auth"]:
        client["auth"] = AuthConfig(**sections["auth"])
    client.update(overrides)
    return ClientConfig(**client)
