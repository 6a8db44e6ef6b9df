"""Load and query scan-engine JSON config files.

Layout of the config file (every section optional):

    {
      "policy":  {"max_pages_per_source": 10, "rate_limit_per_domain": 2, ...},
      "http":    {"timeout_s": 20, "max_retries": 3, "backoff_s": 2},
      "engine":  {"max_workers": 4, "generator_timeout_s": 60, "browser_timeout_s": 30},
      "logging": {"level": "INFO"}
    }
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import PolicyConstraints

CONFIG_ENV_VAR = "SCAN_ENGINE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.json")
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_CONFIG_CACHE: Dict[Path, tuple] = {}

DEFAULT_HTTP = {"timeout_s": 20.0, "max_retries": 3, "backoff_s": 2.0}
DEFAULT_ENGINE = {"max_workers": 4, "generator_timeout_s": 60.0, "browser_timeout_s": 30.0}


def resolve_config_path(config_path: Union[str, Path, None] = None) -> Path:
    """Resolve the config path.

    Priority:
    1. explicit function argument
    2. `SCAN_ENGINE_CONFIG_PATH` environment variable
    3. default `config/config.json` (relative to the working directory)
    """
    raw_path = config_path or os.getenv(CONFIG_ENV_VAR)
    candidate = Path(raw_path) if raw_path else DEFAULT_CONFIG_PATH
    return candidate.expanduser().resolve()


def load_config(config_path: Union[str, Path, None] = None, *, use_cache: bool = True) -> Dict[str, Any]:
    """Load config JSON as a dictionary."""
    resolved = resolve_config_path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {resolved}")

    mtime_ns = resolved.stat().st_mtime_ns
    if use_cache and resolved in _CONFIG_CACHE:
        cached_mtime_ns, cached_payload = _CONFIG_CACHE[resolved]
        if cached_mtime_ns == mtime_ns:
            return cached_payload

    try:
        payload = json.loads(resolved.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file: {resolved}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be a JSON object: {resolved}")

    _CONFIG_CACHE[resolved] = (mtime_ns, payload)
    return payload


def load_config_or_default(config_path: Union[str, Path, None] = None) -> Dict[str, Any]:
    """Like load_config, but an absent *default* config file yields {}.

    An explicitly named file that does not exist is still an error.
    """
    explicit = config_path or os.getenv(CONFIG_ENV_VAR)
    try:
        return load_config(config_path)
    except FileNotFoundError:
        if explicit:
            raise
        return {}


def clear_config_cache() -> None:
    """Clear in-memory config cache."""
    _CONFIG_CACHE.clear()


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Config `{name}` must be a JSON object.")
    return value


def get_policy_defaults(config: Optional[Dict[str, Any]] = None) -> PolicyConstraints:
    """Policy constraints from the `policy` section merged over built-in defaults."""
    payload = load_config_or_default() if config is None else config
    return PolicyConstraints.resolve(_section(payload, "policy"))


def get_http_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = load_config_or_default() if config is None else config
    return {**DEFAULT_HTTP, **_section(payload, "http")}


def get_engine_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = load_config_or_default() if config is None else config
    merged = {**DEFAULT_ENGINE, **_section(payload, "engine")}
    if int(merged["max_workers"]) <= 0:
        raise ValueError("Config engine.max_workers must be a positive integer.")
    merged["max_workers"] = int(merged["max_workers"])
    return merged


def get_log_level(config: Optional[Dict[str, Any]] = None) -> str:
    payload = load_config_or_default() if config is None else config
    level = _section(payload, "logging").get("level", "INFO")
    return str(level).upper()


def configure_logging(level: Union[str, int, None] = None) -> None:
    """Install one stream handler on the root logger (idempotent)."""
    resolved = level if level is not None else get_log_level()
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT, handlers=[logging.StreamHandler()], force=True)
