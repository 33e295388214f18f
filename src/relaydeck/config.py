"""Configuration management for relaydeck."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .api import DEFAULT_API_BASE_URL, DEFAULT_TIMEOUT
from .autorefresh import AUTO_REFRESH_INTERVAL
from .categories import DEFAULT_CATEGORY, Category
from .logging_utils import get_logger
from .overlay import LATENCY_TTL

CONFIG_PATH = Path.home() / ".config" / "relaydeck" / "config.yaml"

log = get_logger(__name__)


@dataclass(slots=True)
class AppConfig:
    """Top level application configuration."""

    api_base_url: str = DEFAULT_API_BASE_URL
    refresh_interval: float = AUTO_REFRESH_INTERVAL
    latency_ttl: float = LATENCY_TTL.total_seconds()
    request_timeout: float = DEFAULT_TIMEOUT
    default_category: Category = DEFAULT_CATEGORY
    theme: Optional[str] = None
    credentials_path: Optional[str] = None

    @property
    def latency_ttl_delta(self) -> timedelta:
        return timedelta(seconds=self.latency_ttl)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _clean_scalar(value: str) -> str:
    value = value.strip()
    if value.startswith(("'", '"')) and value.endswith(("'", '"')):
        value = value[1:-1]
    return value


def _parse_config(raw: str) -> dict[str, object]:
    """Parse JSON, or the flat ``key: value`` subset written by :func:`save_config`."""

    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        pass
    else:
        return data if isinstance(data, dict) else {}

    result: dict[str, object] = {}
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, separator, value = stripped.partition(":")
        if not separator:
            log.warning("Ignoring malformed configuration line: %s", stripped)
            continue
        result[key.strip()] = _clean_scalar(value)
    return result


def _parse_positive_float(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key)
    if value is None or value == "":
        return default
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        log.warning("Ignoring invalid %s value %r; using %s", key, value, default)
        return default
    if number <= 0:
        log.warning("Ignoring non-positive %s value %r; using %s", key, value, default)
        return default
    return number


def _optional_text(data: dict[str, object], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _dump_config(config: AppConfig) -> str:
    lines = [
        f"api_base_url: {config.api_base_url}",
        f"refresh_interval: {config.refresh_interval:g}",
        f"latency_ttl: {config.latency_ttl:g}",
        f"request_timeout: {config.request_timeout:g}",
        f"default_category: {config.default_category.value}",
    ]
    if config.theme:
        lines.append(f"theme: {config.theme}")
    if config.credentials_path:
        lines.append(f"credentials_path: {config.credentials_path}")
    lines.append("")
    return "\n".join(lines)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from *path* or return the defaults."""

    config_path = path or CONFIG_PATH
    if not config_path.exists():
        log.info("Configuration file missing at %s; using defaults", config_path)
        return AppConfig()
    log.debug("Loading configuration from %s", config_path)
    data = _parse_config(config_path.read_text(encoding="utf8"))

    category_raw = data.get("default_category")
    default_category = DEFAULT_CATEGORY
    if category_raw:
        parsed = Category.try_parse(category_raw)
        if parsed is None:
            log.warning("Unknown default_category %r; using %s", category_raw, DEFAULT_CATEGORY.value)
        else:
            default_category = parsed

    config = AppConfig(
        api_base_url=_optional_text(data, "api_base_url") or DEFAULT_API_BASE_URL,
        refresh_interval=_parse_positive_float(data, "refresh_interval", AUTO_REFRESH_INTERVAL),
        latency_ttl=_parse_positive_float(data, "latency_ttl", LATENCY_TTL.total_seconds()),
        request_timeout=_parse_positive_float(data, "request_timeout", DEFAULT_TIMEOUT),
        default_category=default_category,
        theme=_optional_text(data, "theme"),
        credentials_path=_optional_text(data, "credentials_path"),
    )
    log.info("Loaded configuration from %s (relay %s)", config_path, config.api_base_url)
    return config


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    """Persist *config* to disk at *path*."""

    config_path = path or CONFIG_PATH
    _ensure_parent(config_path)
    config_path.write_text(_dump_config(config), encoding="utf8")
    log.info("Configuration saved to %s", config_path)


__all__ = ["AppConfig", "CONFIG_PATH", "load_config", "save_config"]
