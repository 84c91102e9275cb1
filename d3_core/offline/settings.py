# =============================================================================
# d3_core/offline/settings.py
# Configuration for the offline layer
# =============================================================================
"""
OfflineSettings - every tunable of the offline layer in one place.

Precedence (highest first):
    1. keyword overrides passed to load_settings()
    2. [offline] table in .streamlit/secrets.toml
    3. D3_* environment variables (e.g. D3_DEBOUNCE_SECONDS=0.4)
    4. dataclass defaults
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging

from d3_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "D3_"
DEFAULT_BIBLE_ID = 2692
MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass
class OfflineSettings:
    """Settings for the offline store, queue, scheduler and connectors."""
    db_path: Path = Path("local_data") / "d3_offline.db"
    debounce_seconds: float = 0.4
    sync_interval_seconds: float = 0
    check_interval_online: float = 30
    check_interval_offline: float = 10
    connection_timeout: float = 5
    passage_cache_max_entries: Optional[int] = None
    passage_cache_max_age_days: Optional[float] = None
    dead_letter_rejected: bool = False
    passage_base_url: Optional[str] = None
    bible_id: int = DEFAULT_BIBLE_ID
    request_timeout: float = 15

    @property
    def passage_cache_max_age_ms(self) -> Optional[int]:
        if self.passage_cache_max_age_days is None:
            return None
        return int(self.passage_cache_max_age_days * MS_PER_DAY)

    @property
    def passage_eviction_enabled(self) -> bool:
        return self.passage_cache_max_entries is not None or self.passage_cache_max_age_days is not None

    def validate(self) -> OfflineSettings:
        """
        Raises:
            ConfigurationError: if a numeric knob is out of range
        """
        if self.debounce_seconds < 0:
            raise ConfigurationError(
                "debounce_seconds must be >= 0", config_key="debounce_seconds", expected_type="float"
            )
        if self.sync_interval_seconds < 0:
            raise ConfigurationError(
                "sync_interval_seconds must be >= 0", config_key="sync_interval_seconds", expected_type="float"
            )
        if self.passage_cache_max_entries is not None and self.passage_cache_max_entries < 0:
            raise ConfigurationError(
                "passage_cache_max_entries must be >= 0",
                config_key="passage_cache_max_entries",
                expected_type="int",
            )
        if self.passage_cache_max_age_days is not None and self.passage_cache_max_age_days < 0:
            raise ConfigurationError(
                "passage_cache_max_age_days must be >= 0",
                config_key="passage_cache_max_age_days",
                expected_type="float",
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["db_path"] = str(self.db_path)
        return data


# =============================================================================
# LOADING
# =============================================================================

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a secrets/env value to the type of the field's default."""
    if raw is None:
        return None
    if isinstance(raw, str) and raw.strip().lower() in ("", "none", "null"):
        return None

    try:
        if name == "db_path":
            return Path(raw)
        if name == "dead_letter_rejected":
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in _TRUE_VALUES:
                return True
            if value in _FALSE_VALUES:
                return False
            raise ValueError(raw)
        if name in ("passage_cache_max_entries", "bible_id"):
            return int(raw)
        if name == "passage_base_url":
            return str(raw).rstrip("/")
        if isinstance(default, (int, float)) or default is None:
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid value for {name}: {raw!r}",
            config_key=name,
            expected_type=type(default).__name__ if default is not None else "number",
        ) from None
    return raw


def _secrets_section(section: str) -> Mapping[str, Any]:
    """Read one table of st.secrets, or {} when secrets are not configured."""
    try:
        import streamlit as st
        if section in st.secrets:
            return dict(st.secrets[section])
    except Exception as e:
        # No secrets.toml is a normal state outside a deployed app
        logger.debug(f"st.secrets[{section!r}] not available: {e}")
    return {}


def _env_values() -> Dict[str, str]:
    values = {}
    for f in fields(OfflineSettings):
        raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is not None:
            values[f.name] = raw
    return values


def load_settings(**overrides: Any) -> OfflineSettings:
    """
    Build OfflineSettings from overrides, secrets and environment.

    Raises:
        ConfigurationError: on an unknown override or an unparseable value
    """
    defaults = OfflineSettings()
    known = {f.name for f in fields(OfflineSettings)}

    unknown = set(overrides) - known
    if unknown:
        raise ConfigurationError(f"Unknown offline settings: {sorted(unknown)}", config_key=sorted(unknown)[0])

    merged: Dict[str, Any] = {}
    for source in (_env_values(), _secrets_section("offline")):
        for name, raw in source.items():
            if name in known:
                merged[name] = _coerce(name, raw, getattr(defaults, name))

    for name, value in overrides.items():
        merged[name] = _coerce(name, value, getattr(defaults, name)) if isinstance(value, str) else value

    settings = OfflineSettings(**merged).validate()
    logger.debug(f"Offline settings: {settings.to_dict()}")
    return settings
