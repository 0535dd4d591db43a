"""Settings dataclasses and environment overrides.

Every empirically tuned constant of the engine (liveness bounds, evaluator
thresholds, smoothing weight) lives here so callers can adjust them
without touching the algorithms. Values can be overridden through
``TURNWRIGHT_*`` environment variables or a runtime mapping.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Literal, Mapping

__all__ = [
    "ApprovalMode",
    "ClientSettings",
    "EvaluatorSettings",
    "EngineSettings",
    "Settings",
    "load_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

ApprovalMode = Literal["manual", "trusted", "autonomous"]
APPROVAL_MODES: tuple[str, ...] = ("manual", "trusted", "autonomous")
PROFILES: tuple[str, ...] = ("balanced", "demo_day", "recovery")

# env name -> (section, field)
_ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "TURNWRIGHT_PROVIDER": ("client", "provider"),
    "TURNWRIGHT_API_KEY": ("client", "api_key"),
    "TURNWRIGHT_BASE_URL": ("client", "base_url"),
    "TURNWRIGHT_MODEL": ("client", "model"),
    "TURNWRIGHT_ORGANIZATION": ("client", "organization"),
    "TURNWRIGHT_PROFILE": ("evaluator", "profile"),
    "TURNWRIGHT_APPROVAL_MODE": ("engine", "approval_mode"),
}
_BOOL_ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "TURNWRIGHT_DEBUG_LOGGING": ("client", "debug_logging"),
    "TURNWRIGHT_RETRY_SHAKY_ONCE": ("engine", "retry_shaky_once"),
}
_FLOAT_ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "TURNWRIGHT_REQUEST_TIMEOUT": ("client", "request_timeout"),
    "TURNWRIGHT_TOKENS_PER_CHAR": ("client", "tokens_per_char"),
    "TURNWRIGHT_AGGRESSION": ("evaluator", "aggression"),
    "TURNWRIGHT_HEARTBEAT_SECONDS": ("engine", "heartbeat_seconds"),
    "TURNWRIGHT_WATCHDOG_SECONDS": ("engine", "watchdog_seconds"),
    "TURNWRIGHT_CANCEL_GRACE_SECONDS": ("engine", "cancel_grace_seconds"),
}
_INT_ENV_OVERRIDES: Mapping[str, tuple[str, str]] = {
    "TURNWRIGHT_MAX_RETRIES": ("client", "max_retries"),
    "TURNWRIGHT_MAX_TOKENS": ("engine", "max_tokens"),
    "TURNWRIGHT_MAX_TOOLS_PER_TURN": ("engine", "max_tools_per_turn"),
}
_TRUE_VALUES = {"1", "true", "yes", "on"}


# -----------------------------------------------------------------------------
# Sections
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Settings required to configure a model provider."""

    provider: str = "openai"
    base_url: str = ""
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    tokens_per_char: float = 0.25
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class EvaluatorSettings:
    """Thresholds and weights used by the turn evaluator."""

    profile: str = "balanced"
    aggression: float = 1.0
    debug_error_threshold: int = 3
    hype_streak_threshold: int = 8
    structural_error_threshold: int = 5
    high_urgency_pressure: float = 30.0
    low_urgency_pressure: float = 80.0
    smoothing_weight: float = 0.85
    initial_confidence: float = 1.2
    min_confidence: float = 0.5
    max_confidence: float = 3.0
    continue_bonus: float = 0.3
    hotspot_threshold: int = 3
    max_blocked_by: int = 4
    profile_factors: Mapping[str, float] = field(
        default_factory=lambda: {"demo_day": 1.2, "recovery": 0.9, "balanced": 1.0}
    )


@dataclass(slots=True)
class EngineSettings:
    """Bounds and policies applied by the turn engine."""

    heartbeat_seconds: float = 60.0
    watchdog_seconds: float = 120.0
    max_tokens: int = 4096
    max_tools_per_turn: int = 30
    approval_mode: ApprovalMode = "manual"
    retry_shaky_once: bool = False
    max_output_bytes: int = 512 * 1024
    content_buffer_max_chars: int = 1024 * 1024
    circuit_breaker_threshold: int = 3
    tool_retry_attempts: int = 3
    tool_retry_min_seconds: float = 0.1
    tool_retry_max_seconds: float = 5.0
    lock_timeout_seconds: float | None = None
    cancel_grace_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Aggregate settings for one engine instance."""

    client: ClientSettings = field(default_factory=ClientSettings)
    evaluator: EvaluatorSettings = field(default_factory=EvaluatorSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------


def load_settings(
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    base: Settings | None = None,
) -> Settings:
    """Build settings from defaults, environment and runtime overrides.

    Args:
        overrides: Per-section overrides, e.g. ``{"engine": {"max_tokens": 2048}}``.
        env: Environment mapping (defaults to ``os.environ``).
        base: Starting settings (defaults to built-in defaults).

    Returns:
        New Settings instance; ``base`` is not mutated.
    """
    settings = base or Settings()
    settings = _apply_env_overrides(settings, os.environ if env is None else env)
    if overrides:
        for section, values in overrides.items():
            settings = _apply_overrides(settings, section, values, source="runtime")
    _validate(settings)
    return settings


def _apply_env_overrides(settings: Settings, env: Mapping[str, str]) -> Settings:
    grouped: Dict[str, Dict[str, Any]] = {}
    for env_name, (section, field_name) in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            grouped.setdefault(section, {})[field_name] = value
    for env_name, (section, field_name) in _BOOL_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            grouped.setdefault(section, {})[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, (section, field_name) in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            grouped.setdefault(section, {})[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, (section, field_name) in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            grouped.setdefault(section, {})[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    for section, values in grouped.items():
        settings = _apply_overrides(settings, section, values, source="environment")
    return settings


def _apply_overrides(
    settings: Settings,
    section: str,
    overrides: Mapping[str, Any],
    *,
    source: str,
) -> Settings:
    current = getattr(settings, section, None)
    if current is None:
        LOGGER.warning("Ignoring %s overrides for unknown settings section %s", source, section)
        return settings
    allowed = {item.name for item in fields(current)}
    filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed or value is None:
            LOGGER.debug("Ignoring %s override %s.%s", source, section, key)
            continue
        filtered[key] = value
    if not filtered:
        return settings
    LOGGER.debug("Applying %s overrides to %s: %s", source, section, sorted(filtered))
    return replace(settings, **{section: replace(current, **filtered)})


def _validate(settings: Settings) -> None:
    engine = settings.engine
    if engine.approval_mode not in APPROVAL_MODES:
        LOGGER.warning("Unknown approval mode %r; falling back to manual", engine.approval_mode)
        engine.approval_mode = "manual"
    if settings.evaluator.profile not in PROFILES:
        LOGGER.warning("Unknown evaluator profile %r; using balanced", settings.evaluator.profile)
        settings.evaluator.profile = "balanced"
    if engine.heartbeat_seconds <= 0 or engine.watchdog_seconds <= 0:
        raise ValueError("Liveness bounds must be positive")
    if engine.cancel_grace_seconds < 0:
        raise ValueError("cancel_grace_seconds must not be negative")


def redact_secret(value: str | None) -> str:
    """Mask a secret for logging, keeping the last four characters."""
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return f"{'*' * (len(value) - 4)}{value[-4:]}"
