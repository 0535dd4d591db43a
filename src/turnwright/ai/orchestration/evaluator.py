"""Deterministic turn evaluator.

Derives a strategy, urgency and confidence from accumulated session state
instead of asking the model for a self-assessment. ``compute`` is a pure
function of its inputs; ``evaluate`` additionally stores the confidence
and success counter on the session state for the next turn's smoothing.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ...settings import EvaluatorSettings
from .types import Message, SessionRunState, StopCondition, Strategy, TurnDecree, Urgency

__all__ = ["EvaluationOptions", "TurnEvaluator", "RATIONALE_POOL", "has_continue_directive"]

LOGGER = logging.getLogger(__name__)

_CONTINUE_RE = re.compile(r"\bcontinue\b", re.IGNORECASE)
_MAX_RATIONALE_CHARS = 220

RATIONALE_POOL: Mapping[Strategy, tuple[str, ...]] = {
    Strategy.EXECUTE: (
        "Steady progress; keep applying the plan one change at a time.",
        "State is clean enough to proceed with the next concrete step.",
        "No blocking failures; continue executing the current approach.",
        "Recent tools landed; move forward without re-planning.",
    ),
    Strategy.HYPE: (
        "Long success streak; momentum supports larger steps.",
        "Consistent wins this session; confidence is earned, press on.",
        "Streak is strong; batch the remaining straightforward work.",
        "Everything is landing; keep the pace and avoid detours.",
    ),
    Strategy.DEBUG: (
        "Errors are accumulating; stop and diagnose before editing further.",
        "Repeated failures suggest a wrong assumption; verify inputs first.",
        "Too many faults this session; read before writing.",
        "Failure count crossed the threshold; isolate the root cause.",
    ),
}


@dataclass(slots=True, frozen=True)
class EvaluationOptions:
    """Per-call overrides of the configured profile and aggression."""

    profile: str | None = None
    aggression: float | None = None


def has_continue_directive(history: Sequence[Message | Mapping[str, Any]]) -> bool:
    """Whether the latest user message says "continue" as a whole word."""
    for message in reversed(history):
        role = message.role if isinstance(message, Message) else message.get("role")
        if role != "user":
            continue
        content = message.content if isinstance(message, Message) else message.get("content")
        return isinstance(content, str) and bool(_CONTINUE_RE.search(content))
    return False


class TurnEvaluator:
    """Computes a ``TurnDecree`` from session state."""

    def __init__(self, settings: EvaluatorSettings | None = None) -> None:
        self._settings = settings or EvaluatorSettings()

    @property
    def settings(self) -> EvaluatorSettings:
        return self._settings

    def evaluate(
        self,
        history: Sequence[Message | Mapping[str, Any]],
        state: SessionRunState,
        options: EvaluationOptions | None = None,
    ) -> TurnDecree:
        """Compute the decree and persist its smoothing inputs on ``state``."""
        decree = self.compute(history, state, options)
        state.previous_confidence = decree.confidence
        if decree.strategy in (Strategy.EXECUTE, Strategy.HYPE):
            state.consecutive_successes += 1
        else:
            state.consecutive_successes = 0
        LOGGER.debug(
            "Decree: strategy=%s urgency=%s confidence=%.3f stop=%s",
            decree.strategy.value,
            decree.urgency.value,
            decree.confidence,
            decree.stop_condition.value,
        )
        return decree

    def compute(
        self,
        history: Sequence[Message | Mapping[str, Any]],
        state: SessionRunState,
        options: EvaluationOptions | None = None,
    ) -> TurnDecree:
        """Pure decree computation; does not touch ``state``."""
        cfg = self._settings
        profile = (options.profile if options and options.profile else None) or cfg.profile
        aggression = options.aggression if options and options.aggression is not None else cfg.aggression

        errors = state.total_error_count
        streak = state.victory_streak
        pressure = state.pressure

        strategy = self._strategy(errors, streak)
        urgency = self._urgency(pressure)
        structural = errors > cfg.structural_error_threshold

        if strategy is Strategy.HYPE:
            confidence = 2.2
        elif strategy is Strategy.DEBUG:
            confidence = 1.0
        else:
            confidence = 1.5
        if urgency is Urgency.HIGH:
            confidence *= 0.8
        elif urgency is Urgency.LOW:
            confidence *= 1.1
        streak_bonus = min(0.5, streak * 0.05)
        confidence += streak_bonus
        confidence += (pressure - 50) * 0.005
        confidence = cfg.smoothing_weight * confidence + (1 - cfg.smoothing_weight) * state.previous_confidence

        confidence *= cfg.profile_factors.get(profile, 1.0)
        confidence *= aggression
        confidence += streak_bonus
        if structural:
            confidence *= 0.85
        confidence = self._clamp(confidence)

        is_continue = has_continue_directive(history)
        if is_continue and strategy in (Strategy.EXECUTE, Strategy.HYPE):
            confidence = self._clamp(confidence + cfg.continue_bonus)

        return TurnDecree(
            strategy=strategy,
            urgency=urgency,
            confidence=confidence,
            stop_condition=StopCondition.STRUCTURAL_UNCERTAINTY if structural else StopCondition.LANDED,
            structural_uncertainty=structural,
            is_continue_directive=is_continue,
            rationale=self._rationale(strategy, state),
            blocked_by=tuple(state.recent_hotspots(cfg.hotspot_threshold)[: cfg.max_blocked_by]),
            profile=profile,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _strategy(self, errors: float, streak: float) -> Strategy:
        if errors >= self._settings.debug_error_threshold:
            return Strategy.DEBUG
        if streak >= self._settings.hype_streak_threshold:
            return Strategy.HYPE
        return Strategy.EXECUTE

    def _urgency(self, pressure: float) -> Urgency:
        if pressure < self._settings.high_urgency_pressure:
            return Urgency.HIGH
        if pressure > self._settings.low_urgency_pressure:
            return Urgency.LOW
        return Urgency.MEDIUM

    def _clamp(self, value: float) -> float:
        cfg = self._settings
        if not math.isfinite(value):
            return cfg.initial_confidence
        return max(cfg.min_confidence, min(cfg.max_confidence, value))

    @staticmethod
    def _rationale(strategy: Strategy, state: SessionRunState) -> str:
        pool = RATIONALE_POOL[strategy]
        seed = f"{state.victory_streak}|{state.total_error_count}|{state.pressure}|{len(state.tool_history)}"
        digest = hashlib.sha256(seed.encode("utf-8")).digest()
        choice = pool[int.from_bytes(digest[:4], "big") % len(pool)]
        return choice[:_MAX_RATIONALE_CHARS]
