# adaptive_dread/logic/state_store.py

"""
Psychological state store.

Owns the one canonical PsychologicalState for a session:
- event counters and critical-state detection
- timers, tension smoothing and natural tension decay
- renormalised narrative weights
- typed dynamic variables
- bounded undo stack and a transition history gated by significance
- persistence to a flat key/value snapshot

Nothing in here raises to the caller for bad data; malformed input is logged
and skipped so the tick loop keeps advancing.
"""

from __future__ import annotations

import json
import math
import logging
import re
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from adaptive_dread.config import get_config
from adaptive_dread.errors import ParseFailure, StateCorruption
from adaptive_dread.logic.dynamic_values import DynamicValue
from adaptive_dread.logic.event_bridge import (
    HIGH_TENSION,
    PHASE_CHANGED,
    STATE_CHANGED,
    NotificationBridge,
)
from adaptive_dread.logic.narrative_state import (
    DEFAULT_NARRATIVE_WEIGHTS,
    DEFAULT_PHASE,
    PsychologicalState,
    StateTransition,
    normalize_weights,
)
from adaptive_dread.logic.snapshot_store import SnapshotStore
from adaptive_dread.monitoring.metrics import metrics as prom

logger = logging.getLogger(__name__)

# Significance thresholds
TENSION_SIGNIFICANCE = 0.2
WEIGHT_SIGNIFICANCE = 0.15
PHASE_CHANGE_BONUS = 0.5

# Critical-state predicate
CRITICAL_EVENT_COUNT = 5
CRITICAL_TENSION = 0.8
RAPID_EVENT_WINDOW = 10.0

# Tension target components
EVENT_TENSION_STEP = 0.1
EVENT_TENSION_CAP = 0.5
AREA_TENSION_PERIOD = 300.0
AREA_TENSION_CAP = 0.3

_WEIGHT_LINE = re.compile(r"^\s*[-*]?\s*([A-Za-z_][\w ]*?)\s*:\s*(-?\d+(?:\.\d+)?)\s*%?\s*$")


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


class PsychologicalStateStore:
    """Single owner of the narrative state. Call only from the core loop."""

    def __init__(
        self,
        bridge: Optional[NotificationBridge] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        undo_depth: Optional[int] = None,
        tension_decay_rate: Optional[float] = None,
        tension_smoothing: Optional[float] = None,
        quiet_period: Optional[float] = None,
    ):
        config = get_config()
        self.bridge = bridge or NotificationBridge()
        self._clock = clock
        self.undo_depth = undo_depth if undo_depth is not None else config.UNDO_DEPTH
        self.tension_decay_rate = tension_decay_rate if tension_decay_rate is not None else config.TENSION_DECAY_RATE
        self.tension_smoothing = tension_smoothing if tension_smoothing is not None else config.TENSION_SMOOTHING
        self.quiet_period = quiet_period if quiet_period is not None else config.EVENT_QUIET_PERIOD

        self._state = PsychologicalState()
        self._undo: Deque[PsychologicalState] = deque(maxlen=self.undo_depth)
        self._history: List[StateTransition] = []

    # ---- read access --------------------------------------------------

    @property
    def state(self) -> PsychologicalState:
        """An independent copy of the current state."""
        return self._state.clone()

    @property
    def tension(self) -> float:
        return self._state.tension

    @property
    def phase(self) -> str:
        return self._state.phase

    @property
    def is_critical(self) -> bool:
        return self._state.is_critical

    @property
    def narrative_weights(self) -> Dict[str, float]:
        return dict(self._state.narrative_weights)

    @property
    def undo_depth_used(self) -> int:
        return len(self._undo)

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def get_recent_history(self, count: int = 5) -> List[StateTransition]:
        if count <= 0:
            return []
        return self._history[-count:]

    # ---- events -------------------------------------------------------

    def record_event(self, event_type: str) -> None:
        self._push_undo()

        st = self._state
        st.recent_event_count += 1
        st.time_since_last_event = 0.0
        st.event_history[event_type] = st.event_history.get(event_type, 0) + 1

        st.dynamic_variables[f"last_{event_type}_event_time"] = DynamicValue.from_python(self._clock())
        count_key = f"{event_type}_event_count"
        previous = st.dynamic_variables.get(count_key)
        prior_count = previous.value if previous is not None and isinstance(previous.value, (int, float)) else 0
        st.dynamic_variables[count_key] = DynamicValue.from_python(int(prior_count) + 1)

        self._check_critical()

    def _push_undo(self) -> None:
        # deque(maxlen) drops the oldest snapshot once full
        self._undo.append(self._state.clone())

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._state = self._undo.pop()
        return True

    def _check_critical(self) -> None:
        st = self._state
        too_many_events = st.recent_event_count >= CRITICAL_EVENT_COUNT
        high_tension = st.tension > CRITICAL_TENSION
        rapid_events = st.time_since_last_event < RAPID_EVENT_WINDOW

        was_critical = st.is_critical
        st.is_critical = too_many_events or (high_tension and rapid_events)

        if st.is_critical and not was_critical:
            logger.info(
                "Critical state entered (events=%d, tension=%.2f)", st.recent_event_count, st.tension
            )
            self.bridge.publish(HIGH_TENSION, {
                "reason": "critical_state",
                "tension": st.tension,
                "recent_event_count": st.recent_event_count,
            })
        elif was_critical and not st.is_critical:
            logger.debug("Critical state cleared")

    # ---- time ---------------------------------------------------------

    def tick(self, dt: float) -> None:
        if dt <= 0:
            return
        st = self._state
        st.time_in_area += dt
        st.time_in_phase += dt
        st.time_since_last_event += dt

        if st.time_since_last_event > self.quiet_period and st.recent_event_count > 0:
            st.recent_event_count -= 1

        if not st.is_critical and st.tension > 0:
            st.tension = max(0.0, st.tension - dt * self.tension_decay_rate)

        self._check_critical()

    def update_tension(self, profile_signal: float) -> float:
        st = self._state
        event_modifier = min(st.recent_event_count * EVENT_TENSION_STEP, EVENT_TENSION_CAP)
        time_tension = min(st.time_in_area / AREA_TENSION_PERIOD, AREA_TENSION_CAP)
        target = _clamp01(profile_signal + event_modifier + time_tension)
        st.tension = _clamp01(_lerp(st.tension, target, self.tension_smoothing))
        return st.tension

    def nudge_tension(self, target: float, factor: float = 0.3) -> float:
        st = self._state
        st.tension = _clamp01(_lerp(st.tension, _clamp01(target), _clamp01(factor)))
        return st.tension

    def reset_area(self) -> None:
        self._state.time_in_area = 0.0

    # ---- significance -------------------------------------------------

    def evaluate_significance(self, previous: PsychologicalState) -> bool:
        current = self._state
        tension_delta = abs(current.tension - previous.tension)
        phase_changed = current.phase != previous.phase
        max_weight_delta = self._max_weight_delta(previous)

        if not (tension_delta > TENSION_SIGNIFICANCE or phase_changed or max_weight_delta > WEIGHT_SIGNIFICANCE):
            return False

        significance = (PHASE_CHANGE_BONUS if phase_changed else 0.0) + tension_delta + max_weight_delta
        transition = StateTransition(
            previous=previous.clone(),
            new=current.clone(),
            trigger=self._determine_trigger(previous),
            significance=_clamp01(significance),
            timestamp=self._clock(),
        )
        self._history.append(transition)
        prom().STATE_TRANSITIONS.labels(trigger=transition.trigger).inc()
        logger.debug(f"State transition recorded: {transition.trigger} ({transition.significance:.2f})")
        self.bridge.publish(STATE_CHANGED, transition)
        return True

    def _max_weight_delta(self, previous: PsychologicalState) -> float:
        keys = set(self._state.narrative_weights) | set(previous.narrative_weights)
        deltas = [
            abs(self._state.narrative_weights.get(k, 0.0) - previous.narrative_weights.get(k, 0.0))
            for k in keys
        ]
        return max(deltas, default=0.0)

    def _determine_trigger(self, previous: PsychologicalState) -> str:
        current = self._state
        if current.phase != previous.phase:
            return "phase_change"
        if current.tension > previous.tension + TENSION_SIGNIFICANCE:
            return "tension_spike"
        if current.tension < previous.tension - TENSION_SIGNIFICANCE:
            return "tension_release"
        return "gradual_change"

    # ---- phase --------------------------------------------------------

    def transition_phase(self, new_phase: str) -> None:
        old_phase = self._state.phase
        self._state.phase = new_phase
        self._state.time_in_phase = 0.0
        self.bridge.publish(PHASE_CHANGED, {"old_phase": old_phase, "new_phase": new_phase})

    # ---- narrative weights --------------------------------------------

    def set_narrative_weight(self, theme: str, weight: float) -> Dict[str, float]:
        weights = dict(self._state.narrative_weights)
        weights[theme] = _clamp01(weight)
        self._state.narrative_weights = normalize_weights(weights)
        return dict(self._state.narrative_weights)

    def set_narrative_weights(self, weights: Mapping[str, float]) -> Dict[str, float]:
        merged = dict(self._state.narrative_weights)
        merged.update({k: _clamp01(v) for k, v in weights.items()})
        self._state.narrative_weights = normalize_weights(merged)
        return dict(self._state.narrative_weights)

    def blend_narrative_weights(self, thematic_weights: Mapping[str, float], factor: float = 0.2) -> Dict[str, float]:
        """Pull known themes toward ``thematic_weights``; unknown themes are ignored."""
        weights = dict(self._state.narrative_weights)
        for theme, target in thematic_weights.items():
            if theme in weights:
                weights[theme] = _lerp(weights[theme], _clamp01(target), factor)
        self._state.narrative_weights = normalize_weights(weights)
        return dict(self._state.narrative_weights)

    def apply_weight_suggestion(self, text: str) -> bool:
        """
        Apply ``aspect: weight`` lines from generated text. Returns False (and
        leaves the weights alone) when nothing usable could be parsed.
        """
        try:
            suggested = parse_weight_suggestion(text)
        except ParseFailure as e:
            logger.warning(f"Ignoring narrative weight suggestion: {e}")
            return False

        self.set_narrative_weights(suggested)
        dominant = max(suggested.items(), key=lambda kv: kv[1])[0]
        self._state.dynamic_variables["dominant_narrative"] = DynamicValue.from_python(dominant)
        return True

    # ---- dynamic variables --------------------------------------------

    def set_dynamic_variable(self, key: str, value: Any) -> bool:
        try:
            self._state.dynamic_variables[key] = DynamicValue.from_python(value)
        except TypeError as e:
            logger.warning(f"Dropping dynamic variable {key!r}: {e}")
            return False
        return True

    def get_dynamic_variable(self, key: str, default: Any = None) -> Any:
        value = self._state.dynamic_variables.get(key)
        return value.as_python() if value is not None else default

    # ---- lifecycle ----------------------------------------------------

    def reset(self) -> None:
        self._state = PsychologicalState()
        self._undo.clear()

    # ---- persistence --------------------------------------------------

    def snapshot(self) -> Dict[str, str]:
        st = self._state
        variables: Dict[str, Any] = {}
        for key, value in st.dynamic_variables.items():
            try:
                encoded = value.to_json()
                json.dumps(encoded)
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping unserializable dynamic variable {key!r}: {e}")
                continue
            variables[key] = encoded

        return {
            "phase": st.phase,
            "tension": repr(float(st.tension)),
            "time_in_area": repr(float(st.time_in_area)),
            "time_in_phase": repr(float(st.time_in_phase)),
            "narrative_weights": json.dumps(st.narrative_weights),
            "dynamic_variables": json.dumps(variables),
        }

    def save(self, store: SnapshotStore) -> bool:
        return store.write(self.snapshot())

    def load(self, store: SnapshotStore) -> List[StateCorruption]:
        """Replace the current state from ``store``; returns the fields that were skipped."""
        try:
            raw = store.read() or {}
        except Exception as e:
            logger.warning(f"Snapshot unreadable, using defaults: {e}")
            raw = {}
        return self.restore(raw)

    def restore(self, raw: Mapping[str, Any]) -> List[StateCorruption]:
        problems: List[StateCorruption] = []
        st = PsychologicalState()

        phase = raw.get("phase")
        if isinstance(phase, str) and phase.strip():
            st.phase = phase
        elif phase not in (None, ""):
            problems.append(StateCorruption("phase", f"expected text, got {type(phase).__name__}"))

        for field_name, bounded in (("tension", True), ("time_in_area", False), ("time_in_phase", False)):
            if field_name not in raw or raw[field_name] in (None, ""):
                continue
            try:
                number = float(raw[field_name])
            except (TypeError, ValueError) as e:
                problems.append(StateCorruption(field_name, str(e)))
                continue
            if not math.isfinite(number):
                problems.append(StateCorruption(field_name, f"not finite: {number}"))
                continue
            setattr(st, field_name, _clamp01(number) if bounded else max(0.0, number))

        weights = self._decode_weights(raw.get("narrative_weights"), problems)
        st.narrative_weights = normalize_weights(weights) if weights else dict(DEFAULT_NARRATIVE_WEIGHTS)

        st.dynamic_variables = self._decode_variables(raw.get("dynamic_variables"), problems)

        for problem in problems:
            logger.warning(f"State snapshot: {problem}")

        self._state = st
        self._undo.clear()
        return problems

    @staticmethod
    def _decode_weights(raw: Any, problems: List[StateCorruption]) -> Dict[str, float]:
        if raw in (None, ""):
            return {}
        try:
            decoded = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError as e:
            problems.append(StateCorruption("narrative_weights", str(e)))
            return {}
        if not isinstance(decoded, Mapping):
            problems.append(StateCorruption("narrative_weights", "not a mapping"))
            return {}

        weights: Dict[str, float] = {}
        for theme, value in decoded.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                problems.append(StateCorruption(f"narrative_weights.{theme}", f"not a number: {value!r}"))
                continue
            weights[str(theme)] = float(value)
        return weights

    @staticmethod
    def _decode_variables(raw: Any, problems: List[StateCorruption]) -> Dict[str, DynamicValue]:
        if raw in (None, ""):
            return {}
        try:
            decoded = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError as e:
            problems.append(StateCorruption("dynamic_variables", str(e)))
            return {}
        if not isinstance(decoded, Mapping):
            problems.append(StateCorruption("dynamic_variables", "not a mapping"))
            return {}

        variables: Dict[str, DynamicValue] = {}
        for key, payload in decoded.items():
            try:
                variables[str(key)] = DynamicValue.from_json(payload)
            except StateCorruption as e:
                problems.append(StateCorruption(f"dynamic_variables.{key}", e.reason))
        return variables


def parse_weight_suggestion(text: str) -> Dict[str, float]:
    """
    Parse ``aspect: weight`` lines into a normalised mapping.
    Raises ParseFailure when no line carries a usable positive weight.
    """
    if not text or not isinstance(text, str):
        raise ParseFailure("empty weight suggestion", raw_text=text or "")

    weights: Dict[str, float] = {}
    for line in text.splitlines():
        match = _WEIGHT_LINE.match(line)
        if not match:
            continue
        aspect = match.group(1).strip().lower().replace(" ", "_")
        value = float(match.group(2))
        if value < 0:
            continue
        weights[aspect] = value

    total = sum(weights.values())
    if total <= 0:
        raise ParseFailure("no aspect weights found", raw_text=text)
    return {k: v / total for k, v in weights.items()}


__all__ = [
    "PsychologicalStateStore",
    "parse_weight_suggestion",
    "DEFAULT_PHASE",
]
