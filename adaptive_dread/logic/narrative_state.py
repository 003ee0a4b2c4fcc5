# adaptive_dread/logic/narrative_state.py

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Mapping

from adaptive_dread.logic.dynamic_values import DynamicValue

DEFAULT_PHASE = "introduction"

DEFAULT_NARRATIVE_WEIGHTS: Mapping[str, float] = {
    "psychological": 0.4,
    "supernatural": 0.3,
    "existential": 0.2,
    "cosmic": 0.1,
}


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Scale non-negative weights so they sum to 1; all-zero input becomes uniform."""
    cleaned = {k: max(0.0, float(v)) for k, v in weights.items()}
    if not cleaned:
        return {}
    total = sum(cleaned.values())
    if total <= 0.0:
        share = 1.0 / len(cleaned)
        return {k: share for k in cleaned}
    return {k: v / total for k, v in cleaned.items()}


@dataclass
class PsychologicalState:
    """The canonical narrative state. Mutated only by PsychologicalStateStore."""
    tension: float = 0.0
    phase: str = DEFAULT_PHASE
    time_in_area: float = 0.0
    time_in_phase: float = 0.0
    time_since_last_event: float = 0.0
    recent_event_count: int = 0
    narrative_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_NARRATIVE_WEIGHTS))
    dynamic_variables: Dict[str, DynamicValue] = field(default_factory=dict)
    event_history: Dict[str, int] = field(default_factory=dict)
    is_critical: bool = False

    def clone(self) -> "PsychologicalState":
        # DynamicValue is frozen, so copying the containers is enough
        return PsychologicalState(
            tension=self.tension,
            phase=self.phase,
            time_in_area=self.time_in_area,
            time_in_phase=self.time_in_phase,
            time_since_last_event=self.time_since_last_event,
            recent_event_count=self.recent_event_count,
            narrative_weights=dict(self.narrative_weights),
            dynamic_variables=dict(self.dynamic_variables),
            event_history=dict(self.event_history),
            is_critical=self.is_critical,
        )

    def dominant_narrative(self) -> str:
        if not self.narrative_weights:
            return "psychological"
        return max(self.narrative_weights.items(), key=lambda kv: kv[1])[0]

    def to_dict(self) -> Dict[str, object]:
        return {
            "tension": self.tension,
            "phase": self.phase,
            "time_in_area": self.time_in_area,
            "time_in_phase": self.time_in_phase,
            "time_since_last_event": self.time_since_last_event,
            "recent_event_count": self.recent_event_count,
            "narrative_weights": dict(self.narrative_weights),
            "dynamic_variables": {k: v.as_python() for k, v in self.dynamic_variables.items()},
            "event_history": copy.copy(self.event_history),
            "is_critical": self.is_critical,
        }


@dataclass(frozen=True)
class StateTransition:
    previous: PsychologicalState
    new: PsychologicalState
    trigger: str
    significance: float
    timestamp: float
