# adaptive_dread/models.py

"""Pydantic models exchanged between the loop's components and their collaborators."""

import time
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from adaptive_dread.logic.dynamic_values import DynamicValue

MetadataValue = Union[bool, int, float, str, bytes]

# Event types allowed to carry an intensity above 1.0.
CRITICAL_EVENT_TYPES = frozenset({"critical", "critical_response"})

CORE_METRICS = (
    "horror_effectiveness",
    "psychological_impact",
    "personal_resonance",
    "narrative_coherence",
)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class PsychologicalProfile(BaseModel):
    """Participant profile levels supplied by the host."""
    fear_level: float = 0.0
    obsession_level: float = 0.0
    aggression_level: float = 0.0

    @field_validator("fear_level", "obsession_level", "aggression_level")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return clamp01(v)

    def tension_signal(self) -> float:
        return self.fear_level * 0.4 + self.obsession_level * 0.3 + self.aggression_level * 0.3


class DominantEmotion(BaseModel):
    emotion: str
    intensity: float = 0.0


class DominantBias(BaseModel):
    bias_id: str
    strength: float = 0.0
    description: str = ""


class ThematicElement(BaseModel):
    content: str
    resonance: float = 0.0


class ValidationReport(BaseModel):
    """Outcome of an external coherence check."""
    is_valid: bool = True
    coherence_score: float = 1.0
    violations: List[str] = []
    metrics: Dict[str, float] = {}


class LexicalVariation(BaseModel):
    varied_text: str = ""
    used_themes: List[str] = []


class FeedbackEvent(BaseModel):
    """A single measured effect, consumed once by the metric engine."""
    type: str
    intensity: float
    context: str = ""
    timestamp: float = Field(default_factory=time.monotonic)
    metadata: Dict[str, MetadataValue] = {}
    related_metrics: List[str] = []

    @field_validator("metadata", mode="before")
    @classmethod
    def _typed_metadata(cls, v: Any) -> Dict[str, Any]:
        if v is None:
            return {}
        # Every value must fit the number/string/bool/blob variant.
        try:
            return {str(k): DynamicValue.from_python(val).as_python() for k, val in dict(v).items()}
        except TypeError as e:
            raise ValueError(str(e)) from e

    @model_validator(mode="after")
    def _bound_intensity(self) -> "FeedbackEvent":
        if self.type in CRITICAL_EVENT_TYPES:
            self.intensity = max(0.0, float(self.intensity))
        else:
            self.intensity = clamp01(self.intensity)
        return self

    @property
    def is_critical(self) -> bool:
        return self.type in CRITICAL_EVENT_TYPES


class IntentResult(BaseModel):
    """Content produced for one intent, with the readouts used to judge it."""
    intent_type: str
    generated_content: str
    psychological_metrics: Dict[str, float] = {}
    coherence_scores: Dict[str, float] = {}
    applied_techniques: List[str] = []
    suggested_followups: List[str] = []
    tone: Optional[str] = None
    enhanced: bool = False
    completed_at: float = 0.0
