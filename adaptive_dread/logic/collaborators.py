# adaptive_dread/logic/collaborators.py

"""
Interfaces for everything the core loop consumes but does not own, plus
simple implementations hosts can use when a subsystem is absent.

All of these are handed to NarrativeCore at construction; nothing is looked
up through a global.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from adaptive_dread.errors import ParseFailure
from adaptive_dread.models import (
    DominantBias,
    DominantEmotion,
    LexicalVariation,
    PsychologicalProfile,
    ThematicElement,
    ValidationReport,
)
from adaptive_dread.logic.response_parsing import parse_score_map

logger = logging.getLogger(__name__)

# Fixed metric set every generated piece is scored on.
CONTENT_METRICS = ("psychological_impact", "horror_effectiveness", "personal_resonance", "coherence")


class GenerationService:
    """
    External text generation. Implementations raise GenerationTimeout or
    GenerationServiceError on failure.
    """

    async def generate(self, prompt: str, tag: Optional[str] = None) -> str:
        raise NotImplementedError("Subclasses must implement generate")


class ProfileSource:
    def current_profile(self) -> PsychologicalProfile:
        raise NotImplementedError("Subclasses must implement current_profile")


class EmotionSource:
    def dominant_emotion(self) -> Optional[DominantEmotion]:
        raise NotImplementedError("Subclasses must implement dominant_emotion")

    async def predict_response(self, content: str, violations: Sequence[str]) -> List[str]:
        return []


class BiasSource:
    async def dominant_bias(self) -> Optional[DominantBias]:
        raise NotImplementedError("Subclasses must implement dominant_bias")


class ResonanceSource:
    def resonant_elements(self) -> List[ThematicElement]:
        raise NotImplementedError("Subclasses must implement resonant_elements")

    async def suggest_followups(self, content: str, intent_type: str) -> List[str]:
        return []


class CoherenceValidator:
    async def validate(self, content: str, intent_type: str) -> ValidationReport:
        raise NotImplementedError("Subclasses must implement validate")


class ToneModulator:
    async def modulate(self, content: str, tone_id: str, intensity: float) -> str:
        raise NotImplementedError("Subclasses must implement modulate")


class LexicalVariator:
    async def vary(self, content: str, intent_type: str, intensity: float) -> LexicalVariation:
        raise NotImplementedError("Subclasses must implement vary")


class ContentScorer:
    async def score(self, content: str, intent_type: str) -> Dict[str, float]:
        raise NotImplementedError("Subclasses must implement score")


# ---- static / pass-through implementations -----------------------------


class StaticProfileSource(ProfileSource):
    def __init__(self, profile: Optional[PsychologicalProfile] = None):
        self.profile = profile or PsychologicalProfile()

    def current_profile(self) -> PsychologicalProfile:
        return self.profile


class StaticEmotionSource(EmotionSource):
    def __init__(self, emotion: Optional[DominantEmotion] = None, predictions: Iterable[str] = ()):
        self.emotion = emotion
        self.predictions = list(predictions)

    def dominant_emotion(self) -> Optional[DominantEmotion]:
        return self.emotion

    async def predict_response(self, content: str, violations: Sequence[str]) -> List[str]:
        return list(self.predictions)


class StaticBiasSource(BiasSource):
    def __init__(self, bias: Optional[DominantBias] = None):
        self.bias = bias

    async def dominant_bias(self) -> Optional[DominantBias]:
        return self.bias


class StaticResonanceSource(ResonanceSource):
    def __init__(self, elements: Iterable[ThematicElement] = (), followups: Iterable[str] = ()):
        self.elements = sorted(elements, key=lambda e: e.resonance, reverse=True)
        self.followups = list(followups)

    def resonant_elements(self) -> List[ThematicElement]:
        return list(self.elements)

    async def suggest_followups(self, content: str, intent_type: str) -> List[str]:
        return list(self.followups)


class PassThroughValidator(CoherenceValidator):
    async def validate(self, content: str, intent_type: str) -> ValidationReport:
        return ValidationReport(is_valid=bool(content), coherence_score=1.0 if content else 0.0,
                                violations=[] if content else ["empty_content"])


class PassThroughToneModulator(ToneModulator):
    async def modulate(self, content: str, tone_id: str, intensity: float) -> str:
        return content


class PassThroughLexicalVariator(LexicalVariator):
    async def vary(self, content: str, intent_type: str, intensity: float) -> LexicalVariation:
        return LexicalVariation(varied_text=content, used_themes=[])


class StaticContentScorer(ContentScorer):
    def __init__(self, scores: Optional[Dict[str, float]] = None):
        self.scores = dict(scores or {})

    async def score(self, content: str, intent_type: str) -> Dict[str, float]:
        return {metric: self.scores.get(metric, 0.0) for metric in CONTENT_METRICS}


class GeneratedContentScorer(ContentScorer):
    """Asks the generation service to rate content on the fixed metric set."""

    def __init__(self, service: GenerationService):
        self.service = service

    async def score(self, content: str, intent_type: str) -> Dict[str, float]:
        prompt = (
            "Rate this horror content from 0 to 1 on each metric. Respond with a JSON object "
            f"using exactly these keys: {', '.join(CONTENT_METRICS)}.\n\n"
            f"Intent: {intent_type}\n\n{content}"
        )
        response = await self.service.generate(prompt, "metric_analysis")
        try:
            parsed = parse_score_map(response, CONTENT_METRICS)
        except ParseFailure as e:
            logger.warning(f"Metric analysis unparseable for {intent_type}: {e}")
            parsed = {}
        return {metric: parsed.get(metric, 0.0) for metric in CONTENT_METRICS}


__all__ = [
    "CONTENT_METRICS",
    "GenerationService",
    "ProfileSource",
    "EmotionSource",
    "BiasSource",
    "ResonanceSource",
    "CoherenceValidator",
    "ToneModulator",
    "LexicalVariator",
    "ContentScorer",
    "StaticProfileSource",
    "StaticEmotionSource",
    "StaticBiasSource",
    "StaticResonanceSource",
    "PassThroughValidator",
    "PassThroughToneModulator",
    "PassThroughLexicalVariator",
    "StaticContentScorer",
    "GeneratedContentScorer",
]
