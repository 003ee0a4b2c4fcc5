# adaptive_dread/logic/intent_scheduler.py

"""
Intent Scheduler

Queues requests for new narrative content and dispatches them one at a time,
no faster than the minimum generation interval.

Each request moves through:

    queued -> rate_limited -> generating -> validating -> enhancing? -> completed | failed

Priority decides acceptance and shedding only; dispatch order is arrival
order. The interval is measured between the end of one dispatch and the start
of the next, so a slow generation call does not shorten the wait that follows
it.

A failing generation call fails that one intent. The caller's future is
rejected with a GenerationFailure and the drain task moves on.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from adaptive_dread.config import get_config
from adaptive_dread.errors import GenerationFailure, GenerationTimeout, IntentRejected
from adaptive_dread.logic.collaborators import (
    BiasSource,
    CoherenceValidator,
    ContentScorer,
    EmotionSource,
    GenerationService,
    LexicalVariator,
    PassThroughLexicalVariator,
    PassThroughToneModulator,
    PassThroughValidator,
    ProfileSource,
    ResonanceSource,
    StaticBiasSource,
    StaticEmotionSource,
    StaticResonanceSource,
    ToneModulator,
)
from adaptive_dread.models import (
    DominantBias,
    DominantEmotion,
    IntentResult,
    PsychologicalProfile,
    ThematicElement,
    ValidationReport,
    clamp01,
)
from adaptive_dread.monitoring.metrics import metrics as prom

logger = logging.getLogger(__name__)

DEFAULT_INTENT_WEIGHTS: Dict[str, float] = {
    "existential_dread": 0.9,
    "psychological_decay": 0.85,
    "personal_horror": 0.9,
    "reality_distortion": 0.8,
    "isolation": 0.85,
    "paranoia": 0.8,
    "obsession": 0.85,
    "cosmic_horror": 0.75,
}
UNKNOWN_INTENT_WEIGHT = 0.5

PSYCHOLOGICAL_IMPACT_FLOOR = 0.7
HORROR_EFFECTIVENESS_FLOOR = 0.6
COHERENCE_FLOOR = 0.7
RESONANT_ELEMENT_COUNT = 3

# Knobs adaptation rules and immediate adaptations act on.
GENERATION_KNOBS = (
    "content_intensity",
    "psychological_depth",
    "personal_context_weight",
    "emotional_specificity",
    "horror_generation",
    "psychological_impact",
    "narrative_coherence",
)


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


class IntentStage(str, Enum):
    QUEUED = "queued"
    RATE_LIMITED = "rate_limited"
    GENERATING = "generating"
    VALIDATING = "validating"
    ENHANCING = "enhancing"
    COMPLETED = "completed"
    FAILED = "failed"


_request_ids = itertools.count(1)


@dataclass
class IntentRequest:
    intent_type: str
    context: str
    params: Dict[str, Any]
    priority: float
    submitted_at: float
    future: "asyncio.Future[IntentResult]"
    id: int = field(default_factory=lambda: next(_request_ids))
    stage: IntentStage = IntentStage.QUEUED

    def advance(self, stage: IntentStage) -> None:
        if stage is not self.stage:
            logger.debug(f"Intent #{self.id} {self.intent_type}: {self.stage.value} -> {stage.value}")
            self.stage = stage


@dataclass(frozen=True)
class IntentCompleted:
    """Posted to the core loop when an intent finishes."""
    request_id: int
    intent_type: str
    context: str
    result: IntentResult


@dataclass(frozen=True)
class IntentFailed:
    request_id: int
    intent_type: str
    stage: str
    error: str


@dataclass
class ContextBundle:
    profile: PsychologicalProfile
    emotion: Optional[DominantEmotion]
    bias: Optional[DominantBias]
    elements: List[ThematicElement]

    def describe(self) -> str:
        lines = [
            "Psychological State:",
            f"Fear Level: {self.profile.fear_level}",
            f"Obsession Level: {self.profile.obsession_level}",
            f"Aggression Level: {self.profile.aggression_level}",
        ]
        if self.emotion is not None:
            lines += ["", "Emotional State:",
                      f"Dominant Emotion: {self.emotion.emotion}",
                      f"Intensity: {self.emotion.intensity}"]
        if self.bias is not None:
            lines += ["", "Active Bias:", f"Type: {self.bias.bias_id}", f"Strength: {self.bias.strength}"]
        if self.elements:
            lines += ["", "Active Themes:"] + [f"- {e.content}" for e in self.elements]
        return "\n".join(lines)


class GenerationTuning:
    """Generation knobs, each in [0, 1], nudged by adaptation adjustments."""

    def __init__(self, knobs: Optional[Dict[str, float]] = None):
        self._knobs: Dict[str, float] = {name: 0.5 for name in GENERATION_KNOBS}
        for name, value in (knobs or {}).items():
            self._knobs[name] = clamp01(value)

    def adjust(self, name: str, magnitude: float) -> float:
        self._knobs[name] = clamp01(self._knobs.get(name, 0.5) + magnitude)
        return self._knobs[name]

    def get(self, name: str) -> float:
        return self._knobs.get(name, 0.5)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._knobs)

    def describe(self) -> str:
        return "\n".join(f"- {name}: {value:.2f}" for name, value in sorted(self._knobs.items()))


def psychological_multiplier(profile: PsychologicalProfile) -> float:
    fear = _lerp(0.8, 1.2, profile.fear_level)
    obsession = _lerp(0.9, 1.3, profile.obsession_level)
    aggression = _lerp(0.7, 1.1, profile.aggression_level)
    return (fear + obsession + aggression) / 3.0


def select_tone(profile: PsychologicalProfile) -> str:
    if profile.fear_level > 0.8:
        return "psychological_horror"
    if profile.obsession_level > 0.7:
        return "obsessive_horror"
    if profile.aggression_level > 0.6:
        return "aggressive_horror"
    return "subtle_dread"


def needs_enhancement(validation: ValidationReport, scores: Dict[str, float]) -> bool:
    if not validation.is_valid or validation.coherence_score < COHERENCE_FLOOR:
        return True
    if scores.get("psychological_impact", 0.0) < PSYCHOLOGICAL_IMPACT_FLOOR:
        return True
    return scores.get("horror_effectiveness", 0.0) < HORROR_EFFECTIVENESS_FLOOR


class IntentScheduler:
    """
    One-at-a-time content generation queue. Must be used from a single event
    loop; completions reach the rest of the core through ``on_complete``.
    """

    def __init__(
        self,
        generation: GenerationService,
        scorer: ContentScorer,
        *,
        profile_source: ProfileSource,
        emotion_source: Optional[EmotionSource] = None,
        bias_source: Optional[BiasSource] = None,
        resonance_source: Optional[ResonanceSource] = None,
        validator: Optional[CoherenceValidator] = None,
        tone_modulator: Optional[ToneModulator] = None,
        lexical_variator: Optional[LexicalVariator] = None,
        tuning: Optional[GenerationTuning] = None,
        on_complete: Optional[Callable[[Any], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        min_interval: Optional[float] = None,
        poll_interval: Optional[float] = None,
        generation_timeout: Optional[float] = None,
        max_pending: Optional[int] = None,
        min_priority: Optional[float] = None,
        timeline_size: Optional[int] = None,
    ):
        config = get_config()
        self.generation = generation
        self.scorer = scorer
        self.profile_source = profile_source
        self.emotion_source = emotion_source or StaticEmotionSource()
        self.bias_source = bias_source or StaticBiasSource()
        self.resonance_source = resonance_source or StaticResonanceSource()
        self.validator = validator or PassThroughValidator()
        self.tone_modulator = tone_modulator or PassThroughToneModulator()
        self.lexical_variator = lexical_variator or PassThroughLexicalVariator()
        self.tuning = tuning or GenerationTuning()
        self.on_complete = on_complete

        self._clock = clock
        self._sleep = sleep
        self.min_interval = min_interval if min_interval is not None else config.MIN_INTENT_INTERVAL
        self.poll_interval = poll_interval if poll_interval is not None else config.INTENT_POLL_INTERVAL
        self.generation_timeout = (
            generation_timeout if generation_timeout is not None else config.GENERATION_TIMEOUT
        )
        self.max_pending = max_pending if max_pending is not None else config.MAX_PENDING_INTENTS
        self.min_priority = min_priority if min_priority is not None else config.MIN_INTENT_PRIORITY

        self._weights: Dict[str, float] = dict(DEFAULT_INTENT_WEIGHTS)
        self._queue: Deque[IntentRequest] = deque()
        self._current: Optional[IntentRequest] = None
        self._active: List[str] = []
        self._timeline: Deque[Dict[str, Any]] = deque(
            maxlen=timeline_size if timeline_size is not None else config.TIMELINE_SIZE
        )
        self._last_dispatch: Optional[float] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._shutting_down = False

    # ---- weights and priority -----------------------------------------

    def intent_weight(self, intent_type: str) -> float:
        return self._weights.get(intent_type, UNKNOWN_INTENT_WEIGHT)

    def update_intent_weight(self, intent_type: str, weight: float) -> None:
        self._weights[intent_type] = clamp01(weight)

    async def calculate_priority(self, intent_type: str) -> float:
        priority = self.intent_weight(intent_type)
        priority *= psychological_multiplier(self.profile_source.current_profile())

        emotion = self.emotion_source.dominant_emotion()
        if emotion is not None:
            priority *= emotion.intensity

        bias = await self.bias_source.dominant_bias()
        if bias is not None:
            priority *= bias.strength

        return clamp01(priority)

    # ---- submission ---------------------------------------------------

    async def submit(
        self,
        intent_type: str,
        context: str = "",
        params: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Future[IntentResult]":
        """
        Queue an intent and return a future for its result. The future fails
        with IntentRejected if the request is refused or later shed, and with
        GenerationFailure if generation fails.
        """
        loop = asyncio.get_running_loop()
        priority = await self.calculate_priority(intent_type)
        future: asyncio.Future = loop.create_future()
        request = IntentRequest(
            intent_type=intent_type,
            context=context,
            params=dict(params or {}),
            priority=priority,
            submitted_at=self._clock(),
            future=future,
        )

        if self._shutting_down:
            self._reject(request, "scheduler is shutting down")
            return future
        if priority < self.min_priority:
            self._reject(request, f"priority below minimum {self.min_priority:.2f}")
            return future
        if len(self._queue) >= self.max_pending and not self._shed_for(request):
            self._reject(request, "queue full")
            return future

        self._queue.append(request)
        prom().INTENT_QUEUE_DEPTH.set(len(self._queue))
        logger.info(f"Queued intent #{request.id} {intent_type} (priority {priority:.2f})")
        self._ensure_draining()
        return future

    async def process_intent(
        self,
        intent_type: str,
        context: str = "",
        params: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        """Submit and wait for the result."""
        future = await self.submit(intent_type, context, params)
        return await future

    def _shed_for(self, newcomer: IntentRequest) -> bool:
        if not self._queue:
            return False
        lowest = min(self._queue, key=lambda r: r.priority)
        if lowest.priority >= newcomer.priority:
            return False
        self._queue.remove(lowest)
        self._reject(lowest, f"shed for higher-priority {newcomer.intent_type}")
        return True

    def _reject(self, request: IntentRequest, reason: str) -> None:
        logger.warning(f"Intent #{request.id} {request.intent_type} rejected: {reason}")
        request.advance(IntentStage.FAILED)
        prom().INTENT_OUTCOMES.labels(intent_type=request.intent_type, outcome="rejected").inc()
        if not request.future.done():
            request.future.set_exception(IntentRejected(request.intent_type, request.priority, reason))

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name="intent-drain")

    # ---- drain loop ---------------------------------------------------

    def seconds_until_dispatch(self) -> float:
        if self._last_dispatch is None:
            return 0.0
        return max(0.0, self.min_interval - (self._clock() - self._last_dispatch))

    async def _drain(self) -> None:
        while self._queue:
            remaining = self.seconds_until_dispatch()
            if remaining > 0:
                self._queue[0].advance(IntentStage.RATE_LIMITED)
                await self._sleep(min(self.poll_interval, remaining))
                continue

            request = self._queue.popleft()
            prom().INTENT_QUEUE_DEPTH.set(len(self._queue))
            self._current = request
            try:
                await self._dispatch(request)
            finally:
                self._current = None
                self._last_dispatch = self._clock()

    async def _dispatch(self, request: IntentRequest) -> None:
        request.advance(IntentStage.GENERATING)
        try:
            result = await self._run_pipeline(request)
        except GenerationFailure as e:
            self._fail(request, e)
            return
        except asyncio.CancelledError:
            self._fail(request, GenerationFailure("dispatch cancelled", intent_type=request.intent_type,
                                                  stage=request.stage.value))
            raise
        except Exception as e:
            logger.exception(f"Intent #{request.id} {request.intent_type} crashed in {request.stage.value}")
            failure = GenerationFailure(str(e), intent_type=request.intent_type, stage=request.stage.value)
            failure.__cause__ = e
            self._fail(request, failure)
            return

        request.advance(IntentStage.COMPLETED)
        self._active.append(request.intent_type)
        prom().INTENT_OUTCOMES.labels(intent_type=request.intent_type, outcome="completed").inc()
        logger.info(f"Intent #{request.id} {request.intent_type} completed (enhanced={result.enhanced})")
        self._post(IntentCompleted(request.id, request.intent_type, request.context, result))
        if not request.future.done():
            request.future.set_result(result)

    def _fail(self, request: IntentRequest, error: GenerationFailure) -> None:
        if error.intent_type is None:
            error.intent_type = request.intent_type
        if error.stage is None:
            error.stage = request.stage.value
        logger.error(f"Intent #{request.id} {request.intent_type} failed during {error.stage}: {error}")
        request.advance(IntentStage.FAILED)
        prom().INTENT_OUTCOMES.labels(intent_type=request.intent_type, outcome="failed").inc()
        self._post(IntentFailed(request.id, request.intent_type, error.stage, str(error)))
        if not request.future.done():
            request.future.set_exception(error)

    def _post(self, message: Any) -> None:
        if self.on_complete is None:
            return
        try:
            self.on_complete(message)
        except Exception:
            logger.exception(f"Completion hook rejected {type(message).__name__}")

    # ---- pipeline -----------------------------------------------------

    async def _run_pipeline(self, request: IntentRequest) -> IntentResult:
        bundle = await self.build_context(request)
        content = await self._generate(self._base_prompt(request, bundle), "intent_generation", request)
        scores = await self.scorer.score(content, request.intent_type)

        request.advance(IntentStage.VALIDATING)
        validation = await self._validate(content, request)

        enhanced = False
        techniques: List[str] = []
        if needs_enhancement(validation, scores):
            request.advance(IntentStage.ENHANCING)
            prom().ENHANCEMENT_PASSES.labels(intent_type=request.intent_type).inc()
            content, techniques = await self._enhance(request, content, scores, validation, bundle)
            scores = await self.scorer.score(content, request.intent_type)
            enhanced = True

        tone = select_tone(bundle.profile)
        content = await self.tone_modulator.modulate(content, tone, self.target_intensity(scores, bundle))
        followups = await self.resonance_source.suggest_followups(content, request.intent_type)

        completed_at = self._clock()
        self._timeline.append({
            "request_id": request.id,
            "intent_type": request.intent_type,
            "timestamp": completed_at,
            "content": content,
        })

        return IntentResult(
            intent_type=request.intent_type,
            generated_content=content,
            psychological_metrics=scores,
            coherence_scores=dict(validation.metrics) or {"coherence": validation.coherence_score},
            applied_techniques=techniques,
            suggested_followups=followups,
            tone=tone,
            enhanced=enhanced,
            completed_at=completed_at,
        )

    async def build_context(self, request: IntentRequest) -> ContextBundle:
        elements = self.resonance_source.resonant_elements()[:RESONANT_ELEMENT_COUNT]
        return ContextBundle(
            profile=self.profile_source.current_profile(),
            emotion=self.emotion_source.dominant_emotion(),
            bias=await self.bias_source.dominant_bias(),
            elements=elements,
        )

    def _base_prompt(self, request: IntentRequest, bundle: ContextBundle) -> str:
        return (
            f"Generate psychological horror content for intent: {request.intent_type}\n"
            f"Context: {request.context}\n\n"
            f"Psychological Context:\n{bundle.describe()}\n\n"
            f"Generation Tuning:\n{self.tuning.describe()}\n\n"
            "Focus on:\n"
            "- Deep psychological impact\n"
            "- Personal resonance\n"
            "- Horror effectiveness\n"
            "- Thematic coherence"
        )

    async def _validate(self, content: str, request: IntentRequest) -> ValidationReport:
        try:
            return await self.validator.validate(content, request.intent_type)
        except Exception as e:
            logger.warning(f"Validation of intent #{request.id} raised {e!r}; treating as failed validation")
            return ValidationReport(is_valid=False, coherence_score=0.0, violations=[f"validation_error: {e}"])

    async def _enhance(
        self,
        request: IntentRequest,
        content: str,
        scores: Dict[str, float],
        validation: ValidationReport,
        bundle: ContextBundle,
    ) -> Tuple[str, List[str]]:
        predicted = await self.emotion_source.predict_response(content, validation.violations)
        variation = await self.lexical_variator.vary(
            content, request.intent_type, self.target_intensity(scores, bundle)
        )
        prompt = (
            "Enhance psychological horror content using:\n"
            f"Original: {content}\n"
            f"Violations: {', '.join(validation.violations) or 'none'}\n"
            f"Bias Considerations: {bundle.bias.description if bundle.bias else ''}\n"
            f"Emotional Response: {', '.join(predicted)}\n"
            f"Lexical Variations: {variation.varied_text}"
        )
        enhanced = await self._generate(prompt, "content_enhancement", request)
        return enhanced, list(variation.used_themes)

    def target_intensity(self, scores: Dict[str, float], bundle: ContextBundle) -> float:
        base = scores.get("psychological_impact", 0.5)
        emotional = _lerp(0.8, 1.2, bundle.emotion.intensity) if bundle.emotion is not None else 1.0
        return clamp01(base * psychological_multiplier(bundle.profile) * emotional)

    async def _generate(self, prompt: str, tag: str, request: IntentRequest) -> str:
        try:
            return await asyncio.wait_for(self.generation.generate(prompt, tag), timeout=self.generation_timeout)
        except asyncio.TimeoutError:
            raise GenerationTimeout(
                f"{tag} timed out after {self.generation_timeout} seconds",
                intent_type=request.intent_type,
                stage=request.stage.value,
            ) from None

    # ---- read access and lifecycle ------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> Optional[IntentRequest]:
        return self._current

    def pending_intents(self) -> List[IntentRequest]:
        return list(self._queue)

    def active_intents(self) -> List[str]:
        return list(self._active)

    def clear_stale_intents(self) -> None:
        self._active.clear()

    def timeline(self) -> List[Dict[str, Any]]:
        return list(self._timeline)

    async def wait_idle(self) -> None:
        """Wait until the queue has been fully drained."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.wait({self._drain_task})

    async def shutdown(self) -> None:
        """Stop draining. Anything still queued or in flight fails."""
        self._shutting_down = True
        while self._queue:
            self._reject(self._queue.popleft(), "scheduler shut down")
        prom().INTENT_QUEUE_DEPTH.set(0)
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Intent scheduler shut down")
