# adaptive_dread/core.py

"""
NarrativeCore wires the state store, the metric engine and the intent
scheduler into one closed loop owned by a single asyncio event loop.

The host drives it, either by calling ``tick`` from its own timer or by
running ``run(interval)`` as a task. Intent completions never touch shared
state directly: the scheduler posts a message, and the next tick applies it.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from adaptive_dread.config import get_config
from adaptive_dread.errors import StateCorruption
from adaptive_dread.logic.adaptation_rules import AdaptationRule
from adaptive_dread.logic.adaptive_feedback import (
    AdaptationPlanner,
    AdaptiveFeedbackEngine,
    ImpactAnalyzer,
)
from adaptive_dread.logic.collaborators import (
    BiasSource,
    CoherenceValidator,
    ContentScorer,
    EmotionSource,
    GeneratedContentScorer,
    GenerationService,
    LexicalVariator,
    ProfileSource,
    ResonanceSource,
    ToneModulator,
)
from adaptive_dread.logic.event_bridge import INTENT_COMPLETED, INTENT_FAILED, NotificationBridge
from adaptive_dread.logic.intent_scheduler import (
    GENERATION_KNOBS,
    GenerationTuning,
    IntentCompleted,
    IntentFailed,
    IntentScheduler,
)
from adaptive_dread.logic.snapshot_store import SnapshotStore
from adaptive_dread.logic.state_store import PsychologicalStateStore
from adaptive_dread.models import FeedbackEvent, IntentResult

logger = logging.getLogger(__name__)


class NarrativeCore:
    """Owns one narrative session. Every collaborator is passed in."""

    def __init__(
        self,
        generation: GenerationService,
        *,
        profile_source: ProfileSource,
        emotion_source: Optional[EmotionSource] = None,
        bias_source: Optional[BiasSource] = None,
        resonance_source: Optional[ResonanceSource] = None,
        validator: Optional[CoherenceValidator] = None,
        tone_modulator: Optional[ToneModulator] = None,
        lexical_variator: Optional[LexicalVariator] = None,
        scorer: Optional[ContentScorer] = None,
        bridge: Optional[NotificationBridge] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        analyzer: Optional[ImpactAnalyzer] = None,
        planner: Optional[AdaptationPlanner] = None,
        rules: Optional[Iterable[AdaptationRule]] = None,
        tuning: Optional[GenerationTuning] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **scheduler_options: Any,
    ):
        self.bridge = bridge or NotificationBridge()
        self.profile_source = profile_source
        self.snapshot_store = snapshot_store
        self._clock = clock
        self._sleep = sleep

        self.store = PsychologicalStateStore(self.bridge, clock=clock)
        self.engine = AdaptiveFeedbackEngine(clock=clock, analyzer=analyzer, planner=planner, rules=rules)
        self.tuning = tuning or GenerationTuning()
        self.scheduler = IntentScheduler(
            generation,
            scorer or GeneratedContentScorer(generation),
            profile_source=profile_source,
            emotion_source=emotion_source,
            bias_source=bias_source,
            resonance_source=resonance_source,
            validator=validator,
            tone_modulator=tone_modulator,
            lexical_variator=lexical_variator,
            tuning=self.tuning,
            on_complete=self.post,
            clock=clock,
            sleep=sleep,
            **scheduler_options,
        )
        for knob in GENERATION_KNOBS:
            self.engine.register_adjustment_target(knob, self._tuning_handler(knob))

        self._inbox: Deque[Any] = deque()
        self._baseline = self.store.state
        self._last_tick: Optional[float] = None
        self._running = False
        self.tick_count = 0

    def _tuning_handler(self, knob: str):
        def handler(magnitude: float, event: Optional[FeedbackEvent]) -> None:
            value = self.tuning.adjust(knob, magnitude)
            logger.debug(f"Tuning {knob} adjusted by {magnitude:+.2f} to {value:.2f}")
        return handler

    # ---- inputs ---------------------------------------------------------

    def post(self, message: Any) -> None:
        """Queue a completion message; applied at the start of the next tick."""
        self._inbox.append(message)

    async def submit_intent(
        self,
        intent_type: str,
        context: str = "",
        params: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Future[IntentResult]":
        return await self.scheduler.submit(intent_type, context, params)

    async def submit_feedback(
        self,
        event_type: str,
        intensity: float,
        context: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> FeedbackEvent:
        return await self.engine.submit_feedback(event_type, intensity, context, metadata)

    def record_event(self, event_type: str) -> None:
        self.store.record_event(event_type)

    # ---- loop -----------------------------------------------------------

    async def tick(self, dt: Optional[float] = None) -> None:
        """
        One pass of the loop: apply queued completions, advance the store,
        re-derive tension, check significance, then advance the engine.
        """
        now = self._clock()
        if dt is None:
            dt = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now

        await self._apply_messages()

        self.store.tick(dt)
        self.store.update_tension(self.profile_source.current_profile().tension_signal())
        if self.store.evaluate_significance(self._baseline):
            self._baseline = self.store.state

        await self.engine.tick(now)
        self.tick_count += 1

    async def _apply_messages(self) -> None:
        while self._inbox:
            message = self._inbox.popleft()
            try:
                if isinstance(message, IntentCompleted):
                    await self._apply_completion(message)
                elif isinstance(message, IntentFailed):
                    self.bridge.publish(INTENT_FAILED, {
                        "request_id": message.request_id,
                        "intent_type": message.intent_type,
                        "stage": message.stage,
                        "error": message.error,
                    })
                else:
                    logger.warning(f"Ignoring unknown core message {type(message).__name__}")
            except Exception:
                logger.exception(f"Failed to apply {type(message).__name__}")

    async def _apply_completion(self, message: IntentCompleted) -> None:
        result = message.result
        self.store.record_event(message.intent_type)
        impact = result.psychological_metrics.get("psychological_impact")
        if impact is not None:
            self.store.nudge_tension(impact)
        await self.engine.submit_feedback(
            message.intent_type,
            result.psychological_metrics.get("horror_effectiveness", 0.5),
            message.context,
        )
        self.bridge.publish(INTENT_COMPLETED, result)

    async def run(self, interval: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds until ``stop`` is called."""
        interval = interval if interval is not None else get_config().STATE_UPDATE_INTERVAL
        self._running = True
        logger.info(f"Narrative core running, tick interval {interval}s")
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Narrative core tick failed")
            await self._sleep(interval)

    def stop(self) -> None:
        self._running = False

    async def shutdown(self) -> None:
        self.stop()
        await self.scheduler.shutdown()
        await self._apply_messages()
        if self.snapshot_store is not None:
            self.save()
        await self.bridge.drain()

    # ---- persistence ----------------------------------------------------

    def save(self) -> bool:
        if self.snapshot_store is None:
            raise RuntimeError("no snapshot store configured")
        saved = self.store.save(self.snapshot_store)
        if not saved:
            logger.warning("Narrative state was not persisted")
        return saved

    def load(self) -> List[StateCorruption]:
        if self.snapshot_store is None:
            raise RuntimeError("no snapshot store configured")
        problems = self.store.load(self.snapshot_store)
        self._baseline = self.store.state
        return problems

    # ---- read access ----------------------------------------------------

    def status(self) -> Dict[str, Any]:
        state = self.store.state
        return {
            "phase": state.phase,
            "tension": state.tension,
            "is_critical": state.is_critical,
            "narrative_weights": dict(state.narrative_weights),
            "metrics": self.engine.current_metrics(),
            "pending_intents": self.scheduler.pending_count,
            "pending_feedback": self.engine.pending_count,
            "tuning": self.tuning.as_dict(),
            "tick_count": self.tick_count,
        }
