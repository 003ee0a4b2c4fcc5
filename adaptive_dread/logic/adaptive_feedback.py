# adaptive_dread/logic/adaptive_feedback.py

"""
Metric & Adaptation Engine

Tracks a fixed set of decaying feedback metrics and turns them into
adjustments for the rest of the system.

Per tick:
  1. when the batch interval has elapsed, drain queued feedback events
     (reinforcement pass) and evaluate adaptation rules
  2. decay every metric by its curve at the time elapsed since the previous
     tick (decay pass)

High-intensity, critical or flagged events skip the queue: they are processed
on submission and drive a one-off adjustment that ignores rule cooldowns.

Failures inside the engine are logged and absorbed; a malformed event, rule
or adjustment handler never stops the tick.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union

from adaptive_dread.config import get_config
from adaptive_dread.errors import GenerationFailure, ParseFailure
from adaptive_dread.logic.adaptation_rules import AdaptationRule, default_rules
from adaptive_dread.logic.collaborators import GenerationService
from adaptive_dread.logic.decay_curves import CORE_METRIC_CURVES, PiecewiseLinearCurve
from adaptive_dread.logic.response_parsing import parse_score_map
from adaptive_dread.models import CORE_METRICS, FeedbackEvent
from adaptive_dread.monitoring.metrics import metrics as prom

logger = logging.getLogger(__name__)

RING_BUFFER_SIZE = 10
IMPACT_BLEND = 0.3
CONFIDENCE_STEP = 0.1
CORRELATION_BLEND = 0.2
IMMEDIATE_ADAPT_FLAG = "immediate_adapt"

RELATED_METRICS: Dict[str, List[str]] = {
    "fear_response": ["horror_effectiveness", "psychological_impact"],
    "personal_connection": ["personal_resonance", "narrative_coherence"],
    "psychological_state": ["psychological_impact", "personal_resonance"],
}
DEFAULT_RELATED = ["horror_effectiveness"]

AdjustmentHandler = Callable[[float, Optional[FeedbackEvent]], Union[None, Awaitable[None]]]


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def related_metrics_for(event_type: str) -> List[str]:
    return list(RELATED_METRICS.get(event_type, DEFAULT_RELATED))


@dataclass
class Metric:
    id: str
    decay_curve: PiecewiseLinearCurve
    value: float = 0.5
    confidence: float = 0.0
    correlations: Dict[str, float] = field(default_factory=dict)
    recent_events: Deque[str] = field(default_factory=lambda: deque(maxlen=RING_BUFFER_SIZE))
    last_updated: Optional[float] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "correlations": dict(self.correlations),
            "recent_events": list(self.recent_events),
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class AppliedAdjustment:
    target: str
    magnitude: float
    source: str
    handled: bool
    timestamp: float


# ---- impact analysis --------------------------------------------------


class ImpactAnalyzer:
    """Maps one feedback event to target impact scores for its metrics."""

    async def analyze(self, event: FeedbackEvent) -> Dict[str, float]:
        raise NotImplementedError("Subclasses must implement analyze")


class IntensityImpactAnalyzer(ImpactAnalyzer):
    """Uses the event intensity as the impact on every related metric."""

    async def analyze(self, event: FeedbackEvent) -> Dict[str, float]:
        impact = _clamp01(event.intensity)
        return {metric_id: impact for metric_id in event.related_metrics}


class GeneratedImpactAnalyzer(ImpactAnalyzer):
    """Asks the generation service how an event lands on each metric."""

    def __init__(self, service: GenerationService):
        self.service = service

    async def analyze(self, event: FeedbackEvent) -> Dict[str, float]:
        prompt = (
            "Analyze this psychological horror feedback:\n"
            f"Type: {event.type}\n"
            f"Intensity: {event.intensity}\n"
            f"Context: {event.context}\n\n"
            f"Respond with a JSON object scoring 0 to 1 each of: {', '.join(CORE_METRICS)}"
        )
        try:
            response = await self.service.generate(prompt, "feedback_analysis")
            return parse_score_map(response, CORE_METRICS)
        except ParseFailure as e:
            logger.warning(f"Feedback analysis for {event.type} unparseable: {e}")
        except GenerationFailure as e:
            logger.warning(f"Feedback analysis for {event.type} failed: {e}")
        return {}


# ---- immediate adaptation planning -------------------------------------


class AdaptationPlanner:
    """Produces the one-off adjustment map for an immediate adaptation."""

    async def plan(self, event: FeedbackEvent) -> Dict[str, float]:
        raise NotImplementedError("Subclasses must implement plan")


class HeuristicAdaptationPlanner(AdaptationPlanner):
    """
    Damps generation after strong responses so a spike does not feed on
    itself through the next generated piece.
    """

    async def plan(self, event: FeedbackEvent) -> Dict[str, float]:
        strength = _clamp01(event.intensity)
        if event.is_critical:
            return {"horror_generation": -0.3, "narrative_coherence": 0.1}
        if event.type == "fear_response":
            return {"horror_generation": -0.1 * strength, "psychological_impact": 0.1 * strength}
        if event.type == "personal_connection":
            return {"narrative_coherence": 0.1 * strength}
        if event.type == "psychological_state":
            return {"psychological_impact": 0.1 * strength}
        return {"horror_generation": -0.05 * strength}


class GeneratedAdaptationPlanner(AdaptationPlanner):
    """Asks the generation service for ``target: magnitude`` adjustments."""

    def __init__(self, service: GenerationService, targets: Optional[Iterable[str]] = None):
        self.service = service
        self.targets = list(targets) if targets is not None else None

    async def plan(self, event: FeedbackEvent) -> Dict[str, float]:
        prompt = (
            "Generate immediate adaptation for:\n"
            f"Feedback Type: {event.type}\n"
            f"Intensity: {event.intensity}\n"
            f"Context: {event.context}\n\n"
            "Respond with a JSON object mapping adjustment target to a signed magnitude between -1 and 1."
        )
        if self.targets:
            prompt += f"\nAllowed targets: {', '.join(self.targets)}"
        try:
            response = await self.service.generate(prompt, "immediate_adaptation")
            plan = parse_score_map(response, self.targets, clamp=False)
        except ParseFailure as e:
            logger.warning(f"Adaptation response for {event.type} unparseable, no adjustment: {e}")
            return {}
        except GenerationFailure as e:
            logger.warning(f"Adaptation request for {event.type} failed, no adjustment: {e}")
            return {}
        return {target: max(-1.0, min(1.0, magnitude)) for target, magnitude in plan.items()}


# ---- engine -------------------------------------------------------------


class AdaptiveFeedbackEngine:
    """Owns the metric table and the rule table. Call only from the core loop."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        analyzer: Optional[ImpactAnalyzer] = None,
        planner: Optional[AdaptationPlanner] = None,
        rules: Optional[Iterable[AdaptationRule]] = None,
        batch_interval: Optional[float] = None,
        immediate_intensity: Optional[float] = None,
        adjustment_log_size: Optional[int] = None,
    ):
        config = get_config()
        self._clock = clock
        self.analyzer = analyzer or IntensityImpactAnalyzer()
        self.planner = planner or HeuristicAdaptationPlanner()
        self.batch_interval = batch_interval if batch_interval is not None else config.FEEDBACK_INTERVAL
        self.immediate_intensity = (
            immediate_intensity if immediate_intensity is not None else config.IMMEDIATE_INTENSITY
        )

        self._metrics: Dict[str, Metric] = {}
        for metric_id, points in CORE_METRIC_CURVES.items():
            self._metrics[metric_id] = Metric(id=metric_id, decay_curve=PiecewiseLinearCurve(points))

        self._rules: List[AdaptationRule] = list(rules) if rules is not None else default_rules()
        self._pending: Deque[FeedbackEvent] = deque()
        self._targets: Dict[str, AdjustmentHandler] = {}
        self.adjustment_log: Deque[AppliedAdjustment] = deque(
            maxlen=adjustment_log_size if adjustment_log_size is not None else config.ADJUSTMENT_LOG_SIZE
        )

        now = clock()
        self._last_tick = now
        self._last_process = now
        self.processed_count = 0

    # ---- configuration ------------------------------------------------

    def register_adjustment_target(self, target: str, handler: AdjustmentHandler) -> None:
        self._targets[target] = handler

    def add_rule(self, rule: AdaptationRule) -> None:
        if any(r.id == rule.id for r in self._rules):
            raise ValueError(f"rule {rule.id!r} already configured")
        if not rule.condition.is_valid:
            logger.warning(f"Rule {rule.id} has malformed clauses and will never fire: {rule.condition}")
        self._rules.append(rule)

    def set_rule_active(self, rule_id: str, active: bool) -> bool:
        for rule in self._rules:
            if rule.id == rule_id:
                rule.is_active = active
                return True
        return False

    @property
    def rules(self) -> List[AdaptationRule]:
        return list(self._rules)

    # ---- read access --------------------------------------------------

    def metric(self, metric_id: str) -> Optional[Metric]:
        return self._metrics.get(metric_id)

    def current_metrics(self) -> Dict[str, float]:
        return {metric_id: m.value for metric_id, m in self._metrics.items()}

    def metric_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {metric_id: m.snapshot() for metric_id, m in self._metrics.items()}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def clear_feedback_queue(self) -> None:
        self._pending.clear()

    # ---- intake -------------------------------------------------------

    async def submit_feedback(
        self,
        event_type: str,
        intensity: float,
        context: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
        related_metrics: Optional[Iterable[str]] = None,
    ) -> FeedbackEvent:
        event = FeedbackEvent(
            type=event_type,
            intensity=intensity,
            context=context,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
            related_metrics=list(related_metrics) if related_metrics is not None else related_metrics_for(event_type),
        )
        await self.submit_event(event)
        return event

    async def submit_event(self, event: FeedbackEvent) -> None:
        if "timestamp" not in event.model_fields_set:
            event.timestamp = self._clock()
        if not event.related_metrics:
            event.related_metrics = related_metrics_for(event.type)
        if self.is_immediate(event):
            await self._process_event(event, path="immediate")
        else:
            self._pending.append(event)

    def is_immediate(self, event: FeedbackEvent) -> bool:
        """Decides both the processing path and whether the planner runs."""
        return (
            event.intensity > self.immediate_intensity
            or event.is_critical
            or bool(event.metadata.get(IMMEDIATE_ADAPT_FLAG))
        )

    # ---- tick ---------------------------------------------------------

    async def tick(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        if now - self._last_process >= self.batch_interval:
            await self.process_pending(now)
            self._last_process = now

        elapsed = max(0.0, now - self._last_tick)
        self._last_tick = now
        self.apply_decay(elapsed)

    async def process_pending(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        processed = 0
        while self._pending:
            event = self._pending.popleft()
            await self._process_event(event, path="batch")
            processed += 1
        await self.evaluate_rules(now)
        return processed

    async def _process_event(self, event: FeedbackEvent, path: str) -> None:
        try:
            analysis = await self.analyzer.analyze(event)
        except Exception:
            logger.exception(f"Impact analysis crashed for {event.type}; treating as no impact")
            analysis = {}

        now = self._clock()
        self._update_metrics(event, analysis, now)
        self._update_correlations(event)
        self.processed_count += 1
        prom().FEEDBACK_EVENTS.labels(event_type=event.type, path=path).inc()

        if self.is_immediate(event):
            await self._trigger_immediate_adaptation(event)

    def _update_metrics(self, event: FeedbackEvent, analysis: Mapping[str, float], now: float) -> None:
        for metric_id in event.related_metrics:
            metric = self._metrics.get(metric_id)
            if metric is None:
                logger.debug(f"Feedback {event.type} names unknown metric {metric_id}")
                continue
            if metric_id not in analysis:
                continue

            impact = _clamp01(analysis[metric_id])
            time_weight = metric.decay_curve.evaluate(max(0.0, now - event.timestamp))
            metric.value = _clamp01(_lerp(metric.value, impact, time_weight * IMPACT_BLEND))
            metric.confidence = min(metric.confidence + CONFIDENCE_STEP, 1.0)
            metric.recent_events.append(event.type)
            metric.last_updated = now
            prom().METRIC_VALUE.labels(metric_id=metric_id).set(metric.value)

    def _update_correlations(self, event: FeedbackEvent) -> None:
        related = [m for m in event.related_metrics if m in self._metrics]
        for metric_id in related:
            metric = self._metrics[metric_id]
            for other_id in related:
                if other_id == metric_id:
                    continue
                current = metric.correlations.get(other_id, 0.0)
                metric.correlations[other_id] = _clamp01(
                    _lerp(current, self.calculate_correlation(metric_id, other_id), CORRELATION_BLEND)
                )

    def calculate_correlation(self, metric_a: str, metric_b: str) -> float:
        a = self._metrics.get(metric_a)
        b = self._metrics.get(metric_b)
        if a is None or b is None:
            return 0.0
        events_a, events_b = set(a.recent_events), set(b.recent_events)
        if not events_a or not events_b:
            return 0.0
        return len(events_a & events_b) / max(len(events_a), len(events_b))

    def apply_decay(self, elapsed: float) -> None:
        for metric in self._metrics.values():
            factor = _clamp01(metric.decay_curve.evaluate(elapsed))
            metric.value = _clamp01(metric.value * factor)
            metric.confidence = _clamp01(metric.confidence * factor)

    # ---- rules --------------------------------------------------------

    async def evaluate_rules(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        values = self.current_metrics()
        fired: List[str] = []
        for rule in self._rules:
            try:
                if not rule.should_trigger(values, now):
                    continue
            except Exception:
                logger.exception(f"Rule {rule.id} evaluation failed; skipping")
                continue

            logger.info(f"Adaptation rule {rule.id} triggered ({rule.condition})")
            for target, magnitude in rule.adjustments.items():
                await self._apply_adjustment(target, magnitude, source=f"rule:{rule.id}")
            rule.mark_triggered(now)
            prom().RULE_TRIGGERS.labels(rule_id=rule.id).inc()
            fired.append(rule.id)
        return fired

    # ---- adjustments --------------------------------------------------

    async def _trigger_immediate_adaptation(self, event: FeedbackEvent) -> None:
        try:
            plan = await self.planner.plan(event)
        except Exception:
            logger.exception(f"Immediate adaptation planning failed for {event.type}")
            return
        for target, magnitude in plan.items():
            await self._apply_adjustment(target, magnitude, source=f"event:{event.type}", event=event)

    async def _apply_adjustment(
        self,
        target: str,
        magnitude: float,
        source: str,
        event: Optional[FeedbackEvent] = None,
    ) -> bool:
        handler = self._targets.get(target)
        handled = False
        if handler is None:
            logger.debug(f"No subsystem owns adjustment target {target}; skipped")
        else:
            try:
                outcome = handler(magnitude, event)
                if inspect.isawaitable(outcome):
                    await outcome
                handled = True
            except Exception:
                logger.exception(f"Adjustment handler for {target} failed")

        self.adjustment_log.append(AppliedAdjustment(
            target=target,
            magnitude=magnitude,
            source=source,
            handled=handled,
            timestamp=self._clock(),
        ))
        if handled:
            prom().ADJUSTMENTS_APPLIED.labels(target=target, source=source.split(":", 1)[0]).inc()
        return handled
