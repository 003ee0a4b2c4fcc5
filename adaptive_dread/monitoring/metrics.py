# adaptive_dread/monitoring/metrics.py

import logging
import time
from contextlib import contextmanager
from functools import lru_cache
from types import SimpleNamespace
from typing import Any, Dict, Tuple, Type, Union

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

CollectorType = Union[Counter, Gauge, Histogram]

_COLLECTOR_DEFINITIONS: Dict[str, Tuple[Type[CollectorType], Tuple[Any, ...], Dict[str, Any]]] = {
    # Metric engine
    "FEEDBACK_EVENTS": (
        Counter,
        ("dread_feedback_events_total", "Feedback events processed", ["event_type", "path"]),
        {},
    ),
    "RULE_TRIGGERS": (
        Counter,
        ("dread_rule_triggers_total", "Adaptation rule firings", ["rule_id"]),
        {},
    ),
    "ADJUSTMENTS_APPLIED": (
        Counter,
        ("dread_adjustments_total", "Adjustments delegated to subsystems", ["target", "source"]),
        {},
    ),
    "METRIC_VALUE": (
        Gauge,
        ("dread_metric_value", "Current feedback metric value", ["metric_id"]),
        {},
    ),
    # Intent scheduler
    "INTENT_OUTCOMES": (
        Counter,
        ("dread_intent_outcomes_total", "Intent completions by outcome", ["intent_type", "outcome"]),
        {},
    ),
    "INTENT_QUEUE_DEPTH": (
        Gauge,
        ("dread_intent_queue_depth", "Intents waiting to be dispatched"),
        {},
    ),
    "GENERATION_LATENCY": (
        Histogram,
        ("dread_generation_latency_seconds", "Generation service latency in seconds", ["tag"]),
        {},
    ),
    "ENHANCEMENT_PASSES": (
        Counter,
        ("dread_enhancement_passes_total", "Enhancement passes run", ["intent_type"]),
        {},
    ),
    # State store
    "STATE_TRANSITIONS": (
        Counter,
        ("dread_state_transitions_total", "Significant state transitions", ["trigger"]),
        {},
    ),
}


def _get_registry_collectors() -> Dict[str, CollectorType]:
    """Return the registry collectors mapping for reuse."""

    return getattr(REGISTRY, "_names_to_collectors", {})


def _get_or_create_collector(
    collector_cls: Type[CollectorType],
    *args: Any,
    **kwargs: Any,
) -> CollectorType:
    """Fetch an existing collector or create a new one."""

    collectors = _get_registry_collectors()
    name = args[0] if args else kwargs.get("name")
    if name:
        existing = collectors.get(name)
        if existing is not None:
            if not isinstance(existing, collector_cls):
                raise TypeError(
                    f"Collector '{name}' already registered with type {type(existing).__name__}, "
                    f"expected {collector_cls.__name__}."
                )
            return existing

    return collector_cls(*args, **kwargs)


@lru_cache(maxsize=1)
def metrics() -> SimpleNamespace:
    """Return a singleton namespace containing all Prometheus collectors."""

    namespace: Dict[str, CollectorType] = {}
    for attr_name, (collector_cls, collector_args, collector_kwargs) in _COLLECTOR_DEFINITIONS.items():
        namespace[attr_name] = _get_or_create_collector(
            collector_cls, *collector_args, **collector_kwargs
        )

    return SimpleNamespace(**namespace)


@contextmanager
def observe_generation(tag: str):
    """Record generation latency for ``tag``, including failed calls."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        metrics().GENERATION_LATENCY.labels(tag=tag or "untagged").observe(time.perf_counter() - start_time)
