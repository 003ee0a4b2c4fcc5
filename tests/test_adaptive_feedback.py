import pytest

from adaptive_dread.errors import GenerationServiceError
from adaptive_dread.logic.adaptation_rules import AdaptationRule
from adaptive_dread.logic.adaptive_feedback import (
    AdaptiveFeedbackEngine,
    GeneratedAdaptationPlanner,
    GeneratedImpactAnalyzer,
    ImpactAnalyzer,
)
from adaptive_dread.models import FeedbackEvent


@pytest.fixture
def engine(clock):
    return AdaptiveFeedbackEngine(clock=clock, rules=[])


@pytest.mark.asyncio
async def test_metrics_start_neutral(engine):
    snapshot = engine.metric_snapshot()

    assert set(snapshot) == {
        "horror_effectiveness", "psychological_impact", "personal_resonance", "narrative_coherence",
    }
    assert all(m["value"] == 0.5 and m["confidence"] == 0.0 for m in snapshot.values())


@pytest.mark.asyncio
async def test_decay_only_is_non_increasing(engine, clock):
    await engine.submit_feedback("personal_connection", 0.5)
    await engine.submit_feedback("fear_response", 0.4)
    clock.advance(5)
    await engine.tick()

    previous = engine.metric_snapshot()
    for _ in range(40):
        clock.advance(0.5)
        await engine.tick()
        current = engine.metric_snapshot()
        for metric_id, readout in current.items():
            assert readout["value"] <= previous[metric_id]["value"]
            assert readout["confidence"] <= previous[metric_id]["confidence"]
        previous = current


@pytest.mark.asyncio
async def test_fear_response_is_processed_immediately(engine):
    await engine.submit_feedback("fear_response", 0.9)

    assert engine.pending_count == 0
    metrics = engine.current_metrics()
    # lerp(0.5, 0.9, 1.0 * 0.3)
    assert metrics["horror_effectiveness"] == pytest.approx(0.62)
    assert metrics["psychological_impact"] == pytest.approx(0.62)
    assert metrics["personal_resonance"] == pytest.approx(0.5)
    assert engine.metric("horror_effectiveness").confidence == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_low_intensity_waits_for_batch_interval(engine, clock):
    await engine.submit_feedback("personal_connection", 0.3)
    assert engine.pending_count == 1

    clock.advance(2)
    await engine.tick()
    assert engine.pending_count == 1
    assert engine.metric("personal_resonance").confidence == 0.0

    clock.advance(3)
    await engine.tick()
    assert engine.pending_count == 0
    assert engine.metric("personal_resonance").confidence == pytest.approx(0.1, abs=1e-2)
    assert engine.metric("personal_resonance").value < 0.5


@pytest.mark.asyncio
async def test_flagged_event_skips_the_queue(engine):
    await engine.submit_feedback("whisper", 0.2, metadata={"immediate_adapt": True})

    assert engine.pending_count == 0
    assert engine.metric("horror_effectiveness").confidence == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_false_flag_is_batched_without_immediate_adaptation(clock):
    engine = AdaptiveFeedbackEngine(clock=clock, rules=[])
    received = []
    engine.register_adjustment_target("horror_generation", lambda magnitude, event: received.append(magnitude))

    await engine.submit_feedback("whisper", 0.2, metadata={"immediate_adapt": False})
    assert engine.pending_count == 1

    clock.advance(5)
    await engine.tick()

    assert engine.pending_count == 0
    assert received == []


@pytest.mark.asyncio
async def test_hand_built_event_is_stamped_with_engine_clock(engine, clock):
    event = FeedbackEvent(type="fear_response", intensity=0.9)

    await engine.submit_event(event)

    assert event.timestamp == clock()
    assert engine.current_metrics()["horror_effectiveness"] == pytest.approx(0.62)


@pytest.mark.asyncio
async def test_explicit_timestamp_is_kept(engine, clock):
    event = FeedbackEvent(type="whisper", intensity=0.2, timestamp=clock() - 3)

    await engine.submit_event(event)

    assert event.timestamp == clock() - 3


@pytest.mark.asyncio
async def test_unknown_event_type_maps_to_horror_effectiveness(engine):
    event = await engine.submit_feedback("door_slam", 0.4)

    assert event.related_metrics == ["horror_effectiveness"]


@pytest.mark.asyncio
async def test_correlation_moves_toward_shared_history(engine):
    await engine.submit_feedback("fear_response", 0.9)
    first = engine.metric("horror_effectiveness").correlations["psychological_impact"]
    await engine.submit_feedback("fear_response", 0.95)
    second = engine.metric("horror_effectiveness").correlations["psychological_impact"]

    assert first == pytest.approx(0.2)
    assert first < second <= 1.0
    assert engine.calculate_correlation("horror_effectiveness", "personal_resonance") == 0.0


@pytest.mark.asyncio
async def test_immediate_adaptation_bypasses_rule_cooldowns(clock):
    engine = AdaptiveFeedbackEngine(clock=clock)
    received = []
    engine.register_adjustment_target("horror_generation", lambda magnitude, event: received.append(magnitude))

    await engine.submit_feedback("fear_response", 0.9)
    await engine.submit_feedback("fear_response", 0.9)

    assert received == [pytest.approx(-0.09), pytest.approx(-0.09)]
    assert [a.source for a in engine.adjustment_log][:1] == ["event:fear_response"]


@pytest.mark.asyncio
async def test_rule_fires_once_per_cooldown(clock):
    rule = AdaptationRule.build(
        "always", "horror_effectiveness > 0.0", {"content_intensity": 0.2}, cooldown=60,
    )
    engine = AdaptiveFeedbackEngine(clock=clock, rules=[rule])
    applied = []

    async def handler(magnitude, event):
        applied.append(magnitude)

    engine.register_adjustment_target("content_intensity", handler)

    for _ in range(24):
        clock.advance(5)
        await engine.tick()

    assert rule.trigger_count == 2
    assert applied == [0.2, 0.2]


@pytest.mark.asyncio
async def test_unowned_target_is_logged_not_applied(clock):
    rule = AdaptationRule.build("orphan", "horror_effectiveness > 0.0", {"nobody_owns_this": 0.4}, cooldown=60)
    engine = AdaptiveFeedbackEngine(clock=clock, rules=[rule])

    clock.advance(5)
    await engine.tick()

    entry = engine.adjustment_log[-1]
    assert entry.target == "nobody_owns_this"
    assert entry.handled is False


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_tick(clock):
    rule = AdaptationRule.build(
        "two_targets", "horror_effectiveness > 0.0", {"first": 0.1, "second": 0.1}, cooldown=60,
    )
    engine = AdaptiveFeedbackEngine(clock=clock, rules=[rule])
    seen = []

    def explode(magnitude, event):
        raise RuntimeError("subsystem offline")

    engine.register_adjustment_target("first", explode)
    engine.register_adjustment_target("second", lambda magnitude, event: seen.append(magnitude))

    clock.advance(5)
    await engine.tick()

    assert seen == [0.1]
    assert rule.trigger_count == 1


@pytest.mark.asyncio
async def test_crashing_analyzer_is_treated_as_no_impact(clock):
    class BrokenAnalyzer(ImpactAnalyzer):
        async def analyze(self, event):
            raise ValueError("bad model output")

    engine = AdaptiveFeedbackEngine(clock=clock, analyzer=BrokenAnalyzer(), rules=[])

    await engine.submit_feedback("fear_response", 0.95)

    assert engine.current_metrics()["horror_effectiveness"] == 0.5
    assert engine.processed_count == 1


@pytest.mark.asyncio
async def test_generated_analyzer_reads_scores(clock, make_generation):
    service = make_generation({"feedback_analysis": '{"horror_effectiveness": 1.0, "psychological_impact": 0.0}'})
    engine = AdaptiveFeedbackEngine(clock=clock, analyzer=GeneratedImpactAnalyzer(service), rules=[])

    await engine.submit_feedback("fear_response", 0.9)

    metrics = engine.current_metrics()
    assert metrics["horror_effectiveness"] == pytest.approx(0.65)
    assert metrics["psychological_impact"] == pytest.approx(0.35)


@pytest.mark.asyncio
async def test_unparseable_adaptation_means_no_adjustment(clock, make_generation):
    service = make_generation({"immediate_adaptation": "make it scarier, somehow"})
    engine = AdaptiveFeedbackEngine(clock=clock, planner=GeneratedAdaptationPlanner(service), rules=[])

    await engine.submit_feedback("critical_response", 1.5)

    assert list(engine.adjustment_log) == []


@pytest.mark.asyncio
async def test_generated_planner_clamps_and_applies(clock, make_generation):
    service = make_generation({"immediate_adaptation": "content_intensity: -3\nhorror_generation: 0.25"})
    engine = AdaptiveFeedbackEngine(clock=clock, planner=GeneratedAdaptationPlanner(service), rules=[])
    applied = {}
    for target in ("content_intensity", "horror_generation"):
        engine.register_adjustment_target(target, lambda m, e, t=target: applied.__setitem__(t, m))

    await engine.submit_feedback("critical", 2.0)

    assert applied == {"content_intensity": -1.0, "horror_generation": 0.25}


@pytest.mark.asyncio
async def test_planner_service_error_is_absorbed(clock, make_generation):
    service = make_generation({"immediate_adaptation": GenerationServiceError("503")})
    engine = AdaptiveFeedbackEngine(clock=clock, planner=GeneratedAdaptationPlanner(service), rules=[])

    await engine.submit_feedback("fear_response", 0.99)

    assert engine.processed_count == 1
    assert list(engine.adjustment_log) == []


def test_rule_table_management(clock):
    engine = AdaptiveFeedbackEngine(clock=clock)

    assert engine.set_rule_active("personal_enhancement", False) is True
    assert engine.set_rule_active("missing", False) is False
    with pytest.raises(ValueError):
        engine.add_rule(AdaptationRule.build("intensity_adjustment", "a < 1", {}, cooldown=1))
    engine.add_rule(AdaptationRule.build("extra", "a < 1", {}, cooldown=1))
    assert [r.id for r in engine.rules] == ["intensity_adjustment", "personal_enhancement", "extra"]


@pytest.mark.asyncio
async def test_clear_feedback_queue_drops_pending(engine):
    await engine.submit_feedback("personal_connection", 0.2)
    engine.clear_feedback_queue()

    assert engine.pending_count == 0
