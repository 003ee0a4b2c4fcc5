import asyncio

import pytest
import redis

from adaptive_dread.core import NarrativeCore
from adaptive_dread.errors import GenerationFailure, GenerationServiceError
from adaptive_dread.logic.adaptation_rules import AdaptationRule
from adaptive_dread.logic.collaborators import StaticContentScorer, StaticProfileSource
from adaptive_dread.logic.event_bridge import INTENT_COMPLETED, INTENT_FAILED, STATE_CHANGED
from adaptive_dread.logic.snapshot_store import InMemorySnapshotStore, RedisSnapshotStore
from adaptive_dread.models import PsychologicalProfile

SCORES = {
    "psychological_impact": 0.85,
    "horror_effectiveness": 0.9,
    "personal_resonance": 0.7,
    "coherence": 0.9,
}


@pytest.fixture
def build_core(clock, generation):
    def _build(**overrides):
        options = dict(
            profile_source=StaticProfileSource(),
            scorer=StaticContentScorer(SCORES),
            snapshot_store=InMemorySnapshotStore(),
            clock=clock,
            sleep=clock.sleep,
            min_interval=15.0,
        )
        options.update(overrides)
        service = options.pop("generation", generation)
        return NarrativeCore(service, **options)
    return _build


@pytest.mark.asyncio
async def test_completion_is_applied_on_next_tick(build_core):
    core = build_core()
    completed = []
    core.bridge.subscribe(INTENT_COMPLETED, completed.append)

    future = await core.submit_intent("isolation", "an empty ward")
    result = await future

    # nothing touches shared state until the loop applies the message
    assert core.store.state.event_history == {}
    assert core.engine.current_metrics()["horror_effectiveness"] == 0.5

    await core.tick()

    assert core.store.state.event_history == {"isolation": 1}
    assert core.store.tension > 0.0
    assert core.engine.current_metrics()["horror_effectiveness"] == pytest.approx(0.62)
    assert completed == [result]


@pytest.mark.asyncio
async def test_failed_intent_is_announced(build_core, make_generation):
    core = build_core(generation=make_generation({"intent_generation": GenerationServiceError("down")}))
    failures = []
    core.bridge.subscribe(INTENT_FAILED, failures.append)

    future = await core.submit_intent("paranoia")
    with pytest.raises(GenerationFailure):
        await future
    await core.tick()

    assert failures[0]["intent_type"] == "paranoia"
    assert failures[0]["stage"] == "generating"
    assert core.store.state.event_history == {}


@pytest.mark.asyncio
async def test_rule_adjustments_reach_generation_tuning(build_core, clock, generation):
    rule = AdaptationRule.build("push", "horror_effectiveness > 0.0", {"content_intensity": 0.2}, cooldown=60)
    core = build_core(rules=[rule])

    clock.advance(5)
    await core.tick()

    assert core.tuning.get("content_intensity") == pytest.approx(0.7)
    await core.scheduler.process_intent("obsession")
    assert "content_intensity: 0.70" in generation.calls[0][0]


@pytest.mark.asyncio
async def test_significant_tension_rise_is_recorded_once(build_core):
    profile = PsychologicalProfile(fear_level=1.0, obsession_level=1.0, aggression_level=1.0)
    core = build_core(profile_source=StaticProfileSource(profile))
    changes = []
    core.bridge.subscribe(STATE_CHANGED, changes.append)

    for _ in range(4):
        await core.tick(0.5)

    assert len(changes) == 1
    assert changes[0].trigger == "tension_spike"
    assert core.store.tension > 0.2


@pytest.mark.asyncio
async def test_run_ticks_until_stopped(build_core, clock):
    core = build_core()

    task = asyncio.create_task(core.run(0.5))
    for _ in range(5):
        await asyncio.sleep(0)
    core.stop()
    await task

    assert core.tick_count >= 1
    assert clock.sleeps and all(s == 0.5 for s in clock.sleeps)


@pytest.mark.asyncio
async def test_shutdown_persists_state(build_core):
    backend = InMemorySnapshotStore()
    core = build_core(snapshot_store=backend)
    core.store.transition_phase("finale")

    await core.shutdown()

    assert backend.read()["phase"] == "finale"
    reloaded = build_core(snapshot_store=backend)
    assert reloaded.load() == []
    assert reloaded.store.phase == "finale"


@pytest.mark.asyncio
async def test_status_reports_every_component(build_core):
    core = build_core()
    await core.submit_feedback("personal_connection", 0.4)

    status = core.status()

    assert status["phase"] == "introduction"
    assert status["pending_feedback"] == 1
    assert status["pending_intents"] == 0
    assert set(status["metrics"]) >= {"horror_effectiveness", "narrative_coherence"}


class DownRedis:
    def pipeline(self):
        return self

    def delete(self, key):
        return self

    def hset(self, key, mapping):
        return self

    def execute(self):
        raise redis.ConnectionError("redis down")


@pytest.mark.asyncio
async def test_shutdown_completes_when_redis_is_down(build_core):
    core = build_core(snapshot_store=RedisSnapshotStore(client=DownRedis(), key="k"))
    seen = []

    async def late_handler(payload):
        await asyncio.sleep(0)
        seen.append(payload)

    core.bridge.subscribe("custom", late_handler)
    core.bridge.publish("custom", "bye")

    await core.shutdown()

    assert core.save() is False
    assert seen == ["bye"]
