import asyncio

import pytest

from adaptive_dread.errors import EventTimeout
from adaptive_dread.logic.event_bridge import HIGH_TENSION, STATE_CHANGED, NotificationBridge


@pytest.mark.asyncio
async def test_await_once_times_out_without_affecting_others():
    bridge = NotificationBridge()
    received = []
    bridge.subscribe(HIGH_TENSION, received.append)

    with pytest.raises(EventTimeout) as excinfo:
        await bridge.await_once(HIGH_TENSION, timeout=0.01)
    assert isinstance(excinfo.value, TimeoutError)
    assert excinfo.value.event_name == HIGH_TENSION

    bridge.publish(HIGH_TENSION, {"reason": "critical_state"})
    assert received == [{"reason": "critical_state"}]


@pytest.mark.asyncio
async def test_await_once_resolves_with_payload():
    bridge = NotificationBridge()

    waiter = asyncio.create_task(bridge.await_once(STATE_CHANGED, timeout=1.0))
    await asyncio.sleep(0)
    bridge.publish(STATE_CHANGED, "payload")

    assert await waiter == "payload"


@pytest.mark.asyncio
async def test_failing_handler_is_isolated():
    bridge = NotificationBridge()
    seen = []

    def broken(payload):
        raise RuntimeError("renderer crashed")

    async def async_handler(payload):
        seen.append(("async", payload))

    bridge.subscribe(HIGH_TENSION, broken)
    bridge.subscribe(HIGH_TENSION, seen.append)
    bridge.subscribe(HIGH_TENSION, async_handler)

    bridge.publish(HIGH_TENSION, 1)
    await bridge.drain()

    assert seen == [1, ("async", 1)]
    assert bridge.published_counts[HIGH_TENSION] == 1


def test_unsubscribe_and_counts():
    bridge = NotificationBridge()
    handler = lambda payload: None  # noqa: E731

    bridge.subscribe(STATE_CHANGED, handler)
    bridge.subscribe(STATE_CHANGED, handler)
    assert bridge.subscriber_count(STATE_CHANGED) == 1

    bridge.unsubscribe(STATE_CHANGED, handler)
    bridge.unsubscribe(STATE_CHANGED, handler)
    assert bridge.subscriber_count(STATE_CHANGED) == 0
