# adaptive_dread/logic/event_bridge.py

"""
Notification bridge between the core loop and its consumers (rendering,
achievements, UI...). Named events, fan-out to subscribers, and one-shot
waits with a deadline.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Set, Union

from adaptive_dread.errors import EventTimeout

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]

STATE_CHANGED = "state_changed"
PHASE_CHANGED = "phase_changed"
HIGH_TENSION = "high_tension"
INTENT_COMPLETED = "intent_completed"
INTENT_FAILED = "intent_failed"


class NotificationBridge:
    """Small pub/sub with one-shot waiters."""

    def __init__(self) -> None:
        self._subs: Dict[str, List[Handler]] = defaultdict(list)
        self._waiters: Dict[str, Set[asyncio.Future]] = defaultdict(set)
        self._pending_tasks: Set[asyncio.Task] = set()
        self.published_counts: Dict[str, int] = defaultdict(int)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        if handler not in self._subs[event_name]:
            self._subs[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        try:
            self._subs[event_name].remove(handler)
        except ValueError:
            pass

    def publish(self, event_name: str, payload: Any = None) -> None:
        """Deliver ``payload`` to waiters and subscribers of ``event_name``."""
        self.published_counts[event_name] += 1

        for fut in list(self._waiters.get(event_name, ())):
            if not fut.done():
                fut.set_result(payload)

        for handler in list(self._subs.get(event_name, ())):
            try:
                outcome = handler(payload)
            except Exception:
                # never let a subscriber kill the bridge
                logger.exception(f"Error in event handler for {event_name}")
                continue
            if inspect.isawaitable(outcome):
                self._schedule(event_name, outcome)

    def _schedule(self, event_name: str, awaitable: Awaitable[None]) -> None:
        async def _run():
            try:
                await awaitable
            except Exception:
                logger.exception(f"Error in async event handler for {event_name}")

        try:
            task = asyncio.get_running_loop().create_task(_run())
        except RuntimeError:
            logger.warning(f"No running loop; dropping async handler for {event_name}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    async def await_once(self, event_name: str, timeout: float = 5.0) -> Any:
        """Wait for the next ``event_name``; raises EventTimeout past ``timeout`` seconds."""
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[event_name].add(fut)
        try:
            return await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            raise EventTimeout(event_name, timeout) from None
        finally:
            self._waiters[event_name].discard(fut)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subs.get(event_name, ()))

    async def drain(self) -> None:
        """Wait for async handlers scheduled so far."""
        if self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)
