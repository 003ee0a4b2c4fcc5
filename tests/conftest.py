import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from adaptive_dread.logic.collaborators import GenerationService  # noqa: E402


class FakeClock:
    """Monotonic clock the tests advance by hand; ``sleep`` advances it too."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


Response = Union[str, Exception, Callable[[str], str]]


class FakeGenerationService(GenerationService):
    """Answers by tag. A response may be text, an exception to raise, or a callable."""

    def __init__(self, responses: Optional[Dict[str, Response]] = None, default: Response = "generated"):
        self.responses = dict(responses or {})
        self.default = default
        self.calls: List[Tuple[str, Optional[str]]] = []

    async def generate(self, prompt: str, tag: Optional[str] = None) -> str:
        self.calls.append((prompt, tag))
        response = self.responses.get(tag or "", self.default)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response

    def tags(self) -> List[Optional[str]]:
        return [tag for _, tag in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generation() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def make_generation() -> Callable[..., FakeGenerationService]:
    return FakeGenerationService
