import asyncio
from types import SimpleNamespace

import openai
import pytest

from adaptive_dread.errors import GenerationServiceError, GenerationTimeout
from adaptive_dread.llm.openai_service import DEFAULT_TEMPERATURE, TEMPERATURE_SETTINGS, OpenAIGenerationService
from adaptive_dread.utils.error_handling import CircuitBreaker, CircuitBreakerConfig, get_error_stats


class FakeCompletions:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "stall":
            await asyncio.sleep(10)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=f"  {outcome}  "))])


def _client(*outcomes):
    completions = FakeCompletions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


@pytest.mark.asyncio
async def test_generate_uses_tag_temperature_and_strips_text():
    client, completions = _client("a cold draft")
    service = OpenAIGenerationService(client, model="test-model", max_tokens=50, timeout=1.0)

    text = await service.generate("Describe the attic", "intent_generation")

    assert text == "a cold draft"
    request = completions.requests[0]
    assert request["model"] == "test-model"
    assert request["temperature"] == TEMPERATURE_SETTINGS["intent_generation"]
    assert request["messages"][-1] == {"role": "user", "content": "Describe the attic"}


@pytest.mark.asyncio
async def test_untagged_requests_use_default_temperature():
    client, completions = _client("x")
    service = OpenAIGenerationService(client, timeout=1.0)

    await service.generate("prompt")

    assert completions.requests[0]["temperature"] == DEFAULT_TEMPERATURE


@pytest.mark.asyncio
async def test_api_error_becomes_service_error():
    client, _ = _client(openai.OpenAIError("bad gateway"))
    service = OpenAIGenerationService(client, timeout=1.0)

    before = get_error_stats()["counts"].get("GenerationServiceError", 0)

    with pytest.raises(GenerationServiceError):
        await service.generate("prompt", "metric_analysis")

    stats = get_error_stats()
    assert stats["counts"]["GenerationServiceError"] == before + 1
    assert stats["samples"]["GenerationServiceError"][-1]["context"] == {"service": service.breaker.name}


@pytest.mark.asyncio
async def test_slow_call_becomes_timeout():
    client, _ = _client("stall")
    service = OpenAIGenerationService(client, timeout=0.01)

    with pytest.raises(GenerationTimeout):
        await service.generate("prompt", "intent_generation")


@pytest.mark.asyncio
async def test_breaker_opens_then_recovers(clock):
    client, completions = _client(
        openai.OpenAIError("1"), openai.OpenAIError("2"), "recovered",
    )
    breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30), clock=clock)
    service = OpenAIGenerationService(client, timeout=1.0, breaker=breaker)

    for _ in range(2):
        with pytest.raises(GenerationServiceError):
            await service.generate("prompt")
    assert breaker.state == "open"

    with pytest.raises(GenerationServiceError, match="open"):
        await service.generate("prompt")
    assert len(completions.requests) == 2

    clock.advance(30)
    assert await service.generate("prompt") == "recovered"
    assert breaker.state == "closed"


def test_failed_trial_call_reopens_breaker(clock):
    breaker = CircuitBreaker("trial", CircuitBreakerConfig(failure_threshold=3, reset_timeout=10), clock=clock)
    for _ in range(3):
        breaker.record_failure()
    clock.advance(10)

    assert breaker.can_execute() is True
    assert breaker.state == "half-open"
    breaker.record_failure()
    assert breaker.state == "open"
    assert breaker.can_execute() is False
