# adaptive_dread/llm/openai_service.py

import asyncio
import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from adaptive_dread.config import get_config
from adaptive_dread.errors import GenerationServiceError, GenerationTimeout
from adaptive_dread.logic.collaborators import GenerationService
from adaptive_dread.monitoring.metrics import observe_generation
from adaptive_dread.utils.error_handling import CircuitBreaker, CircuitBreakerConfig, guarded_by

logger = logging.getLogger(__name__)

# Temperature settings per request tag
TEMPERATURE_SETTINGS = {
    "intent_generation": 0.9,     # creative base content
    "content_enhancement": 0.8,
    "immediate_adaptation": 0.4,
    "feedback_analysis": 0.2,     # structured scoring
    "metric_analysis": 0.2,
}
DEFAULT_TEMPERATURE = 0.7

SYSTEM_PROMPT = (
    "You are the narrative engine of an adaptive psychological horror game. "
    "When asked for scores or adjustments, answer with JSON only."
)


class OpenAIGenerationService(GenerationService):
    """
    GenerationService backed by the OpenAI chat completions API.

    Every call is bounded by ``timeout`` and guarded by a circuit breaker;
    failures surface as GenerationTimeout or GenerationServiceError. There are
    no retries here.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        config = get_config()
        self.client = client or AsyncOpenAI()
        self.model = model or config.OPENAI_MODEL
        self.max_tokens = max_tokens or config.OPENAI_MAX_TOKENS
        self.timeout = timeout if timeout is not None else config.GENERATION_TIMEOUT
        self.breaker = breaker or CircuitBreaker(
            "openai_generation",
            CircuitBreakerConfig(
                failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
                reset_timeout=config.BREAKER_RESET_TIMEOUT,
            ),
        )
        self.generate = guarded_by(self.breaker)(self._generate)

    async def _generate(self, prompt: str, tag: Optional[str] = None) -> str:
        temperature = TEMPERATURE_SETTINGS.get(tag or "", DEFAULT_TEMPERATURE)
        with observe_generation(tag or "untagged"):
            try:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=self.model,
                        messages=[
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        temperature=temperature,
                        max_tokens=self.max_tokens,
                    ),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise GenerationTimeout(f"{tag or 'generation'} timed out after {self.timeout} seconds") from None
            except openai.APITimeoutError as e:
                raise GenerationTimeout(f"{tag or 'generation'} timed out: {e}") from e
            except openai.OpenAIError as e:
                logger.error(f"OpenAI call for {tag} failed: {e}")
                raise GenerationServiceError(f"{tag or 'generation'} failed: {e}") from e

        if not response.choices:
            raise GenerationServiceError(f"{tag or 'generation'} returned no choices")
        content = response.choices[0].message.content
        if content is None:
            raise GenerationServiceError(f"{tag or 'generation'} returned empty content")
        return content.strip()
