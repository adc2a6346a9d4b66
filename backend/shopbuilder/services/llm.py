"""LLM completion client for code generation.

Wraps AsyncAnthropic messages.create() with retry on Claude 529 overload and
maps SDK failures to LLMError (status code preserved for the HTTP layer).
"""

from dataclasses import dataclass
from typing import Any

import anthropic
import structlog
from anthropic._exceptions import OverloadedError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shopbuilder.core.config import Settings, get_settings
from shopbuilder.core.exceptions import LLMError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class Completion:
    text: str
    usage: TokenUsage


@retry(
    retry=retry_if_exception_type(OverloadedError),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=2, min=2, max=30),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "claude_overloaded_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)
async def _create_with_retry(client: Any, **kwargs: Any) -> Any:
    """Invoke messages.create(), retrying only OverloadedError (529)."""
    return await client.messages.create(**kwargs)


class AnthropicCompletionClient:
    """complete(system_prompt, user_prompt) -> Completion."""

    def __init__(self, client: Any | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client or anthropic.AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        self.model = self.settings.generation_model

    async def complete(self, system_prompt: str, user_prompt: str) -> Completion:
        try:
            response = await _create_with_retry(
                self.client,
                model=self.model,
                max_tokens=self.settings.generation_max_tokens,
                temperature=self.settings.generation_temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIStatusError as e:
            raise LLMError(f"LLM request failed: {e.message}", status_code=e.status_code) from e
        except anthropic.APIError as e:
            raise LLMError(f"LLM request failed: {e}") from e

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "text") == "text"
        )
        usage = TokenUsage(
            input_tokens=getattr(response.usage, "input_tokens", 0),
            output_tokens=getattr(response.usage, "output_tokens", 0),
        )
        logger.info(
            "llm_completion_finished",
            model=self.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return Completion(text=text, usage=usage)
