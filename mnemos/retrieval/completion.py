"""
JSON completion client for remote grading and refinement.

Wraps the Anthropic async client: one user prompt in, one JSON object out.
Every call carries an explicit timeout, transient failures are retried
with exponential backoff, and all errors surface as DependencyError
subclasses so callers can fall back.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Optional

import anthropic
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mnemos.config.settings import Settings, get_settings
from mnemos.core.circuit_breaker import COMPLETION_SERVICE, breaker_for
from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
    MnemosError,
)

logger = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_json_object(text: str) -> dict[str, Any]:
    """
    Parse a JSON object from model output.

    Strips markdown code fences and, failing a direct parse, takes the
    outermost brace-delimited span.

    Raises:
        ValueError: If no JSON object can be recovered.
    """
    text = text.strip()

    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ValueError(f"Could not parse JSON from response: {text[:500]}")
        parsed = json.loads(match.group())

    if not isinstance(parsed, dict):
        raise ValueError("Response JSON is not an object")
    return parsed


def _is_retryable(exception: BaseException) -> bool:
    """Check if exception should trigger retry."""
    if isinstance(exception, (anthropic.RateLimitError, anthropic.APIConnectionError)):
        return True
    if isinstance(exception, anthropic.InternalServerError):
        return True
    return False


class JSONCompletionClient:
    """
    Anthropic-backed completion returning parsed JSON.

    Usage:
        client = JSONCompletionClient()
        data = await client.complete_json(prompt, timeout=8.0, operation="grade")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        if api_key is None and settings.anthropic_api_key is not None:
            api_key = settings.anthropic_api_key.get_secret_value()
        if not api_key:
            raise ConfigurationError("Anthropic API key is not configured", "anthropic_api_key")

        self.model = model or settings.completion_model
        self.client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._breaker = breaker_for(COMPLETION_SERVICE, settings)

    @retry(
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(2),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "completion_retry",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep if retry_state.next_action else 0,
        ),
    )
    async def _create(self, prompt: str, max_tokens: int, temperature: float) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.content:
            raise ValueError("Empty response from completion model")
        return response.content[0].text

    async def complete_json(
        self,
        prompt: str,
        *,
        timeout: float,
        operation: str = "completion",
        max_tokens: int = 500,
        temperature: float = 0.1,
    ) -> dict[str, Any]:
        """
        Run one prompt and parse its JSON object reply.

        Raises:
            DependencyTimeoutError: If the call exceeded ``timeout`` seconds.
            DependencyFailureError: For API errors and malformed replies.
        """
        try:
            text = await asyncio.wait_for(
                self._breaker(self._create)(prompt, max_tokens, temperature),
                timeout=timeout,
            )
            return parse_json_object(text)
        except asyncio.TimeoutError as e:
            raise DependencyTimeoutError(
                "anthropic",
                f"{operation} exceeded {timeout}s",
                {"operation": operation},
            ) from e
        except anthropic.APITimeoutError as e:
            raise DependencyTimeoutError("anthropic", str(e), {"operation": operation}) from e
        except MnemosError as e:
            raise DependencyFailureError("anthropic", e.message, {"operation": operation}) from e
        except (anthropic.APIError, ValueError) as e:
            logger.warning("completion_failed", operation=operation, error=str(e))
            raise DependencyFailureError("anthropic", str(e), {"operation": operation}) from e
