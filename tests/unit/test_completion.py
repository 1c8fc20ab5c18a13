"""Unit tests for the JSON completion client."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
)
from mnemos.retrieval.completion import JSONCompletionClient, parse_json_object


class TestParseJsonObject:

    def test_plain_json(self):
        assert parse_json_object('{"score": 0.8}') == {"score": 0.8}

    def test_code_fence(self):
        assert parse_json_object('```json\n{"score": 0.8}\n```') == {"score": 0.8}

    def test_json_inside_prose(self):
        text = 'Here is my grade: {"score": 0.4, "reasoning": "partial"} Hope that helps.'

        assert parse_json_object(text) == {"score": 0.4, "reasoning": "partial"}

    def test_no_json(self):
        with pytest.raises(ValueError):
            parse_json_object("I cannot grade this.")

    def test_array_is_rejected(self):
        with pytest.raises(ValueError):
            parse_json_object("[1, 2, 3]")


class TestJSONCompletionClient:

    def test_requires_api_key(self, settings):
        with pytest.raises(ConfigurationError):
            JSONCompletionClient(settings=settings)

    @pytest.mark.asyncio
    async def test_complete_json(self, settings):
        client = JSONCompletionClient(api_key="test-key", settings=settings)
        create = AsyncMock(return_value='```json\n{"score": 0.9}\n```')

        with patch.object(client, "_create", create):
            data = await client.complete_json("prompt", timeout=1.0, operation="grade")

        assert data == {"score": 0.9}
        create.assert_awaited_once_with("prompt", 500, 0.1)

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        client = JSONCompletionClient(api_key="test-key", settings=settings)

        async def slow(prompt, max_tokens, temperature):
            await asyncio.sleep(1)

        with patch.object(client, "_create", slow):
            with pytest.raises(DependencyTimeoutError):
                await client.complete_json("prompt", timeout=0.01, operation="grade")

    @pytest.mark.asyncio
    async def test_malformed_reply(self, settings):
        client = JSONCompletionClient(api_key="test-key", settings=settings)

        with patch.object(client, "_create", AsyncMock(return_value="no json here")):
            with pytest.raises(DependencyFailureError):
                await client.complete_json("prompt", timeout=1.0)

    @pytest.mark.asyncio
    async def test_open_circuit_is_a_failure(self, settings):
        client = JSONCompletionClient(api_key="test-key", settings=settings)
        breaker = client._breaker
        threshold = breaker.failure_threshold
        breaker.failure_threshold = 1

        try:
            with patch.object(client, "_create", AsyncMock(side_effect=ValueError("Empty response"))):
                with pytest.raises(DependencyFailureError):
                    await client.complete_json("prompt", timeout=1.0)
                with pytest.raises(DependencyFailureError, match="Circuit breaker"):
                    await client.complete_json("prompt", timeout=1.0)
        finally:
            breaker.failure_threshold = threshold
