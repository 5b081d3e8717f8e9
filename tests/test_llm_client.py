"""
Test suite for model clients and the LLM router

Tests client creation, capacity error mapping and retry behavior.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from incidentops.config import LLMRouterConfig
from incidentops.exceptions import CapacityExceededError
from incidentops.llm_client import (
    LLMRouter,
    MockModelClient,
    ModelRequest,
    OpenAIModelClient,
)


def _status_error(cls, status_code: int):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    return cls(f"status {status_code}", response=response, body=None)


@pytest.fixture
def request_payload():
    return ModelRequest(messages=[{"role": "user", "content": "hello"}], max_tokens=10)


class TestOpenAIModelClient:
    """Test the OpenAI-compatible backend"""

    def _client_with(self, side_effect=None, return_value=None):
        client = OpenAIModelClient(LLMRouterConfig(api_key="test-key"))
        api = MagicMock()
        api.chat.completions.create = AsyncMock(
            side_effect=side_effect, return_value=return_value
        )
        client._client = api
        return client, api

    @pytest.mark.asyncio
    async def test_returns_reply_text(self, request_payload):
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = "ROOT_CAUSE: x"
        response.usage.total_tokens = 42
        client, api = self._client_with(return_value=response)

        reply = await client.run("gpt-4o", request_payload)

        assert reply == "ROOT_CAUSE: x"
        kwargs = api.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 10

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_capacity(self, request_payload):
        client, _ = self._client_with(side_effect=_status_error(openai.RateLimitError, 429))

        with pytest.raises(CapacityExceededError):
            await client.run("gpt-4o", request_payload)

    @pytest.mark.asyncio
    async def test_overloaded_maps_to_capacity(self, request_payload):
        client, _ = self._client_with(side_effect=_status_error(openai.InternalServerError, 503))

        with pytest.raises(CapacityExceededError, match="over capacity"):
            await client.run("gpt-4o", request_payload)

    @pytest.mark.asyncio
    async def test_other_status_errors_propagate(self, request_payload):
        client, _ = self._client_with(side_effect=_status_error(openai.BadRequestError, 400))

        with pytest.raises(openai.BadRequestError):
            await client.run("gpt-4o", request_payload)


class TestLLMRouter:
    """Test router client selection and retries"""

    def test_creates_clients_by_provider(self, test_config):
        test_config.llm.routers["remote"] = LLMRouterConfig(provider="openai", api_key="k")
        router = LLMRouter(test_config)

        assert isinstance(router.get_client("primary"), MockModelClient)
        assert isinstance(router.get_client("remote"), OpenAIModelClient)
        assert router.get_client("primary") is router.get_client("primary")

    def test_unknown_provider(self, test_config):
        test_config.llm.routers["odd"] = LLMRouterConfig(provider="carrier-pigeon")
        router = LLMRouter(test_config)

        with pytest.raises(ValueError, match="Unknown model provider"):
            router.get_client("odd")

    def test_unknown_router(self, test_config):
        with pytest.raises(ValueError, match="not found in configuration"):
            LLMRouter(test_config).get_client("missing")

    @pytest.mark.asyncio
    async def test_generate_with_mock(self, test_config, request_payload):
        router = LLMRouter(test_config)

        reply = await router.generate("primary", request_payload)

        assert "ROOT_CAUSE:" in reply

    @pytest.mark.asyncio
    async def test_capacity_errors_retried_with_backoff(
        self, test_config, failing_client, request_payload
    ):
        test_config.llm.capacity_retry_base_delay = 0.5
        client = failing_client(CapacityExceededError("busy"))
        router = LLMRouter(test_config)
        router.register_client("primary", client)

        with patch("incidentops.concurrency.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(CapacityExceededError):
                await router.generate("primary", request_payload)

        assert client.calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, test_config, failing_client, request_payload):
        client = failing_client(RuntimeError("bad request"))
        router = LLMRouter(test_config)
        router.register_client("primary", client)

        with pytest.raises(RuntimeError):
            await router.generate("primary", request_payload)

        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_health_check_all(self, test_config):
        results = await LLMRouter(test_config).health_check_all()

        assert results == {"primary": True, "fallback": True}
