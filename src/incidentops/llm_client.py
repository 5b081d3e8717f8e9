"""
Model-call clients and routing

Every backend exposes ``run(model_id, request) -> reply text``. Transient
capacity conditions surface as CapacityExceededError, which the router
retries with exponential backoff. Any other failure propagates to the
caller's fallback logic.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import openai
import yaml
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from .concurrency.retry import retry_with_backoff
from .config import IncidentOpsConfig, LLMRouterConfig
from .exceptions import CapacityExceededError
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async

logger = logging.getLogger(__name__)

CAPACITY_STATUS_CODES = {503, 529}


class ModelRequest(BaseModel):
    """Chat request sent to a model backend"""

    messages: list[dict[str, str]]
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)


class BaseModelClient(ABC):
    """Abstract base class for model backends"""

    def __init__(self, config: LLMRouterConfig):
        self.config = config

    @abstractmethod
    async def run(self, model_id: str, request: ModelRequest) -> str:
        """Send a request and return the reply text"""

    async def health_check(self) -> bool:
        return True


class OpenAIModelClient(BaseModelClient):
    """OpenAI or OpenAI-compatible chat completions backend"""

    def __init__(self, config: LLMRouterConfig):
        super().__init__(config)
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._client

    async def run(self, model_id: str, request: ModelRequest) -> str:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=model_id,
                messages=request.messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        except openai.RateLimitError as e:
            raise CapacityExceededError(f"Model {model_id} rate limited: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code in CAPACITY_STATUS_CODES:
                raise CapacityExceededError(
                    f"Model {model_id} over capacity ({e.status_code})"
                ) from e
            raise

        if response.usage:
            set_attribute("llm.tokens_used", response.usage.total_tokens)
        return response.choices[0].message.content or ""

    async def health_check(self) -> bool:
        try:
            await self._get_client().chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=1,
            )
            return True
        except openai.OpenAIError as e:
            logger.error(f"Health check failed for model {self.config.model}: {e}")
            return False


class MockModelClient(BaseModelClient):
    """Canned replies for development and tests"""

    def __init__(
        self,
        config: LLMRouterConfig,
        reply: Optional[str] = None,
        delay: float = 0.0,
    ):
        super().__init__(config)
        self.delay = delay
        self.reply = reply if reply is not None else self._load_default_reply()
        self.requests: list[tuple[str, ModelRequest]] = []

    @staticmethod
    def _load_default_reply() -> str:
        responses_path = Path(__file__).parent / "prompts" / "mock_responses.yaml"
        with open(responses_path, encoding="utf-8") as f:
            return yaml.safe_load(f)["rca_reply"]

    async def run(self, model_id: str, request: ModelRequest) -> str:
        self.requests.append((model_id, request))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.reply


class LLMRouter:
    """
    Routes model calls to configured backends

    Router names map to a backend and a model id in ``config.llm.routers``.
    """

    def __init__(self, config: IncidentOpsConfig):
        self.config = config
        self._clients: dict[str, BaseModelClient] = {}

    def _create_client(self, router_config: LLMRouterConfig) -> BaseModelClient:
        provider = router_config.provider.lower()
        if provider in ("openai", "local"):
            return OpenAIModelClient(router_config)
        if provider == "mock":
            return MockModelClient(router_config)
        raise ValueError(f"Unknown model provider '{router_config.provider}'")

    def register_client(self, router_name: str, client: BaseModelClient) -> None:
        """Use an explicit client for a router"""
        self._clients[router_name] = client

    def get_client(self, router_name: str) -> BaseModelClient:
        if router_name not in self._clients:
            router_config = self.config.get_llm_router_config(router_name)
            self._clients[router_name] = self._create_client(router_config)
        return self._clients[router_name]

    @trace_async("llm.generate")
    async def generate(self, router_name: str, request: ModelRequest) -> str:
        """
        Run a request on a router's model

        Capacity errors and timeouts are retried with backoff; anything else
        is raised immediately.
        """
        router_config = self.config.get_llm_router_config(router_name)
        client = self.get_client(router_name)
        model_id = router_config.model

        set_attribute("llm.router", router_name)
        set_attribute("llm.model", model_id)

        start_time = time.time()
        metrics = get_metrics()
        try:
            reply = await retry_with_backoff(
                lambda: client.run(model_id, request),
                name=f"model:{router_name}",
                attempts=self.config.llm.capacity_retry_attempts,
                base_delay=self.config.llm.capacity_retry_base_delay,
                timeout=router_config.timeout,
                retry_on=(CapacityExceededError,),
            )
        except Exception as e:
            logger.error(f"Model call failed on router {router_name} ({model_id}): {e}")
            if metrics:
                metrics.record_model_call(model_id, "failure", time.time() - start_time)
            raise

        if metrics:
            metrics.record_model_call(model_id, "success", time.time() - start_time)
        add_event("model_reply_received", {"reply.length": len(reply)})
        return reply

    async def health_check_all(self) -> dict[str, bool]:
        results = {}
        for router_name in self.config.llm.routers:
            results[router_name] = await self.get_client(router_name).health_check()
        return results
