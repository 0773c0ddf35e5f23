"""Model routing and the end-to-end chat completion lifecycle."""

import logging
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from webchat_gateway.config import Config
from webchat_gateway.errors import UnsupportedModelError
from webchat_gateway.metrics import GatewayMetrics
from webchat_gateway.models import ChatRequest
from webchat_gateway.providers.base import ChatResponse, ProviderAdapter, TransportFactory
from webchat_gateway.providers.claude import ClaudeAdapter
from webchat_gateway.providers.deepseek import DeepSeekAdapter
from webchat_gateway.providers.qwen import QwenAdapter
from webchat_gateway.request_queue import RequestAdmissionQueue
from webchat_gateway.stream_converter import CompletionStream, StreamReclassifier

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = (DeepSeekAdapter, ClaudeAdapter, QwenAdapter)


class Completion:
    """An opened upstream reply, ready to be streamed or collected once."""

    def __init__(
        self,
        dispatcher: "Dispatcher",
        adapter: ProviderAdapter,
        request: ChatRequest,
        response: ChatResponse,
        reclassifier: StreamReclassifier,
        converter: CompletionStream,
        prompt_tokens: int,
    ):
        self.dispatcher = dispatcher
        self.adapter = adapter
        self.request = request
        self.response = response
        self.reclassifier = reclassifier
        self.converter = converter
        self.prompt_tokens = prompt_tokens
        self._started = time.monotonic()

    async def iter_sse(self) -> AsyncIterator[str]:
        try:
            async for frame in self.converter.iter_sse(self.response.stream):
                yield frame
        except Exception:
            self.dispatcher.metrics.record_failure(self.adapter.id)
            raise
        finally:
            # Also reached when the client disconnects and the generator is closed.
            await self.response.stream.aclose()
        self._finish()

    async def collect(self) -> Dict[str, Any]:
        try:
            result = await self.converter.collect(self.response.stream, self.prompt_tokens)
        except Exception:
            self.dispatcher.metrics.record_failure(self.adapter.id)
            raise
        self._finish()
        return result

    async def aclose(self) -> None:
        await self.response.stream.aclose()

    def _finish(self) -> None:
        self.adapter.complete(self.response, self.reclassifier)
        tokens = self.dispatcher.metrics.record_output(self.converter.output_chars)
        logger.info(
            "Completed %s via %s: ~%d output tokens in %.2fs",
            self.request.model,
            self.adapter.id,
            tokens,
            time.monotonic() - self._started,
        )


class Dispatcher:
    def __init__(
        self,
        adapters: Iterable[ProviderAdapter] = (),
        queue: Optional[RequestAdmissionQueue] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.adapters: List[ProviderAdapter] = []
        self.queue = queue or RequestAdmissionQueue()
        self.metrics = metrics or GatewayMetrics()
        for adapter in adapters:
            self.register(adapter)

    @classmethod
    def from_config(
        cls,
        config: Config,
        transport_factories: Optional[Dict[str, TransportFactory]] = None,
    ) -> "Dispatcher":
        transport_factories = transport_factories or {}
        dispatcher = cls()
        for adapter_cls in ADAPTER_CLASSES:
            adapter = adapter_cls.from_config(
                config, transport_factory=transport_factories.get(adapter_cls.id)
            )
            dispatcher.register(adapter)
        for provider_id, limit in config.rate_limits.items():
            dispatcher.queue.set_limit(provider_id, limit)
        return dispatcher

    def register(self, adapter: ProviderAdapter) -> None:
        if self.get_adapter(adapter.id) is not None:
            raise ValueError(f"Provider {adapter.id!r} is already registered")
        self.adapters.append(adapter)
        logger.info(
            "Registered provider %s (%d credentials)", adapter.id, adapter.pool.count()
        )

    def get_adapter(self, provider_id: str) -> Optional[ProviderAdapter]:
        for adapter in self.adapters:
            if adapter.id == provider_id:
                return adapter
        return None

    def resolve(self, model: str) -> Optional[ProviderAdapter]:
        for adapter in self.adapters:
            if adapter.match_model(model):
                return adapter
        return None

    def list_models(self) -> List[Dict[str, Any]]:
        return [
            model.to_dict() for adapter in self.adapters for model in adapter.get_models()
        ]

    async def open(self, request: ChatRequest) -> Completion:
        """Route ``request`` and open its upstream reply.

        Only the upstream call itself goes through the admission queue;
        reading the reply happens outside it.
        """
        adapter = self.resolve(request.model)
        if adapter is None:
            raise UnsupportedModelError(request.model)

        logger.info("Routing %s to %s", request.model, adapter.id)
        try:
            response = await self.queue.enqueue(adapter.id, lambda: adapter.chat(request))
        except Exception:
            self.metrics.record_failure(adapter.id)
            raise

        prompt_tokens = self.metrics.record_request(adapter.id, response.prompt)
        options = adapter.converter_options(request)
        reclassifier = adapter.create_reclassifier(request, options)
        converter = CompletionStream(reclassifier, request.model, options)
        return Completion(
            self, adapter, request, response, reclassifier, converter, prompt_tokens
        )

    async def complete(self, request: ChatRequest) -> Dict[str, Any]:
        completion = await self.open(request)
        return await completion.collect()

    def has_credentials(self) -> bool:
        return any(adapter.has_credentials() for adapter in self.adapters)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.has_credentials() else "no_credentials",
            "providers": {
                adapter.id: {
                    "hasCredentials": adapter.has_credentials(),
                    "pool": adapter.pool.get_summary(),
                }
                for adapter in self.adapters
            },
            "queue": self.queue.get_status(),
            "metrics": self.metrics.snapshot(),
        }

    async def reset_sessions(self) -> None:
        for adapter in self.adapters:
            await adapter.reset_client()

    async def aclose(self) -> None:
        self.queue.close()
        for adapter in self.adapters:
            await adapter.aclose()
