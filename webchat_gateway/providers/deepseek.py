"""DeepSeek web chat adapter."""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from webchat_gateway.deepseek_stream import ReasoningStreamReclassifier
from webchat_gateway.errors import UpstreamError
from webchat_gateway.models import ChatRequest, CredentialEntry, ModelInfo
from webchat_gateway.providers.base import (
    DEFAULT_USER_AGENT,
    Capability,
    ProviderAdapter,
)
from webchat_gateway.stream_converter import ConverterOptions, StreamReclassifier
from webchat_gateway.transport import UpstreamStream, open_stream, request_json

logger = logging.getLogger(__name__)

DEEPSEEK_BASE_URL = "https://chat.deepseek.com/api/v0"
SEARCH_SUFFIX = "-search"


class DeepSeekTransport:
    """Talks to the DeepSeek web API with a captured bearer token and cookie."""

    def __init__(
        self,
        credentials: Dict[str, Any],
        timeout: float = 300.0,
        base_url: str = DEEPSEEK_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(
            headers=self._headers(credentials),
            timeout=httpx.Timeout(10.0, read=timeout, write=30.0),
        )

    @staticmethod
    def _headers(credentials: Dict[str, Any]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Origin": "https://chat.deepseek.com",
            "Referer": "https://chat.deepseek.com/",
            "User-Agent": credentials.get("userAgent") or DEFAULT_USER_AGENT,
        }
        if credentials.get("bearer"):
            headers["Authorization"] = f"Bearer {credentials['bearer']}"
        if credentials.get("cookie"):
            headers["Cookie"] = credentials["cookie"]
        return headers

    async def create_conversation(self) -> str:
        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/chat_session/create",
            "DeepSeek",
            json={"character_id": None},
        )
        try:
            biz = data["data"]["biz_data"]
            return str(biz.get("id") or biz["chat_session"]["id"])
        except (KeyError, TypeError):
            raise UpstreamError(
                f"DeepSeek session create returned no id: {str(data)[:200]}"
            )

    async def send_message(
        self, conversation_id: str, prompt: str, options: Dict[str, Any]
    ) -> Optional[UpstreamStream]:
        body = {
            "chat_session_id": conversation_id,
            "parent_message_id": options.get("parent_message_id"),
            "prompt": prompt,
            "ref_file_ids": [],
            "thinking_enabled": bool(options.get("thinking_enabled")),
            "search_enabled": bool(options.get("search_enabled")),
        }
        logger.debug(
            "DeepSeek completion: session=%s thinking=%s search=%s",
            conversation_id,
            body["thinking_enabled"],
            body["search_enabled"],
        )
        request = self._client.build_request(
            "POST", f"{self.base_url}/chat/completion", json=body
        )
        return await open_stream(self._client, request, "DeepSeek")

    async def aclose(self) -> None:
        await self._client.aclose()


class DeepSeekAdapter(ProviderAdapter):
    id = "deepseek"
    name = "DeepSeek"
    owner_tag = "deepseek-web"
    auth_file = "deepseek-auth.json"
    model_prefixes = ("deepseek-",)
    capabilities = (
        Capability.CREDENTIAL_POOL
        | Capability.EXPIRY_CHECK
        | Capability.TOOL_CALLS
        | Capability.REASONING
        | Capability.SESSION_REUSE
    )
    default_session_key = "default"
    auth_markers = ("session",)
    token_field = "bearer"
    secret_fields = ("bearer", "cookie")

    MODELS = (
        "deepseek-chat",
        "deepseek-reasoner",
        "deepseek-chat-search",
        "deepseek-reasoner-search",
    )

    def get_models(self) -> List[ModelInfo]:
        return [ModelInfo(id=model, owned_by=self.owner_tag) for model in self.MODELS]

    def create_transport(self, entry: CredentialEntry) -> DeepSeekTransport:
        return DeepSeekTransport(entry.payload, timeout=self.timeout)

    @staticmethod
    def split_search(model: str) -> Tuple[str, bool]:
        if model.endswith(SEARCH_SUFFIX):
            return model[: -len(SEARCH_SUFFIX)], True
        return model, False

    def is_thinking_model(self, model: str) -> bool:
        base_model, _ = self.split_search(self.map_model(model))
        return "reasoner" in base_model

    def upstream_options(self, request: ChatRequest) -> Dict[str, Any]:
        base_model, search = self.split_search(self.map_model(request.model))
        return {
            "model": base_model,
            "thinking_enabled": "reasoner" in base_model,
            "search_enabled": search,
        }

    def create_reclassifier(
        self, request: ChatRequest, options: ConverterOptions
    ) -> StreamReclassifier:
        return ReasoningStreamReclassifier(
            thinking=self.is_thinking_model(request.model), options=options
        )
