"""Qwen (Tongyi) web chat adapter."""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from webchat_gateway.deepseek_stream import ReasoningStreamReclassifier
from webchat_gateway.models import ChatRequest, CredentialEntry, ModelInfo
from webchat_gateway.providers.base import (
    DEFAULT_USER_AGENT,
    Capability,
    ProviderAdapter,
)
from webchat_gateway.stream_converter import ConverterOptions, StreamReclassifier
from webchat_gateway.transport import UpstreamStream, open_stream

logger = logging.getLogger(__name__)

QWEN_BASE_URL = "https://chat.qwen.ai/api/v2"
THINKING_MODEL_HINTS = ("qwq", "qwen3.5", "qwen-max")


class QwenTransport:
    """Qwen web API client. Every conversation id is minted locally."""

    def __init__(
        self,
        credentials: Dict[str, Any],
        timeout: float = 300.0,
        base_url: str = QWEN_BASE_URL,
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
            "Accept": "text/event-stream",
            "Origin": "https://chat.qwen.ai",
            "Referer": "https://chat.qwen.ai/",
            "User-Agent": credentials.get("userAgent") or DEFAULT_USER_AGENT,
            "source": "web",
        }
        if credentials.get("token"):
            headers["Authorization"] = f"Bearer {credentials['token']}"
        if credentials.get("cookie"):
            headers["Cookie"] = credentials["cookie"]
        if credentials.get("bxUa"):
            headers["bx-ua"] = credentials["bxUa"]
        if credentials.get("bxUmidtoken"):
            headers["bx-umidtoken"] = credentials["bxUmidtoken"]
        return headers

    async def create_conversation(self) -> str:
        return str(uuid.uuid4())

    async def send_message(
        self, conversation_id: str, prompt: str, options: Dict[str, Any]
    ) -> Optional[UpstreamStream]:
        thinking = bool(options.get("thinking_enabled"))
        body = {
            "stream": True,
            "incremental_output": True,
            "chat_id": conversation_id,
            "chat_mode": "normal",
            "model": options.get("model"),
            "parent_id": None,
            "messages": [
                {
                    "fid": str(uuid.uuid4()),
                    "role": "user",
                    "content": prompt,
                    "user_action": "chat",
                    "files": [],
                    "timestamp": int(time.time()),
                    "models": [options.get("model")],
                    "chat_type": "search" if options.get("search_enabled") else "t2t",
                    "feature_config": {
                        "thinking_enabled": thinking,
                        "output_schema": "phase",
                    },
                }
            ],
        }
        logger.debug(
            "Qwen completion: chat=%s model=%s thinking=%s",
            conversation_id,
            options.get("model"),
            thinking,
        )
        request = self._client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            params={"chat_id": conversation_id},
            json=body,
        )
        return await open_stream(self._client, request, "Qwen")

    async def aclose(self) -> None:
        await self._client.aclose()


class QwenAdapter(ProviderAdapter):
    id = "qwen"
    name = "Qwen"
    owner_tag = "qwen-web"
    auth_file = "qwen-auth.json"
    model_prefixes = ("qwen", "qwq")
    capabilities = (
        Capability.CREDENTIAL_POOL | Capability.EXPIRY_CHECK | Capability.REASONING
    )
    default_session_key = "qwen-default"
    auth_status_codes = frozenset({401, 403})
    token_field = "token"
    secret_fields = ("token", "cookie")

    MODELS = ("qwen3.5-plus", "qwen-max", "qwen-plus", "qwen-turbo", "qwq-plus")

    def get_models(self) -> List[ModelInfo]:
        return [ModelInfo(id=model, owned_by=self.owner_tag) for model in self.MODELS]

    def create_transport(self, entry: CredentialEntry) -> QwenTransport:
        return QwenTransport(entry.payload, timeout=self.timeout)

    @staticmethod
    def is_thinking_model(model: str) -> bool:
        return any(hint in model for hint in THINKING_MODEL_HINTS)

    def upstream_options(self, request: ChatRequest) -> Dict[str, Any]:
        model = self.map_model(request.model)
        return {
            "model": model,
            "thinking_enabled": self.is_thinking_model(model),
            "search_enabled": True,
        }

    def create_reclassifier(
        self, request: ChatRequest, options: ConverterOptions
    ) -> StreamReclassifier:
        # Reasoning is always tagged explicitly by the upstream.
        return ReasoningStreamReclassifier(thinking=False, options=options)
