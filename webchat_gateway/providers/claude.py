"""Claude web chat adapter."""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from webchat_gateway.claude_stream import ClaudeStreamReclassifier
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

CLAUDE_BASE_URL = "https://claude.ai/api"
ROOT_MESSAGE_UUID = "00000000-0000-4000-8000-000000000000"
DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-6"

MODEL_ALIASES = {
    "claude-3-5-sonnet": "claude-sonnet-4-6",
    "claude-3-opus": "claude-opus-4-6",
    "claude-3-haiku": "claude-haiku-4-6",
    "claude-sonnet": "claude-sonnet-4-6",
    "claude-opus": "claude-opus-4-6",
    "claude-haiku": "claude-haiku-4-6",
}

# Aliases advertised on /v1/models; the versionless ones route silently.
LISTED_ALIASES = ("claude-3-5-sonnet", "claude-3-opus", "claude-3-haiku")


class ClaudeTransport:
    """Claude web API client bound to one account's ``sessionKey`` cookie."""

    def __init__(
        self,
        credentials: Dict[str, Any],
        timeout: float = 300.0,
        base_url: str = CLAUDE_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.organization_id: Optional[str] = credentials.get("organizationId")
        self.device_id = credentials.get("deviceId") or str(uuid.uuid4())
        self._client = client or httpx.AsyncClient(
            headers=self._headers(credentials),
            timeout=httpx.Timeout(10.0, read=timeout, write=30.0),
        )

    def _headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        session_key = credentials.get("sessionKey", "")
        cookie = credentials.get("cookie") or f"sessionKey={session_key}"
        return {
            "Content-Type": "application/json",
            "Cookie": cookie,
            "User-Agent": credentials.get("userAgent") or DEFAULT_USER_AGENT,
            "anthropic-client-platform": "web_claude_ai",
            "anthropic-device-id": self.device_id,
        }

    async def discover_organization(self) -> Optional[str]:
        if self.organization_id:
            return self.organization_id
        try:
            data = await request_json(
                self._client, "GET", f"{self.base_url}/organizations", "Claude"
            )
        except UpstreamError as exc:
            logger.warning("Claude organization discovery failed: %s", exc)
            if exc.status is not None and exc.status in (401, 403):
                raise
            return None
        if isinstance(data, list) and data and isinstance(data[0], dict):
            self.organization_id = data[0].get("uuid")
            logger.info("Claude organization discovered: %s", self.organization_id)
        return self.organization_id

    def _conversations_url(self) -> str:
        if self.organization_id:
            org = self.organization_id
            return f"{self.base_url}/organizations/{org}/chat_conversations"
        return f"{self.base_url}/chat_conversations"

    async def create_conversation(self) -> str:
        await self.discover_organization()
        conversation_uuid = str(uuid.uuid4())
        data = await request_json(
            self._client,
            "POST",
            self._conversations_url(),
            "Claude",
            json={
                "name": f"Gateway {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())}",
                "uuid": conversation_uuid,
            },
        )
        if isinstance(data, dict) and data.get("uuid"):
            return str(data["uuid"])
        return conversation_uuid

    async def send_message(
        self, conversation_id: str, prompt: str, options: Dict[str, Any]
    ) -> Optional[UpstreamStream]:
        body = {
            "prompt": prompt,
            "parent_message_uuid": options.get("parent_message_id") or ROOT_MESSAGE_UUID,
            "model": options.get("model") or DEFAULT_CLAUDE_MODEL,
            "timezone": options.get("timezone") or "UTC",
            "rendering_mode": "messages",
            "attachments": [],
            "files": [],
            "locale": "en-US",
            "personalized_styles": [],
            "sync_sources": [],
            "tools": [],
        }
        logger.debug(
            "Claude completion: conversation=%s model=%s", conversation_id, body["model"]
        )
        request = self._client.build_request(
            "POST",
            f"{self._conversations_url()}/{conversation_id}/completion",
            json=body,
            headers={"Accept": "text/event-stream"},
        )
        return await open_stream(self._client, request, "Claude")

    async def aclose(self) -> None:
        await self._client.aclose()


class ClaudeAdapter(ProviderAdapter):
    id = "claude"
    name = "Claude"
    owner_tag = "claude-web"
    auth_file = "claude-auth.json"
    model_prefixes = ("claude-",)
    model_aliases = MODEL_ALIASES
    capabilities = (
        Capability.CREDENTIAL_POOL | Capability.TOOL_CALLS | Capability.SESSION_REUSE
    )
    default_session_key = "claude-default"
    auth_markers = ("auth",)
    token_field = "sessionKey"
    secret_fields = ("sessionKey",)

    MODELS = ("claude-sonnet-4-6", "claude-opus-4-6", "claude-haiku-4-6")

    def get_models(self) -> List[ModelInfo]:
        models = [ModelInfo(id=model, owned_by=self.owner_tag) for model in self.MODELS]
        models.extend(
            ModelInfo(id=alias, owned_by=self.owner_tag, alias_of=MODEL_ALIASES[alias])
            for alias in LISTED_ALIASES
        )
        return models

    def create_transport(self, entry: CredentialEntry) -> ClaudeTransport:
        return ClaudeTransport(entry.payload, timeout=self.timeout)

    def normalize_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = super().normalize_payload(data)
        payload["cookie"] = payload.get("cookie") or f"sessionKey={payload['sessionKey']}"
        return payload

    def upstream_options(self, request: ChatRequest) -> Dict[str, Any]:
        return {"model": self.map_model(request.model)}

    def create_reclassifier(
        self, request: ChatRequest, options: ConverterOptions
    ) -> StreamReclassifier:
        return ClaudeStreamReclassifier()
