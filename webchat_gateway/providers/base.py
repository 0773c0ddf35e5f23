"""Common provider adapter: model routing, prompt assembly, sessions and failover."""

import asyncio
import base64
import enum
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, FrozenSet, List, Optional, Tuple

from webchat_gateway.config import Config
from webchat_gateway.credential_pool import CredentialPool
from webchat_gateway.errors import (
    AUTH_STATUS_CODES,
    InvalidRequestError,
    NoCredentialsError,
    UpstreamAuthError,
    UpstreamEmptyResponseError,
    UpstreamError,
    is_session_invalid,
)
from webchat_gateway.models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    ChatRequest,
    CredentialEntry,
    ModelInfo,
    utcnow,
)
from webchat_gateway.stream_converter import ConverterOptions, StreamReclassifier
from webchat_gateway.tool_calls import (
    build_tool_system_prompt,
    serialize_assistant_tool_calls,
    serialize_tool_result,
)
from webchat_gateway.transport import SessionTransport, UpstreamStream

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36"
)


class Capability(enum.Flag):
    NONE = 0
    CREDENTIAL_POOL = enum.auto()
    EXPIRY_CHECK = enum.auto()
    TOOL_CALLS = enum.auto()
    REASONING = enum.auto()
    SESSION_REUSE = enum.auto()


TransportFactory = Callable[[CredentialEntry], SessionTransport]


@dataclass
class Session:
    """A backend conversation bound to the credential that created it."""

    credential_id: str
    conversation_id: str
    parent_message_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class ChatResponse:
    stream: UpstreamStream
    prompt: str
    credential_id: str
    session: Optional[Session] = None


def decode_jwt_exp(token: str) -> Optional[int]:
    """Return the ``exp`` claim of a JWT-shaped token, or None."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except ValueError:
        return None
    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    return int(exp) if isinstance(exp, (int, float)) else None


class ProviderAdapter(ABC):
    """One upstream chat backend.

    Subclasses declare their models, capabilities and failure signatures and
    supply a transport per credential plus a stream reclassifier per request.
    """

    id: ClassVar[str]
    name: ClassVar[str]
    owner_tag: ClassVar[str]
    auth_file: ClassVar[str]
    model_prefixes: ClassVar[Tuple[str, ...]] = ()
    model_aliases: ClassVar[Dict[str, str]] = {}
    capabilities: ClassVar[Capability] = Capability.CREDENTIAL_POOL
    default_session_key: ClassVar[str] = "default"
    auth_status_codes: ClassVar[FrozenSet[int]] = AUTH_STATUS_CODES
    auth_markers: ClassVar[Tuple[str, ...]] = ()
    # Payload field holding the bearer/JWT used for expiry checks.
    token_field: ClassVar[str] = "bearer"
    secret_fields: ClassVar[Tuple[str, ...]] = ("bearer", "cookie")

    def __init__(
        self,
        pool: CredentialPool,
        transport_factory: Optional[TransportFactory] = None,
        failover_delay: float = 1.0,
        expiring_soon_minutes: int = 30,
        timeout: float = 300.0,
    ):
        self.pool = pool
        self.failover_delay = failover_delay
        self.expiring_soon_minutes = expiring_soon_minutes
        self.timeout = timeout
        self._transport_factory = transport_factory or self.create_transport
        self._transports: Dict[str, SessionTransport] = {}
        self._sessions: Dict[Tuple[str, str], Session] = {}

    @classmethod
    def from_config(
        cls, config: Config, transport_factory: Optional[TransportFactory] = None
    ) -> "ProviderAdapter":
        pool = CredentialPool(
            os.path.join(config.data_dir, cls.auth_file),
            strategy=config.pool_strategy,
            failure_threshold=config.failure_threshold,
        )
        return cls(
            pool,
            transport_factory=transport_factory,
            failover_delay=config.failover_delay_seconds,
            expiring_soon_minutes=config.expiring_soon_minutes,
            timeout=config.upstream_timeout_seconds,
        )

    # --- models ---

    @abstractmethod
    def get_models(self) -> List[ModelInfo]:
        ...

    def match_model(self, model: str) -> bool:
        return any(model.startswith(prefix) for prefix in self.model_prefixes)

    def map_model(self, model: str) -> str:
        return self.model_aliases.get(model, model)

    def supports(self, capability: Capability) -> bool:
        return bool(self.capabilities & capability)

    # --- per-request hooks ---

    @abstractmethod
    def create_transport(self, entry: CredentialEntry) -> SessionTransport:
        ...

    @abstractmethod
    def upstream_options(self, request: ChatRequest) -> Dict[str, Any]:
        """Provider-specific send options (upstream model id, thinking, search)."""

    @abstractmethod
    def create_reclassifier(
        self, request: ChatRequest, options: ConverterOptions
    ) -> StreamReclassifier:
        ...

    def converter_options(self, request: ChatRequest) -> ConverterOptions:
        return ConverterOptions(
            strip_reasoning=request.strip_reasoning,
            clean_mode=request.clean_mode,
            tools_enabled=self.supports(Capability.TOOL_CALLS) and request.tools_enabled,
        )

    # --- prompt ---

    def build_prompt(self, request: ChatRequest) -> str:
        """Flatten the message history into one prompt.

        System messages and the tool preamble lead. A lone user turn is sent
        as-is after that preamble; longer histories become role-tagged blocks.
        """
        messages = request.messages
        system_text = "\n".join(m.text() for m in messages if m.role == ROLE_SYSTEM)
        system_parts = [system_text] if system_text else []
        if self.supports(Capability.TOOL_CALLS) and request.tools_enabled:
            system_parts.append(build_tool_system_prompt(request.tools))
        full_system = "\n\n".join(system_parts)

        turns = [m for m in messages if m.role != ROLE_SYSTEM]
        if len(turns) == 1 and turns[0].role == ROLE_USER:
            user_text = turns[0].text()
            return f"{full_system}\n\n{user_text}" if full_system else user_text

        parts = [f"[System]\n{full_system}"] if full_system else []
        for message in turns:
            if message.role == ROLE_TOOL:
                parts.append(serialize_tool_result(message))
            elif message.role == ROLE_ASSISTANT and message.tool_calls:
                parts.append(f"[Assistant]\n{serialize_assistant_tool_calls(message)}")
            elif message.role == ROLE_USER:
                parts.append(f"[User]\n{message.text()}")
            elif message.role == ROLE_ASSISTANT:
                parts.append(f"[Assistant]\n{message.text()}")
        return "\n\n".join(parts)

    # --- chat ---

    def is_auth_error(self, exc: Exception) -> bool:
        return is_session_invalid(exc, self.auth_status_codes, self.auth_markers)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send one request upstream and return the raw reply stream.

        An auth-class failure invalidates the cached session and retries once
        on a fresh one (when sessions are reused). If that fails too the
        credential is marked failed and the whole sequence is tried once on
        the next distinct credential. Other errors propagate immediately.
        """
        prompt = self.build_prompt(request)
        options = self.upstream_options(request)
        session_key = request.session_key or self.default_session_key

        entry = self.pool.next()
        if entry is None:
            raise NoCredentialsError(self.name)

        try:
            stream, session = await self._send(entry, session_key, prompt, options)
        except UpstreamError as exc:
            if not self.is_auth_error(exc):
                self.pool.mark_failed(entry.id, str(exc))
                raise
            entry, stream, session = await self._recover(
                entry, session_key, prompt, options, exc
            )

        self.pool.mark_success(entry.id)
        return ChatResponse(
            stream=stream, prompt=prompt, credential_id=entry.id, session=session
        )

    async def _recover(
        self,
        entry: CredentialEntry,
        session_key: str,
        prompt: str,
        options: Dict[str, Any],
        error: UpstreamError,
    ) -> Tuple[CredentialEntry, UpstreamStream, Optional[Session]]:
        logger.warning(
            "%s session invalid for credential %s: %s", self.name, entry.id, error
        )
        if self.supports(Capability.SESSION_REUSE):
            self.invalidate_session(entry.id, session_key)
            try:
                stream, session = await self._send(entry, session_key, prompt, options)
                return entry, stream, session
            except UpstreamError as retry_error:
                error = retry_error

        self.pool.mark_failed(entry.id, str(error))
        fallback = self.pool.next()
        if fallback is None or fallback.id == entry.id:
            raise self._auth_failure(error) from error

        await asyncio.sleep(self.failover_delay)
        logger.info(
            "%s failing over from credential %s to %s", self.name, entry.id, fallback.id
        )
        self.invalidate_session(fallback.id, session_key)
        try:
            stream, session = await self._send(fallback, session_key, prompt, options)
        except UpstreamError as fallback_error:
            self.pool.mark_failed(fallback.id, str(fallback_error))
            raise self._auth_failure(fallback_error) from fallback_error
        return fallback, stream, session

    def _auth_failure(self, error: UpstreamError) -> UpstreamError:
        if self.is_auth_error(error):
            return UpstreamAuthError(f"{self.name} authentication failed: {error}")
        return error

    async def _send(
        self,
        entry: CredentialEntry,
        session_key: str,
        prompt: str,
        options: Dict[str, Any],
    ) -> Tuple[UpstreamStream, Optional[Session]]:
        transport = self.get_transport(entry)
        session = None
        if self.supports(Capability.SESSION_REUSE):
            session = self._sessions.get((entry.id, session_key))
            if session is None:
                conversation_id = await transport.create_conversation()
                session = Session(credential_id=entry.id, conversation_id=conversation_id)
                self._sessions[(entry.id, session_key)] = session
                logger.info("%s created session for key %r", self.name, session_key)
            else:
                logger.debug("%s reusing session for key %r", self.name, session_key)
            conversation_id = session.conversation_id
            options = dict(options, parent_message_id=session.parent_message_id)
        else:
            conversation_id = await transport.create_conversation()

        stream = await transport.send_message(conversation_id, prompt, options)
        if stream is None:
            raise UpstreamEmptyResponseError(self.name)
        return stream, session

    def complete(self, response: ChatResponse, reclassifier: StreamReclassifier) -> None:
        """Record the reply's message id so the next turn continues the thread."""
        parent_id = getattr(reclassifier, "parent_message_id", None)
        if response.session is not None and parent_id:
            response.session.parent_message_id = parent_id

    # --- sessions and transports ---

    def get_transport(self, entry: CredentialEntry) -> SessionTransport:
        transport = self._transports.get(entry.id)
        if transport is None:
            transport = self._transport_factory(entry)
            self._transports[entry.id] = transport
        return transport

    def invalidate_session(self, credential_id: str, session_key: str) -> None:
        if self._sessions.pop((credential_id, session_key), None) is not None:
            logger.info("%s invalidated session for key %r", self.name, session_key)

    def session_count(self) -> int:
        return len(self._sessions)

    async def reset_client(self) -> None:
        """Drop every cached session and close per-credential transports."""
        self._sessions.clear()
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            await transport.aclose()

    async def _release_credential(self, credential_id: str) -> None:
        for key in [k for k in self._sessions if k[0] == credential_id]:
            del self._sessions[key]
        transport = self._transports.pop(credential_id, None)
        if transport is not None:
            await transport.aclose()

    # --- credentials ---

    def normalize_payload(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            key: value.strip() if isinstance(value, str) else value
            for key, value in data.items()
            if value is not None
        }
        if not any(payload.get(name) for name in self.secret_fields):
            raise InvalidRequestError(
                f"{self.name} credentials need one of: {', '.join(self.secret_fields)}"
            )
        payload["userAgent"] = payload.get("userAgent") or DEFAULT_USER_AGENT
        payload["capturedAt"] = payload.get("capturedAt") or utcnow().isoformat()
        return payload

    def has_credentials(self) -> bool:
        return self.pool.count() > 0

    def credentials_summary(self) -> Dict[str, Any]:
        first = self.pool.first() or {}
        return {
            "hasCredentials": self.has_credentials(),
            "capturedAt": first.get("capturedAt"),
            "pool": self.pool.get_summary(),
        }

    def add_credentials(self, data: Dict[str, Any]) -> str:
        entry_id = self.pool.add(self.normalize_payload(data))
        logger.info("%s credential %s added", self.name, entry_id)
        return entry_id

    async def set_credentials(self, data: Dict[str, Any]) -> str:
        entry_id = self.pool.set(self.normalize_payload(data))
        await self._release_credential(entry_id)
        return entry_id

    async def remove_credentials(self, credential_id: str) -> bool:
        removed = self.pool.remove(credential_id)
        if removed:
            await self._release_credential(credential_id)
            logger.info("%s credential %s removed", self.name, credential_id)
        return removed

    def reset_credential_status(self, credential_id: str) -> bool:
        return self.pool.reset_status(credential_id)

    async def clear_credentials(self) -> bool:
        await self.reset_client()
        return self.pool.clear_all()

    def check_expiry(self) -> Dict[str, Any]:
        """Inspect the first credential's token for a JWT ``exp`` claim."""
        if not self.supports(Capability.EXPIRY_CHECK):
            return {"valid": self.has_credentials(), "expiresAt": None}
        first = self.pool.first() or {}
        token = first.get(self.token_field)
        if not token:
            return {"valid": False}
        exp = decode_jwt_exp(str(token))
        if exp is None:
            return {"valid": True, "expiresAt": None}

        remaining_ms = int(exp * 1000 - time.time() * 1000)
        soon_ms = self.expiring_soon_minutes * 60 * 1000
        expires_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(exp))
        return {
            "valid": remaining_ms > 0,
            "expiresAt": expires_at,
            "expired": remaining_ms <= 0,
            "expiringSoon": 0 < remaining_ms < soon_ms,
            "remainingMs": remaining_ms,
        }

    async def aclose(self) -> None:
        await self.reset_client()
