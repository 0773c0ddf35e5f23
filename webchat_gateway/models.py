"""Data models for credential pools, chat requests and stream state."""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"
CREDENTIAL_STATUSES = (STATUS_ACTIVE, STATUS_EXPIRED, STATUS_FAILED)

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

# Payload keys that hold the secret part of a captured session.
SECRET_FIELDS = ("bearer", "token", "sessionKey", "cookie")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def redact(secret: str) -> str:
    if len(secret) <= 11:
        return "*" * len(secret)
    return f"{secret[:8]}...{secret[-3:]}"


@dataclass
class CredentialEntry:
    """One account's captured session payload plus health bookkeeping."""

    id: str
    payload: Dict[str, Any]
    status: str = STATUS_ACTIVE
    fail_count: int = 0
    last_used: Optional[datetime] = None
    last_error: Optional[str] = None
    added_at: datetime = field(default_factory=utcnow)

    @property
    def captured_at(self) -> Optional[str]:
        value = self.payload.get("capturedAt")
        return str(value) if value else None

    def secret_preview(self) -> Optional[str]:
        for name in SECRET_FIELDS:
            value = self.payload.get(name)
            if isinstance(value, str) and value:
                return redact(value)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Storage form, compatible with the legacy camelCase pool files."""
        return {
            "id": self.id,
            "credentials": self.payload,
            "status": self.status,
            "failCount": self.fail_count,
            "lastUsed": _format_time(self.last_used),
            "lastError": self.last_error,
            "addedAt": _format_time(self.added_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialEntry":
        payload = data.get("credentials", data.get("payload")) or {}
        status = data.get("status", STATUS_ACTIVE)
        if status not in CREDENTIAL_STATUSES:
            status = STATUS_ACTIVE
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            payload=dict(payload),
            status=status,
            fail_count=int(data.get("failCount", 0) or 0),
            last_used=_parse_time(data.get("lastUsed")),
            last_error=data.get("lastError"),
            added_at=_parse_time(data.get("addedAt")) or utcnow(),
        )

    @classmethod
    def wrap_legacy(cls, payload: Dict[str, Any]) -> "CredentialEntry":
        """Wrap a single pre-pool credential record."""
        return cls(
            id=str(uuid.uuid4()),
            payload=dict(payload),
            added_at=_parse_time(payload.get("capturedAt")) or utcnow(),
        )


@dataclass
class QueuedTask:
    """A deferred upstream call waiting for admission."""

    id: str
    execute: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    enqueued_at: float = field(default_factory=time.time)
    runner: Optional["asyncio.Task[Any]"] = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def parsed_arguments(self) -> Any:
        return json.loads(self.arguments)


@dataclass
class ToolDefinition:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolDefinition":
        fn = data.get("function", data)
        return cls(
            name=str(fn.get("name", "")),
            description=str(fn.get("description") or ""),
            parameters=dict(fn.get("parameters") or {}),
        )


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: Union[str, List[Dict[str, Any]], None] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=str(data.get("role", ROLE_USER)),
            content=data.get("content"),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=data.get("tool_calls"),
        )

    def text(self) -> str:
        """Flatten string or multi-part content to plain text."""
        if isinstance(self.content, str):
            return self.content
        if not self.content:
            return ""
        return "".join(
            str(part.get("text", ""))
            for part in self.content
            if isinstance(part, dict) and part.get("type") == "text"
        )


@dataclass
class ChatRequest:
    """A normalized /v1/chat/completions request."""

    model: str
    messages: List[ChatMessage]
    stream: bool = False
    strip_reasoning: bool = False
    clean_mode: bool = False
    tools: List[ToolDefinition] = field(default_factory=list)
    tool_choice: Any = None
    session_key: Optional[str] = None

    @property
    def tools_enabled(self) -> bool:
        return bool(self.tools) and self.tool_choice != "none"


@dataclass
class ModelInfo:
    id: str
    owned_by: str
    alias_of: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "object": "model", "owned_by": self.owned_by}


@dataclass
class StreamConversionState:
    """Per-request reclassification state; never shared between requests."""

    thinking_phase: bool = False
    thinking_ended: bool = False
    parent_message_id: Optional[str] = None
    has_emitted_content: bool = False
