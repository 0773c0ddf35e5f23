import base64
import json
import time
from typing import Any, Dict, List, Optional

import httpx
import pytest
import respx

from webchat_gateway.credential_pool import CredentialPool
from webchat_gateway.deepseek_stream import ReasoningStreamReclassifier
from webchat_gateway.errors import (
    InvalidRequestError,
    NoCredentialsError,
    UpstreamAuthError,
    UpstreamEmptyResponseError,
    UpstreamError,
)
from webchat_gateway.models import ChatMessage, ChatRequest, ToolDefinition
from webchat_gateway.providers.base import Capability, decode_jwt_exp
from webchat_gateway.providers.claude import ROOT_MESSAGE_UUID, ClaudeAdapter, ClaudeTransport
from webchat_gateway.providers.deepseek import DeepSeekAdapter, DeepSeekTransport
from webchat_gateway.providers.qwen import QwenAdapter, QwenTransport
from webchat_gateway.sse import SSEEvent
from webchat_gateway.transport import UpstreamStream


class FakeTransport:
    def __init__(self, label: str, errors: Optional[List[Any]] = None):
        self.label = label
        self.errors = list(errors or [])
        self.created = 0
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def create_conversation(self) -> str:
        self.created += 1
        return f"{self.label}-conv-{self.created}"

    async def send_message(self, conversation_id, prompt, options):
        self.sent.append(
            {"conversation_id": conversation_id, "prompt": prompt, "options": dict(options)}
        )
        if self.errors:
            outcome = self.errors.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is None:
                return None
        return UpstreamStream.from_bytes(b'data: {"v": "ok"}\n\n')

    async def aclose(self) -> None:
        self.closed = True


def make_adapter(tmp_path, adapter_cls=DeepSeekAdapter, count=2, errors=None):
    """Build an adapter over ``count`` credentials with scripted transport failures.

    ``errors`` maps a credential's index to the outcomes of its successive
    sends: an exception to raise, or None for an empty reply.
    """
    pool = CredentialPool(str(tmp_path / adapter_cls.auth_file))
    for index in range(count):
        pool.add(
            {"bearer": f"bearer-{index}", "token": f"token-{index}", "sessionKey": f"sk-{index}"}
        )
    ids = [entry.id for entry in pool.get_all()]
    errors = errors or {}
    transports: Dict[str, FakeTransport] = {}

    def factory(entry):
        index = ids.index(entry.id)
        transport = FakeTransport(f"c{index}", errors.get(index))
        transports[entry.id] = transport
        return transport

    adapter = adapter_cls(pool, transport_factory=factory, failover_delay=0)
    return adapter, ids, transports


def make_request(model="deepseek-chat", messages=None, **kwargs) -> ChatRequest:
    messages = messages or [{"role": "user", "content": "Hi"}]
    return ChatRequest(
        model=model, messages=[ChatMessage.from_dict(m) for m in messages], **kwargs
    )


def make_jwt(exp: int) -> str:
    def encode(part):
        return base64.urlsafe_b64encode(json.dumps(part).encode()).rstrip(b"=").decode()

    return ".".join([encode({"alg": "HS256"}), encode({"exp": exp}), "signature"])


def auth_error() -> UpstreamError:
    return UpstreamError("DeepSeek API error: 401 unauthorized", status=401)


# --- models and options ---


def test_model_routing_and_options(tmp_path):
    deepseek, _, _ = make_adapter(tmp_path, count=0)
    claude, _, _ = make_adapter(tmp_path, ClaudeAdapter, count=0)
    qwen, _, _ = make_adapter(tmp_path, QwenAdapter, count=0)

    assert deepseek.match_model("deepseek-reasoner")
    assert not deepseek.match_model("claude-opus-4-6")
    assert claude.map_model("claude-3-5-sonnet") == "claude-sonnet-4-6"
    assert claude.map_model("claude-opus-4-6") == "claude-opus-4-6"
    assert qwen.match_model("qwq-plus")

    assert deepseek.upstream_options(make_request("deepseek-reasoner-search")) == {
        "model": "deepseek-reasoner",
        "thinking_enabled": True,
        "search_enabled": True,
    }
    assert deepseek.upstream_options(make_request("deepseek-chat"))["thinking_enabled"] is False
    assert qwen.upstream_options(make_request("qwq-plus"))["thinking_enabled"] is True
    assert qwen.upstream_options(make_request("qwen-turbo"))["thinking_enabled"] is False
    assert claude.upstream_options(make_request("claude-opus")) == {"model": "claude-opus-4-6"}


def test_model_listing(tmp_path):
    claude, _, _ = make_adapter(tmp_path, ClaudeAdapter, count=0)
    deepseek, _, _ = make_adapter(tmp_path, count=0)

    claude_ids = [m.id for m in claude.get_models()]
    assert claude_ids[:3] == ["claude-sonnet-4-6", "claude-opus-4-6", "claude-haiku-4-6"]
    assert "claude-3-5-sonnet" in claude_ids
    assert [m.to_dict()["owned_by"] for m in deepseek.get_models()] == ["deepseek-web"] * 4


def test_capabilities(tmp_path):
    deepseek, _, _ = make_adapter(tmp_path, count=0)
    qwen, _, _ = make_adapter(tmp_path, QwenAdapter, count=0)
    tools = [ToolDefinition(name="read")]

    assert deepseek.supports(Capability.TOOL_CALLS | Capability.SESSION_REUSE)
    assert not qwen.supports(Capability.TOOL_CALLS)
    assert deepseek.converter_options(make_request(tools=tools)).tools_enabled
    assert not qwen.converter_options(make_request("qwen-max", tools=tools)).tools_enabled
    assert not deepseek.converter_options(
        make_request(tools=tools, tool_choice="none")
    ).tools_enabled


def test_reclassifier_selection(tmp_path):
    deepseek, _, _ = make_adapter(tmp_path, count=0)

    reasoner = deepseek.create_reclassifier(
        make_request("deepseek-reasoner"), deepseek.converter_options(make_request())
    )
    chat = deepseek.create_reclassifier(
        make_request("deepseek-chat"), deepseek.converter_options(make_request())
    )

    assert reasoner.state.thinking_phase is True
    assert chat.state.thinking_phase is False


# --- prompt ---


def test_build_prompt_single_user_turn(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)

    assert adapter.build_prompt(make_request()) == "Hi"
    request = make_request(
        messages=[
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
        ]
    )
    assert adapter.build_prompt(request) == "Be brief\n\nHi"


def test_build_prompt_multi_turn(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)
    request = make_request(
        messages=[
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "More"},
        ]
    )

    assert adapter.build_prompt(request) == (
        "[System]\nBe brief\n\n[User]\nHi\n\n[Assistant]\nHello\n\n[User]\nMore"
    )


def test_build_prompt_drops_unknown_roles(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)
    request = make_request(
        messages=[
            {"role": "user", "content": "Hi"},
            {"role": "developer", "content": "Internal note"},
            {"role": "function", "content": "{}"},
            {"role": "assistant", "content": "Hello"},
        ]
    )

    assert adapter.build_prompt(request) == "[User]\nHi\n\n[Assistant]\nHello"


def test_build_prompt_with_tools_and_results(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)
    request = make_request(
        messages=[
            {"role": "user", "content": "Read a.txt"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "c1",
                        "type": "function",
                        "function": {"name": "read", "arguments": '{"file_path": "a.txt"}'},
                    }
                ],
            },
            {"role": "tool", "tool_call_id": "c1", "name": "read", "content": "hello"},
        ],
        tools=[ToolDefinition(name="read", description="Read a file")],
    )

    prompt = adapter.build_prompt(request)

    assert prompt.startswith("[System]\n## Tool Use Instructions")
    assert "- **read**: Read a file" in prompt
    assert '[Assistant]\n<tool_call name="read" id="c1">{"file_path": "a.txt"}</tool_call>' in prompt
    assert prompt.endswith("[Tool Result] tool=read call_id=c1\nhello")


def test_build_prompt_skips_tools_without_capability(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, QwenAdapter, count=0)
    request = make_request("qwen-max", tools=[ToolDefinition(name="read")])

    assert adapter.build_prompt(request) == "Hi"


# --- chat ---


@pytest.mark.asyncio
async def test_chat_without_credentials(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)

    with pytest.raises(NoCredentialsError):
        await adapter.chat(make_request())


@pytest.mark.asyncio
async def test_chat_reuses_session_and_threads_parent_id(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=1)
    request = make_request(session_key="s1")

    first = await adapter.chat(request)
    reclassifier = ReasoningStreamReclassifier(thinking=False)
    reclassifier.feed(SSEEvent(event="", data='{"response_message_id": 7, "v": "x"}'))
    adapter.complete(first, reclassifier)
    second = await adapter.chat(request)

    transport = transports[ids[0]]
    assert transport.created == 1
    assert first.session is second.session
    assert [s["conversation_id"] for s in transport.sent] == ["c0-conv-1", "c0-conv-1"]
    assert transport.sent[0]["options"]["parent_message_id"] is None
    assert transport.sent[1]["options"]["parent_message_id"] == "7"
    assert first.credential_id == ids[0]
    assert adapter.session_count() == 1


@pytest.mark.asyncio
async def test_chat_separate_session_keys(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=1)

    await adapter.chat(make_request(session_key="a"))
    await adapter.chat(make_request(session_key="b"))
    await adapter.chat(make_request())

    assert transports[ids[0]].created == 3
    assert adapter.session_count() == 3


@pytest.mark.asyncio
async def test_auth_failure_recreates_session(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, errors={0: [auth_error()]})

    response = await adapter.chat(make_request())

    transport = transports[ids[0]]
    assert response.credential_id == ids[0]
    assert transport.created == 2
    assert [s["conversation_id"] for s in transport.sent] == ["c0-conv-1", "c0-conv-2"]
    assert adapter.pool.get(ids[0]).fail_count == 0
    assert ids[1] not in transports


@pytest.mark.asyncio
async def test_session_marker_in_message_counts_as_auth_failure(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path, errors={0: [UpstreamError("Invalid session state")]}
    )

    response = await adapter.chat(make_request())

    assert response.credential_id == ids[0]
    assert transports[ids[0]].created == 2


@pytest.mark.asyncio
async def test_failover_to_next_credential(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path, errors={0: [auth_error(), auth_error()]}
    )

    response = await adapter.chat(make_request())

    assert response.credential_id == ids[1]
    assert adapter.pool.get(ids[0]).fail_count == 1
    assert adapter.pool.get(ids[0]).last_error.startswith("DeepSeek API error: 401")
    assert adapter.pool.get(ids[1]).fail_count == 0
    assert len(transports[ids[1]].sent) == 1


@pytest.mark.asyncio
async def test_failover_exhausted_raises_auth_error(tmp_path):
    adapter, ids, _ = make_adapter(
        tmp_path, errors={0: [auth_error(), auth_error()], 1: [auth_error()]}
    )

    with pytest.raises(UpstreamAuthError):
        await adapter.chat(make_request())

    assert adapter.pool.get(ids[0]).fail_count == 1
    assert adapter.pool.get(ids[1]).fail_count == 1


@pytest.mark.asyncio
async def test_single_credential_auth_failure(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path, count=1, errors={0: [auth_error(), auth_error()]}
    )

    with pytest.raises(UpstreamAuthError) as excinfo:
        await adapter.chat(make_request())

    assert excinfo.value.status_code == 401
    assert len(transports[ids[0]].sent) == 2


@pytest.mark.asyncio
async def test_non_auth_error_propagates(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path, errors={0: [UpstreamError("DeepSeek API error: 500 boom", status=500)]}
    )

    with pytest.raises(UpstreamError, match="500"):
        await adapter.chat(make_request())

    assert len(transports[ids[0]].sent) == 1
    assert adapter.pool.get(ids[0]).fail_count == 1
    assert ids[1] not in transports


@pytest.mark.asyncio
async def test_empty_response(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=1, errors={0: [None]})

    with pytest.raises(UpstreamEmptyResponseError, match="DeepSeek returned an empty response"):
        await adapter.chat(make_request())


@pytest.mark.asyncio
async def test_success_clears_failure_count(tmp_path):
    adapter, ids, _ = make_adapter(tmp_path, count=1)
    adapter.pool.mark_failed(ids[0], "earlier")

    await adapter.chat(make_request())

    assert adapter.pool.get(ids[0]).fail_count == 0


@pytest.mark.asyncio
async def test_adapter_without_session_reuse_fails_over_directly(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path,
        QwenAdapter,
        errors={0: [UpstreamError("Qwen API error: 403 forbidden", status=403)]},
    )

    response = await adapter.chat(make_request("qwen-max"))

    assert response.credential_id == ids[1]
    assert response.session is None
    assert len(transports[ids[0]].sent) == 1
    assert adapter.session_count() == 0


@pytest.mark.asyncio
async def test_qwen_ignores_deepseek_markers(tmp_path):
    adapter, ids, transports = make_adapter(
        tmp_path, QwenAdapter, errors={0: [UpstreamError("session busy", status=500)]}
    )

    with pytest.raises(UpstreamError, match="session busy"):
        await adapter.chat(make_request("qwen-max"))

    assert ids[1] not in transports


# --- credentials ---


def test_normalize_payload(tmp_path):
    deepseek, _, _ = make_adapter(tmp_path, count=0)
    claude, _, _ = make_adapter(tmp_path, ClaudeAdapter, count=0)

    with pytest.raises(InvalidRequestError, match="bearer, cookie"):
        deepseek.normalize_payload({"userAgent": "x"})

    payload = deepseek.normalize_payload({"bearer": "  tok  ", "extra": None})
    assert payload["bearer"] == "tok"
    assert "extra" not in payload
    assert payload["userAgent"].startswith("Mozilla/5.0")
    assert payload["capturedAt"]

    claude_payload = claude.normalize_payload({"sessionKey": "sk-ant-1"})
    assert claude_payload["cookie"] == "sessionKey=sk-ant-1"


def test_credentials_summary(tmp_path):
    adapter, ids, _ = make_adapter(tmp_path, count=0)
    entry_id = adapter.add_credentials({"bearer": "abcdefghijklmnop", "capturedAt": "2024-01-01"})

    summary = adapter.credentials_summary()

    assert summary["hasCredentials"] is True
    assert summary["capturedAt"] == "2024-01-01"
    assert summary["pool"]["entries"][0]["id"] == entry_id
    assert "abcdefghijklmnop" not in json.dumps(summary)


@pytest.mark.asyncio
async def test_remove_credentials_closes_transport(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=1)
    await adapter.chat(make_request())

    assert await adapter.remove_credentials(ids[0]) is True
    assert transports[ids[0]].closed
    assert adapter.session_count() == 0
    assert await adapter.remove_credentials(ids[0]) is False


@pytest.mark.asyncio
async def test_set_credentials_replaces_and_releases(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=1)
    await adapter.chat(make_request())

    entry_id = await adapter.set_credentials({"bearer": "fresh-token"})

    assert entry_id == ids[0]
    assert adapter.pool.get(entry_id).payload["bearer"] == "fresh-token"
    assert transports[ids[0]].closed
    assert adapter.session_count() == 0


@pytest.mark.asyncio
async def test_clear_credentials(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=2)
    await adapter.chat(make_request())

    assert await adapter.clear_credentials() is True
    assert not adapter.has_credentials()
    assert transports[ids[0]].closed


@pytest.mark.asyncio
async def test_reset_client_drops_sessions(tmp_path):
    adapter, ids, transports = make_adapter(tmp_path, count=1)
    await adapter.chat(make_request())
    old_transport = transports[ids[0]]

    await adapter.reset_client()
    await adapter.chat(make_request())

    assert old_transport.closed
    assert transports[ids[0]] is not old_transport
    assert transports[ids[0]].created == 1
    assert adapter.session_count() == 1


# --- expiry ---


def test_decode_jwt_exp():
    assert decode_jwt_exp(make_jwt(1700000000)) == 1700000000
    assert decode_jwt_exp("not-a-jwt") is None
    assert decode_jwt_exp("a.!!!.c") is None


def test_check_expiry_states(tmp_path):
    adapter, _, _ = make_adapter(tmp_path, count=0)
    assert adapter.check_expiry() == {"valid": False}

    adapter.add_credentials({"bearer": make_jwt(int(time.time()) + 600)})
    soon = adapter.check_expiry()
    assert soon["valid"] is True
    assert soon["expiringSoon"] is True
    assert soon["expired"] is False
    assert 0 < soon["remainingMs"] <= 600 * 1000
    assert soon["expiresAt"].endswith("Z")


def test_check_expiry_expired_and_opaque(tmp_path):
    expired, _, _ = make_adapter(tmp_path / "a", count=0)
    expired.add_credentials({"bearer": make_jwt(int(time.time()) - 60)})
    result = expired.check_expiry()
    assert result["valid"] is False
    assert result["expired"] is True
    assert result["expiringSoon"] is False

    opaque, _, _ = make_adapter(tmp_path / "b", count=0)
    opaque.add_credentials({"bearer": "opaque-token"})
    assert opaque.check_expiry() == {"valid": True, "expiresAt": None}


def test_check_expiry_without_capability(tmp_path):
    claude, _, _ = make_adapter(tmp_path, ClaudeAdapter, count=1)

    assert claude.check_expiry() == {"valid": True, "expiresAt": None}


# --- HTTP transports ---


@pytest.mark.asyncio
@respx.mock
async def test_deepseek_transport_round_trip():
    base = "https://deepseek.example.test/api/v0"
    create_route = respx.post(f"{base}/chat_session/create").mock(
        return_value=httpx.Response(200, json={"data": {"biz_data": {"id": "sess-1"}}})
    )
    send_route = respx.post(f"{base}/chat/completion").mock(
        return_value=httpx.Response(200, content=b'data: {"v": "Hi"}\n\ndata: [DONE]\n\n')
    )
    transport = DeepSeekTransport({"bearer": "tok", "cookie": "a=b"}, base_url=base)

    conversation_id = await transport.create_conversation()
    stream = await transport.send_message(
        conversation_id, "Hello", {"thinking_enabled": True, "parent_message_id": "3"}
    )
    body = b"".join([chunk async for chunk in stream])
    await stream.aclose()
    await transport.aclose()

    assert conversation_id == "sess-1"
    assert create_route.calls.last.request.headers["Authorization"] == "Bearer tok"
    assert create_route.calls.last.request.headers["Cookie"] == "a=b"
    sent = json.loads(send_route.calls.last.request.content)
    assert sent == {
        "chat_session_id": "sess-1",
        "parent_message_id": "3",
        "prompt": "Hello",
        "ref_file_ids": [],
        "thinking_enabled": True,
        "search_enabled": False,
    }
    assert b"[DONE]" in body


@pytest.mark.asyncio
@respx.mock
async def test_deepseek_transport_errors():
    base = "https://deepseek.example.test/api/v0"
    respx.post(f"{base}/chat_session/create").mock(
        return_value=httpx.Response(200, json={"data": {}})
    )
    respx.post(f"{base}/chat/completion").mock(
        return_value=httpx.Response(401, text="token expired")
    )
    transport = DeepSeekTransport({"bearer": "tok"}, base_url=base)

    with pytest.raises(UpstreamError, match="no id"):
        await transport.create_conversation()
    with pytest.raises(UpstreamError) as excinfo:
        await transport.send_message("sess-1", "Hello", {})
    assert excinfo.value.status == 401
    assert "token expired" in excinfo.value.message
    await transport.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_deepseek_transport_network_error():
    base = "https://deepseek.example.test/api/v0"
    respx.post(f"{base}/chat/completion").mock(side_effect=httpx.ConnectError("refused"))
    transport = DeepSeekTransport({"bearer": "tok"}, base_url=base)

    with pytest.raises(UpstreamError, match="request failed"):
        await transport.send_message("sess-1", "Hello", {})
    await transport.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_claude_transport_discovers_organization():
    base = "https://claude.example.test/api"
    respx.get(f"{base}/organizations").mock(
        return_value=httpx.Response(200, json=[{"uuid": "org-1"}])
    )
    create_route = respx.post(f"{base}/organizations/org-1/chat_conversations").mock(
        return_value=httpx.Response(201, json={"uuid": "conv-1"})
    )
    send_route = respx.post(
        f"{base}/organizations/org-1/chat_conversations/conv-1/completion"
    ).mock(return_value=httpx.Response(200, content=b"event: message_stop\ndata: {}\n\n"))
    transport = ClaudeTransport({"sessionKey": "sk-1"}, base_url=base)

    conversation_id = await transport.create_conversation()
    stream = await transport.send_message(conversation_id, "Hi", {"model": "claude-opus-4-6"})
    await stream.aclose()
    await transport.aclose()

    assert conversation_id == "conv-1"
    assert transport.organization_id == "org-1"
    assert create_route.calls.last.request.headers["Cookie"] == "sessionKey=sk-1"
    sent = json.loads(send_route.calls.last.request.content)
    assert sent["model"] == "claude-opus-4-6"
    assert sent["parent_message_uuid"] == ROOT_MESSAGE_UUID
    assert send_route.calls.last.request.headers["Accept"] == "text/event-stream"


@pytest.mark.asyncio
@respx.mock
async def test_claude_transport_organization_auth_failure():
    base = "https://claude.example.test/api"
    respx.get(f"{base}/organizations").mock(return_value=httpx.Response(403, text="no"))
    transport = ClaudeTransport({"sessionKey": "sk-1"}, base_url=base)

    with pytest.raises(UpstreamError) as excinfo:
        await transport.create_conversation()

    assert excinfo.value.status == 403
    await transport.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_qwen_transport_sends_chat_id():
    base = "https://qwen.example.test/api/v2"
    route = respx.post(f"{base}/chat/completions").mock(
        return_value=httpx.Response(200, content=b"data: [DONE]\n\n")
    )
    transport = QwenTransport({"token": "tok", "bxUa": "ua-sig"}, base_url=base)

    conversation_id = await transport.create_conversation()
    stream = await transport.send_message(
        conversation_id, "Hi", {"model": "qwq-plus", "thinking_enabled": True, "search_enabled": True}
    )
    await stream.aclose()
    await transport.aclose()

    request = route.calls.last.request
    assert request.url.params["chat_id"] == conversation_id
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["bx-ua"] == "ua-sig"
    sent = json.loads(request.content)
    assert sent["chat_id"] == conversation_id
    message = sent["messages"][0]
    assert message["chat_type"] == "search"
    assert message["feature_config"] == {"thinking_enabled": True, "output_schema": "phase"}
