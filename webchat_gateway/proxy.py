"""OpenAI-compatible ``/v1/chat/completions`` handling."""

import logging
from typing import Any, AsyncIterator, List, Mapping

from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from webchat_gateway.dispatcher import Completion, Dispatcher
from webchat_gateway.errors import InvalidRequestError
from webchat_gateway.models import ChatMessage, ChatRequest, ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "deepseek-chat"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _header_flag(headers: Mapping[str, str], name: str) -> bool:
    return headers.get(name, "").strip().lower() == "true"


def _check_tool_calls(messages: List[Any]) -> None:
    for message in messages:
        if not isinstance(message, dict) or message.get("tool_calls") is None:
            continue
        calls = message["tool_calls"]
        if not isinstance(calls, list):
            raise InvalidRequestError("tool_calls must be an array")
        for call in calls:
            if not isinstance(call, dict) or not isinstance(call.get("function") or {}, dict):
                raise InvalidRequestError(
                    "Each tool call must be an object with a function object"
                )


def parse_chat_request(body: Any, headers: Mapping[str, str]) -> ChatRequest:
    """Validate a request body and merge in the ``x-*`` header overrides."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise InvalidRequestError("messages must be an array")

    tools = body.get("tools") or []
    if not isinstance(tools, list):
        raise InvalidRequestError("tools must be an array")
    for tool in tools:
        fn = tool.get("function", tool) if isinstance(tool, dict) else None
        if not isinstance(fn, dict) or not isinstance(fn.get("parameters") or {}, dict):
            raise InvalidRequestError("Each tool must be an object with a function object")
    _check_tool_calls(messages)

    return ChatRequest(
        model=str(body.get("model") or DEFAULT_MODEL),
        messages=[ChatMessage.from_dict(m) for m in messages if isinstance(m, dict)],
        stream=bool(body.get("stream", False)),
        strip_reasoning=bool(body.get("strip_reasoning"))
        or _header_flag(headers, "x-strip-reasoning"),
        clean_mode=bool(body.get("clean_mode")) or _header_flag(headers, "x-clean-mode"),
        tools=[ToolDefinition.from_dict(t) for t in tools],
        tool_choice=body.get("tool_choice"),
        session_key=headers.get("x-session-id") or None,
    )


async def _stream_frames(request: Request, completion: Completion) -> AsyncIterator[str]:
    frames = completion.iter_sse()
    try:
        async for frame in frames:
            if await request.is_disconnected():
                logger.warning(
                    "Client disconnected, abandoning %s stream", completion.request.model
                )
                break
            yield frame
    except Exception as exc:
        # Headers are already sent; ending without [DONE] signals the failure.
        logger.error("Stream for %s failed: %s", completion.request.model, exc)
    finally:
        await frames.aclose()


async def handle_chat_completion(request: Request, dispatcher: Dispatcher) -> Response:
    """
    Serve one chat completion.

    Flow:
    1. Parse and validate the body (400 on malformed input)
    2. Route to a provider and open the upstream reply through its admission queue
    3. Stream ``chat.completion.chunk`` frames, or collect one ``chat.completion``

    Errors raised before the first byte reach the app's error handler and
    become a JSON error body.
    """
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Request body must be valid JSON")

    chat_request = parse_chat_request(body, request.headers)
    completion = await dispatcher.open(chat_request)

    if not chat_request.stream:
        return JSONResponse(content=await completion.collect())

    return StreamingResponse(
        _stream_frames(request, completion),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
