"""Upstream event stream -> OpenAI chat.completion(.chunk) conversion.

A provider-family reclassifier turns each upstream SSE record into zero or
more :class:`Delta` items tagged as reasoning or content. ``CompletionStream``
renders those deltas as ``chat.completion.chunk`` frames (or aggregates
them into one ``chat.completion``), running content through the tool-call
parser when the request declared tools.
"""

import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from webchat_gateway.sse import DONE_SENTINEL, SSEEvent, aiter_sse, format_sse
from webchat_gateway.tool_calls import StreamToolCallParser, parse_tool_calls
from webchat_gateway.models import ToolCall
from webchat_gateway.transport import UpstreamStream

logger = logging.getLogger(__name__)

REASONING = "reasoning"
CONTENT = "content"


@dataclass
class ConverterOptions:
    strip_reasoning: bool = False
    clean_mode: bool = False
    tools_enabled: bool = False


@dataclass(frozen=True)
class Delta:
    kind: str
    text: str

    @property
    def is_reasoning(self) -> bool:
        return self.kind == REASONING


class StreamReclassifier(ABC):
    """Per-request state machine over one upstream event stream."""

    def __init__(self):
        self.finished = False

    @abstractmethod
    def feed(self, event: SSEEvent) -> List[Delta]:
        """Classify one upstream record; malformed records yield nothing."""

    def finish(self) -> List[Delta]:
        """Drain anything held back once the upstream is exhausted."""
        return []


def completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:8]}"


def approx_tokens(chars: int, chars_per_token: float) -> int:
    return int(math.ceil(chars / chars_per_token)) if chars else 0


class CompletionStream:
    """Renders one request's deltas in the OpenAI wire format."""

    def __init__(
        self,
        reclassifier: StreamReclassifier,
        model: str,
        options: Optional[ConverterOptions] = None,
    ):
        self.reclassifier = reclassifier
        self.model = model
        self.options = options or ConverterOptions()
        self.id = completion_id()
        self.created = int(time.time())
        self.output_chars = 0
        self.tool_calls: List[ToolCall] = []
        self._tool_parser = (
            StreamToolCallParser() if self.options.tools_enabled else None
        )

    def make_chunk(
        self, delta: Dict[str, Any], finish_reason: Optional[str] = None
    ) -> Dict[str, Any]:
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _tool_call_chunk(self, calls: List[ToolCall]) -> Dict[str, Any]:
        start = len(self.tool_calls)
        self.tool_calls.extend(calls)
        return self.make_chunk(
            {
                "tool_calls": [
                    {"index": start + offset, **call.to_dict()}
                    for offset, call in enumerate(calls)
                ]
            }
        )

    def _render_content(self, text: str, calls: List[ToolCall]) -> List[Dict[str, Any]]:
        chunks = []
        if text:
            self.output_chars += len(text)
            chunks.append(self.make_chunk({"content": text}))
        if calls:
            chunks.append(self._tool_call_chunk(calls))
        return chunks

    def render(self, delta: Delta) -> List[Dict[str, Any]]:
        if delta.is_reasoning:
            self.output_chars += len(delta.text)
            return [self.make_chunk({"reasoning_content": delta.text})]
        if self._tool_parser is None:
            return self._render_content(delta.text, [])
        parsed = self._tool_parser.feed(delta.text)
        return self._render_content(parsed.text, parsed.tool_calls)

    def finish(self) -> List[Dict[str, Any]]:
        chunks: List[Dict[str, Any]] = []
        for delta in self.reclassifier.finish():
            chunks.extend(self.render(delta))
        if self._tool_parser is not None:
            parsed = self._tool_parser.flush()
            chunks.extend(self._render_content(parsed.text, parsed.tool_calls))
        finish_reason = "tool_calls" if self.tool_calls else "stop"
        chunks.append(self.make_chunk({}, finish_reason))
        return chunks

    async def iter_sse(self, upstream: UpstreamStream) -> AsyncIterator[str]:
        """Yield ``data: ...`` frames, ending with a stop chunk and ``[DONE]``.

        The upstream is closed when iteration ends for any reason, including
        the consumer abandoning the generator.
        """
        try:
            async for event in aiter_sse(upstream):
                for delta in self.reclassifier.feed(event):
                    for chunk in self.render(delta):
                        yield format_sse(json.dumps(chunk, ensure_ascii=False))
                if self.reclassifier.finished:
                    break
            else:
                logger.debug(
                    "Upstream for %s ended without a completion marker", self.model
                )
            for chunk in self.finish():
                yield format_sse(json.dumps(chunk, ensure_ascii=False))
            yield format_sse(DONE_SENTINEL)
        finally:
            await upstream.aclose()

    async def collect(
        self, upstream: UpstreamStream, prompt_tokens: int = 0
    ) -> Dict[str, Any]:
        """Drain the upstream and build a single ``chat.completion`` object."""
        reasoning: List[str] = []
        content: List[str] = []
        try:
            async for event in aiter_sse(upstream):
                for delta in self.reclassifier.feed(event):
                    (reasoning if delta.is_reasoning else content).append(delta.text)
                if self.reclassifier.finished:
                    break
            for delta in self.reclassifier.finish():
                (reasoning if delta.is_reasoning else content).append(delta.text)
        finally:
            await upstream.aclose()

        text = "".join(content)
        reasoning_text = "".join(reasoning)
        self.output_chars = len(text) + len(reasoning_text)

        message: Dict[str, Any] = {"role": "assistant", "content": text}
        finish_reason = "stop"
        if self.options.tools_enabled:
            parsed = parse_tool_calls(text)
            if parsed.tool_calls:
                self.tool_calls = parsed.tool_calls
                message["content"] = parsed.text or None
                message["tool_calls"] = [call.to_dict() for call in parsed.tool_calls]
                finish_reason = "tool_calls"
        if reasoning_text and not self.options.strip_reasoning:
            message["reasoning_content"] = reasoning_text

        completion_tokens = approx_tokens(self.output_chars, 2)
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {"index": 0, "message": message, "finish_reason": finish_reason}
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
