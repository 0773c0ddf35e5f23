"""Reasoning/content reclassification for DeepSeek-style event streams.

Each upstream record is a JSON object. Its text lives in ``v`` (JSON-patch
style), ``content`` or an OpenAI-shaped ``choices[0].delta``. Whether the
text is chain-of-thought or answer is decided, in order, by the patch path
``p``, a ``type``/``phase`` discriminator, an already-normalized delta, and
finally a local state machine: reasoning models start in the thinking
phase and leave it for good on an explicit content signal or on the
in-band end-of-thinking token.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from webchat_gateway.models import StreamConversionState
from webchat_gateway.sse import SSEEvent
from webchat_gateway.stream_converter import (
    CONTENT,
    REASONING,
    ConverterOptions,
    Delta,
    StreamReclassifier,
)

logger = logging.getLogger(__name__)

END_OF_THINKING = "<｜end▁of▁thinking｜>"

SPECIAL_TOKENS = frozenset(
    {
        END_OF_THINKING,
        "<|endoftext|>",
        "<|im_end|>",
        "<|im_start|>",
        "FINISHED",
    }
)

CITATION_RE = re.compile(r"\[citation:\d+\]")
SEARCH_REF_RE = re.compile(r"\[ref_\d+\]")
SEARCH_MARKER_RE = re.compile(r"\[search_begin\]|\[search_end\]")
ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\ufeff]")

THINKING_PATH_HINTS = ("thinking", "reasoning", "think_content", "thought")
THINKING_TYPES = ("thinking", "reasoning", "think")
CONTENT_TYPES = ("text", "content", "answer")


def sanitize(text: str, is_reasoning: bool, clean_mode: bool = False) -> Optional[str]:
    """Strip upstream artifacts; returns None when nothing is left.

    Citation and search markers are removed from answer text only (and from
    reasoning too in clean mode); zero-width characters always go.
    """
    if not text or text.strip() in SPECIAL_TOKENS:
        return None

    cleaned = text
    if not is_reasoning or clean_mode:
        cleaned = CITATION_RE.sub("", cleaned)
        cleaned = SEARCH_REF_RE.sub("", cleaned)
        cleaned = SEARCH_MARKER_RE.sub("", cleaned)
    cleaned = ZERO_WIDTH_RE.sub("", cleaned)
    return cleaned or None


def classify_fragment(data: Dict[str, Any]) -> Optional[bool]:
    """True for reasoning, False for content, None when the record is silent."""
    path = data.get("p")
    if isinstance(path, str) and path:
        lowered = path.lower()
        return any(hint in lowered for hint in THINKING_PATH_HINTS)

    kind = data.get("type", data.get("phase"))
    if isinstance(kind, str):
        kind = kind.lower()
        if kind in THINKING_TYPES:
            return True
        if kind in CONTENT_TYPES:
            return False

    delta = _openai_delta(data)
    if delta is not None:
        phase = delta.get("phase")
        if isinstance(phase, str) and phase.lower() in THINKING_TYPES:
            return True
        if delta.get("reasoning_content"):
            return True
        if delta.get("content") is not None:
            return False
    return None


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("v")
    if isinstance(value, str):
        return value
    content = data.get("content")
    if isinstance(content, str):
        return content
    delta = _openai_delta(data)
    if delta is not None:
        if delta.get("reasoning_content"):
            return str(delta["reasoning_content"])
        if delta.get("content"):
            return str(delta["content"])
    return None


def _openai_delta(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            return delta
    return None


def _partial_marker_suffix(text: str) -> int:
    """Length of the longest suffix of ``text`` that starts the marker."""
    for size in range(min(len(text), len(END_OF_THINKING) - 1), 0, -1):
        if END_OF_THINKING.startswith(text[-size:]):
            return size
    return 0


class ReasoningStreamReclassifier(StreamReclassifier):
    def __init__(self, thinking: bool, options: Optional[ConverterOptions] = None):
        super().__init__()
        self.options = options or ConverterOptions()
        self.state = StreamConversionState(thinking_phase=thinking)
        # Tail of a thinking fragment that may be the start of the marker.
        self._held = ""

    @property
    def parent_message_id(self) -> Optional[str]:
        return self.state.parent_message_id

    def feed(self, event: SSEEvent) -> List[Delta]:
        if event.is_done:
            self.finished = True
            return []
        try:
            data = json.loads(event.data)
        except ValueError:
            logger.debug("Skipping non-JSON upstream frame: %.80s", event.data)
            return []
        if not isinstance(data, dict):
            return []

        message_id = data.get("response_message_id")
        if message_id:
            self.state.parent_message_id = str(message_id)

        raw = extract_text(data)
        if raw is None:
            return []

        explicit = classify_fragment(data)
        released: List[Delta] = []
        if explicit is False and self._held:
            # A held tail is still reasoning.
            released = self._emit(self._held, True)
            self._held = ""
        text = self._held + raw
        self._held = ""

        marker_at = text.find(END_OF_THINKING)
        if marker_at >= 0:
            before = text[:marker_at]
            after = text[marker_at + len(END_OF_THINKING):]
            self._end_thinking()
            return released + self._emit(before, True) + self._emit(after, False)

        if explicit is not None:
            is_reasoning = explicit
            if not explicit and self.state.thinking_phase:
                self._end_thinking()
        else:
            is_reasoning = self.state.thinking_phase and not self.state.thinking_ended

        if is_reasoning and not self.state.thinking_ended:
            held = _partial_marker_suffix(text)
            if held:
                text, self._held = text[:-held], text[-held:]

        return released + self._emit(text, is_reasoning)

    def finish(self) -> List[Delta]:
        held, self._held = self._held, ""
        is_reasoning = self.state.thinking_phase and not self.state.thinking_ended
        return self._emit(held, is_reasoning)

    def _end_thinking(self) -> None:
        self.state.thinking_phase = False
        self.state.thinking_ended = True

    def _emit(self, text: str, is_reasoning: bool) -> List[Delta]:
        cleaned = sanitize(text, is_reasoning, self.options.clean_mode)
        if cleaned is None:
            return []
        if is_reasoning:
            if self.options.strip_reasoning:
                return []
            return [Delta(REASONING, cleaned)]
        self.state.has_emitted_content = True
        return [Delta(CONTENT, cleaned)]
