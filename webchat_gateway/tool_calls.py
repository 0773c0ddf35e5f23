"""Inline ``<tool_call>`` convention for backends without native function calling.

Tool declarations are injected into the prompt as instruction text, and
model output of the form::

    <tool_call name="read" id="call_1">{"file_path": "a.txt"}</tool_call>

is turned back into OpenAI-style ``tool_calls``.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Sequence

from webchat_gateway.models import ChatMessage, ToolCall, ToolDefinition

OPEN_TAG = "<tool_call"
CLOSE_TAG = "</tool_call>"

TOOL_CALL_RE = re.compile(
    r"<tool_call\s+(?:id=['\"]?([^'\">\s]+)['\"]?\s+)?"
    r"name=['\"]?([^'\">\s]+)['\"]?\s*"
    r"(?:id=['\"]?([^'\">\s]+)['\"]?\s*)?>"
    r"([\s\S]*?)</tool_call>",
    re.IGNORECASE,
)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"


@dataclass
class ToolParseResult:
    tool_calls: List[ToolCall] = field(default_factory=list)
    text: str = ""


def _normalize_arguments(raw: str) -> str:
    raw = raw.strip() or "{}"
    try:
        json.loads(raw)
    except ValueError:
        return json.dumps({"raw": raw}, ensure_ascii=False)
    return raw


def parse_tool_calls(text: str) -> ToolParseResult:
    """Extract every tool-call tag from ``text`` in order of appearance.

    Argument bodies that are not valid JSON are kept as ``{"raw": body}``.
    When at least one call is found the tags are removed and the remaining
    text is stripped; otherwise the text is returned untouched.
    """
    calls = [
        ToolCall(
            id=match.group(1) or match.group(3) or new_call_id(),
            name=match.group(2),
            arguments=_normalize_arguments(match.group(4)),
        )
        for match in TOOL_CALL_RE.finditer(text)
    ]
    if not calls:
        return ToolParseResult(text=text)
    return ToolParseResult(tool_calls=calls, text=TOOL_CALL_RE.sub("", text).strip())


class StreamToolCallParser:
    """Character-level state machine over streamed text.

    Plain text is released as soon as it cannot start a tool-call tag.
    From a ``<`` onwards the text is held until it is either ruled out as a
    tag (and released verbatim) or a complete ``</tool_call>`` has arrived,
    at which point the held span goes through :func:`parse_tool_calls`.
    """

    def __init__(self):
        self._buffer = ""

    @property
    def is_buffering(self) -> bool:
        return bool(self._buffer)

    def feed(self, chunk: str) -> ToolParseResult:
        result = ToolParseResult()
        for ch in chunk:
            if not self._buffer:
                if ch == "<":
                    self._buffer = ch
                else:
                    result.text += ch
                continue

            self._buffer += ch
            self._advance(result)
        return result

    def flush(self) -> ToolParseResult:
        result = ToolParseResult()
        if self._buffer:
            self._release(result)
        return result

    def _advance(self, result: ToolParseResult) -> None:
        lowered = self._buffer.lower()

        if lowered.startswith(OPEN_TAG):
            if len(lowered) == len(OPEN_TAG) + 1 and not self._buffer[-1].isspace():
                self._reject(result)
            elif CLOSE_TAG in lowered:
                self._release(result)
            return

        if lowered.startswith(CLOSE_TAG[:-1]):
            # Stray closing tag: pass it through once complete.
            if lowered.endswith(">"):
                result.text += self._buffer
                self._buffer = ""
            return

        if not (OPEN_TAG.startswith(lowered) or CLOSE_TAG.startswith(lowered)):
            self._reject(result)

    def _reject(self, result: ToolParseResult) -> None:
        held = self._buffer
        self._buffer = ""
        if held.endswith("<"):
            result.text += held[:-1]
            self._buffer = "<"
        else:
            result.text += held

    def _release(self, result: ToolParseResult) -> None:
        held = self._buffer
        self._buffer = ""
        parsed = parse_tool_calls(held)
        if parsed.tool_calls:
            result.tool_calls.extend(parsed.tool_calls)
            result.text += parsed.text
        else:
            result.text += held


def build_tool_system_prompt(tools: Sequence[ToolDefinition]) -> str:
    if not tools:
        return ""

    descriptions = []
    for tool in tools:
        line = f"- **{tool.name}**"
        if tool.description:
            line += f": {tool.description}"
        if tool.parameters:
            line += f"\n  Parameters: {json.dumps(tool.parameters, ensure_ascii=False)}"
        descriptions.append(line)

    return "\n".join(
        [
            "## Tool Use Instructions",
            "",
            "You have access to the following tools. When you need to use a tool, "
            "output a <tool_call> XML tag.",
            "You may call multiple tools in a single response.",
            "",
            "### Format",
            "To call a tool, output exactly this format (the id attribute is "
            "optional, one will be assigned if omitted):",
            "",
            "```",
            '<tool_call name="tool_name">{"param_name": "param_value"}</tool_call>',
            "```",
            "",
            "### Important Rules",
            "1. The content inside <tool_call> tags MUST be valid JSON matching "
            "the tool's parameters schema.",
            "2. Do NOT wrap <tool_call> tags in markdown code blocks.",
            "3. You can include normal text before or after <tool_call> tags.",
            "4. When you want to call a tool, use <tool_call> tags. When you don't "
            "need tools, respond normally.",
            "5. NEVER describe or explain tool calls in text form - always use the "
            "XML tag format.",
            "",
            "### Available Tools",
            "",
            *descriptions,
        ]
    )


def serialize_tool_result(message: ChatMessage) -> str:
    """Render a ``tool`` role message as text for the next prompt."""
    name = message.name or "unknown_tool"
    call_id = message.tool_call_id or "unknown"
    if isinstance(message.content, str):
        content = message.content
    else:
        content = json.dumps(message.content, ensure_ascii=False)
    return f"[Tool Result] tool={name} call_id={call_id}\n{content}"


def serialize_assistant_tool_calls(message: ChatMessage) -> str:
    """Render prior assistant tool calls back into inline tags."""
    if not message.tool_calls:
        return ""

    tags = []
    for call in message.tool_calls:
        fn = call.get("function") or {}
        arguments = fn.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        id_attr = f' id="{call["id"]}"' if call.get("id") else ""
        name = fn.get("name", "")
        tags.append(f'<tool_call name="{name}"{id_attr}>{arguments}</tool_call>')

    text = message.text()
    joined = "\n".join(tags)
    return f"{text}\n{joined}" if text else joined
