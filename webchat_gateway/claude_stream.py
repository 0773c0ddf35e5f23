"""Reclassifier for Claude web event streams.

Claude declares each record's kind on a preceding ``event:`` line. Text
arrives as ``content_block_delta`` (``delta.text``), the legacy
``completion`` event, or occasionally inside ``content_block_start``. There
is no reasoning channel, so every fragment is content.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from webchat_gateway.sse import SSEEvent
from webchat_gateway.stream_converter import CONTENT, Delta, StreamReclassifier

logger = logging.getLogger(__name__)


def extract_claude_text(data: Dict[str, Any], event: str) -> Optional[str]:
    if event == "content_block_delta":
        delta = data.get("delta")
        if not isinstance(delta, dict):
            return None
        text = delta.get("text")
        return text if isinstance(text, str) and text else None
    if event == "completion":
        completion = data.get("completion")
        return completion if isinstance(completion, str) and completion else None
    if event == "content_block_start":
        block = data.get("content_block")
        if not isinstance(block, dict):
            return None
        text = block.get("text")
        return text if isinstance(text, str) and text else None
    return None


def is_stop_event(data: Dict[str, Any], event: str) -> bool:
    if event == "message_stop":
        return True
    if event == "message_delta":
        delta = data.get("delta")
        return isinstance(delta, dict) and bool(delta.get("stop_reason"))
    return False


class ClaudeStreamReclassifier(StreamReclassifier):
    def feed(self, event: SSEEvent) -> List[Delta]:
        if event.is_done:
            self.finished = True
            return []
        if not event.data:
            return []
        try:
            data = json.loads(event.data)
        except ValueError:
            logger.debug("Skipping non-JSON Claude frame: %.80s", event.data)
            return []
        if not isinstance(data, dict):
            return []

        # Some captures omit the event: line and only carry the type inline.
        kind = event.event or data.get("type") or ""
        deltas = []
        text = extract_claude_text(data, kind)
        if text:
            deltas.append(Delta(CONTENT, text))
        if is_stop_event(data, kind):
            self.finished = True
        return deltas
