"""Line-oriented server-sent-event tokenizer shared by the stream converters."""

import codecs
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional, Union

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: str

    @property
    def is_done(self) -> bool:
        return self.data == DONE_SENTINEL


class SSEDecoder:
    """Incremental decoder: feed raw chunks, get complete ``data:`` records.

    A partial trailing line is carried over to the next chunk. The most
    recent ``event:`` line names every following ``data:`` record until the
    next ``event:`` line.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event = ""

    def feed(self, chunk: Union[bytes, str]) -> List[SSEEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [event for event in map(self._parse_line, lines) if event]

    def flush(self) -> List[SSEEvent]:
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        event = self._parse_line(line)
        return [event] if event else []

    def _parse_line(self, line: str) -> Optional[SSEEvent]:
        line = line.strip()
        if not line:
            return None
        if line.startswith("event:"):
            self._event = line[len("event:"):].strip()
            return None
        if line.startswith("data:"):
            return SSEEvent(event=self._event, data=line[len("data:"):].strip())
        return None


def iter_sse(chunks: Iterable[Union[bytes, str]]) -> Iterator[SSEEvent]:
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


async def aiter_sse(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[SSEEvent]:
    decoder = SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event


def format_sse(payload: str) -> str:
    return f"data: {payload}\n\n"
