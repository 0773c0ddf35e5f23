"""Session transport interface and the raw upstream byte stream it returns."""

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from webchat_gateway.errors import UpstreamError

logger = logging.getLogger(__name__)


class UpstreamStream:
    """Async byte iterator over one upstream reply, closeable exactly once."""

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._chunks = chunks
        self._close = close
        self.closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            await self._close()

    @classmethod
    def from_response(cls, response: httpx.Response) -> "UpstreamStream":
        return cls(response.aiter_bytes(), response.aclose)

    @classmethod
    def from_bytes(cls, *chunks: bytes) -> "UpstreamStream":
        async def generate() -> AsyncIterator[bytes]:
            for chunk in chunks:
                yield chunk

        return cls(generate())


class SessionTransport(Protocol):
    """The two upstream operations a provider adapter depends on.

    Implementations own whatever is needed to reach the backend (an HTTP
    client, an automated browser page); the adapter only sees conversation
    ids and byte streams.
    """

    async def create_conversation(self) -> str: ...

    async def send_message(
        self, conversation_id: str, prompt: str, options: Dict[str, Any]
    ) -> Optional[UpstreamStream]: ...

    async def aclose(self) -> None: ...


async def raise_for_upstream_status(response: httpx.Response, provider_name: str) -> None:
    """Raise ``UpstreamError`` carrying the status code for an error response.

    The body is read and the response closed before raising.
    """
    if response.status_code < 400:
        return
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    finally:
        await response.aclose()
    message = f"{provider_name} API error: {response.status_code} {body[:200]}"
    logger.error(message)
    raise UpstreamError(message, status=response.status_code)


async def open_stream(
    client: httpx.AsyncClient,
    request: httpx.Request,
    provider_name: str,
) -> UpstreamStream:
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        raise UpstreamError(f"{provider_name} request timed out: {exc}")
    except httpx.RequestError as exc:
        raise UpstreamError(f"{provider_name} request failed: {exc}")
    await raise_for_upstream_status(response, provider_name)
    return UpstreamStream.from_response(response)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider_name: str,
    **kwargs: Any,
) -> Any:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise UpstreamError(f"{provider_name} request timed out: {exc}")
    except httpx.RequestError as exc:
        raise UpstreamError(f"{provider_name} request failed: {exc}")
    if response.status_code >= 400:
        raise UpstreamError(
            f"{provider_name} API error: {response.status_code} {response.text[:200]}",
            status=response.status_code,
        )
    try:
        return response.json()
    except ValueError:
        raise UpstreamError(f"{provider_name} returned a non-JSON body")
