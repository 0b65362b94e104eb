import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..config import CHAT_PATH, REQUEST_TIMEOUT_SECS, STREAM_READ_TIMEOUT_SECS
from ..errors import AuthExpiredError, TransportError

logger = logging.getLogger(__name__)


class StreamHandle(ABC):
    """An open response stream."""

    request_id: str | None = None

    @abstractmethod
    def frames(self) -> AsyncIterator[bytes]:
        """Yield raw frames until the server closes the stream.

        Raises TransportError on connection reset or timeout.
        """

    @abstractmethod
    async def aclose(self) -> None:
        """Abort the stream. Safe to call more than once."""


class Transport(ABC):
    """Opens and aborts chat response streams against the backend."""

    @abstractmethod
    async def open(self, payload: dict[str, Any], auth_token: str) -> StreamHandle:
        """Send the chat request and return once the response has started.

        Raises:
            AuthExpiredError: The backend rejected the bearer token.
            TransportError: The connection failed or the status was an error.
        """

    async def cancel(self, handle: StreamHandle) -> None:
        await handle.aclose()

    async def close(self) -> None:
        pass


class HttpStreamHandle(StreamHandle):
    def __init__(self, response: httpx.Response, request_id: str | None = None) -> None:
        self._response = response
        self._cancelled = False
        self.request_id = request_id

    async def frames(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            if self._cancelled:
                return
            raise TransportError(str(e) or type(e).__name__) from e
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        self._cancelled = True
        await self._response.aclose()


class HttpTransport(Transport):
    """Streams chat replies from the tutor backend over HTTP."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        chat_path: str = CHAT_PATH,
    ) -> None:
        self._chat_path = chat_path
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECS, read=STREAM_READ_TIMEOUT_SECS),
        )

    async def open(self, payload: dict[str, Any], auth_token: str) -> StreamHandle:
        request = self._client.build_request(
            "POST",
            self._chat_path,
            json=payload,
            headers={
                "Authorization": f"Bearer {auth_token}",
                "Accept": "text/event-stream",
            },
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

        if response.status_code == 401:
            await response.aclose()
            raise AuthExpiredError("backend rejected the bearer token")
        if response.status_code >= 400:
            await response.aclose()
            raise TransportError(f"chat request failed with HTTP {response.status_code}")

        request_id = payload.get("request_id")
        logger.info("Opened chat stream for request %s", request_id)
        return HttpStreamHandle(response, request_id)

    async def close(self) -> None:
        await self._client.aclose()
