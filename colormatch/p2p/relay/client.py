"""Client interface to the public key-value relay."""
from __future__ import annotations

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Callable
from typing import TypeVar
from urllib.parse import quote

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import aiohttp

from colormatch.p2p.relay.messages import unwrap_envelope

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_RELAY_ADDRESS = 'https://dweet.cc'
DEFAULT_PROXY_ADDRESS = 'https://corsproxy.org/?'

# Errors where the request never produced an HTTP response.
_NETWORK_ERRORS = (aiohttp.ClientConnectionError, asyncio.TimeoutError)


class RelayClient:
    """Client interface to a last-write-wins key-value relay.

    Payloads are JSON objects published to and fetched from named topics.
    The relay only retains the most recent payload for each topic, so a
    fetch never reflects more than the latest publish and may be stale
    while the relay propagates writes.

    When a request fails at the network level (connection refused, reset,
    or timed out), it is retried exactly once through a proxy which wraps the
    target URL, e.g. `https://corsproxy.org/?<url-encoded target>`. Requests
    which receive an HTTP error status are not retried.

    Tip:
        This class can be used as an async context manager!
        ```python
        from colormatch.p2p.relay.client import RelayClient

        async with RelayClient() as client:
            await client.publish('colormatch-ABC123-offer', {...})
            payload = await client.fetch('colormatch-ABC123-offer')
        ```

    Args:
        address: Base address of the relay.
        proxy_address: Prefix of the proxy used after a network failure.
            The URL-encoded target URL is appended to this prefix. If `None`,
            failed requests are not retried through a proxy.
        timeout: Timeout in seconds for each HTTP request.
        session: Optional session to make requests with. The client will not
            close a session it did not create.
    """

    def __init__(
        self,
        address: str = DEFAULT_RELAY_ADDRESS,
        *,
        proxy_address: str | None = DEFAULT_PROXY_ADDRESS,
        timeout: float = 10,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not address.startswith(('http://', 'https://')):
            raise ValueError(
                'Relay address must start with http:// or https://. '
                f'Got {address}.',
            )

        self._address = address.rstrip('/')
        self._proxy_address = proxy_address
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(address={self._address!r})'

    @property
    def address(self) -> str:
        """Base address of the relay."""
        return self._address

    def publish_url(self, topic: str) -> str:
        """URL that payloads for `topic` are posted to."""
        return f'{self._address}/dweet/for/{quote(topic, safe="")}'

    def fetch_url(self, topic: str) -> str:
        """URL that the latest payload for `topic` is read from."""
        topic = quote(topic, safe='')
        return f'{self._address}/get/latest/dweet/for/{topic}'

    def proxy_url(self, url: str) -> str:
        """Wrap `url` in the proxy address.

        Raises:
            ValueError: If the client was created without a proxy address.
        """
        if self._proxy_address is None:
            raise ValueError('No proxy address is configured.')
        return f'{self._proxy_address}{quote(url, safe="")}'

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session if owned by this client."""
        if (
            self._owns_session
            and self._session is not None
            and not self._session.closed
        ):
            await self._session.close()

    async def _request(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        session = self._get_session()
        async with session.request(
            method,
            url,
            json=body,
            timeout=self._timeout,
        ) as response:
            if not 200 <= response.status < 300:
                return response.status, None
            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = None
            return response.status, data

    async def _request_with_fallback(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        try:
            return await self._request(method, url, body)
        except _NETWORK_ERRORS as e:
            if self._proxy_address is None:
                raise
            logger.warning(
                f'{method} {url} failed because of {e!r}. '
                'Retrying once through the proxy',
            )
        return await self._request(method, self.proxy_url(url), body)

    async def publish(self, topic: str, payload: dict[str, Any]) -> bool:
        """Publish a JSON payload to a topic.

        Note:
            The relay keeps only the latest payload per topic, so this
            replaces any payload previously published to `topic`.

        Args:
            topic: Topic name.
            payload: JSON-serializable object.

        Returns:
            If the relay accepted the payload.
        """
        url = self.publish_url(topic)
        try:
            status, _ = await self._request_with_fallback('POST', url, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f'Error publishing to topic {topic}: {e!r}')
            return False

        if not 200 <= status < 300:
            logger.error(
                f'Relay returned HTTP error code {status} when publishing '
                f'to topic {topic}',
            )
            return False

        logger.debug(f'Published payload to topic {topic}')
        return True

    async def fetch(self, topic: str) -> dict[str, Any] | None:
        """Fetch the latest payload published to a topic.

        Args:
            topic: Topic name.

        Returns:
            The latest payload or `None` if the topic holds no value, the
            request failed, or the response could not be understood.
        """
        url = self.fetch_url(topic)
        try:
            status, data = await self._request_with_fallback('GET', url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f'Error fetching topic {topic}: {e!r}')
            return None

        if not 200 <= status < 300:
            logger.debug(
                f'Relay returned HTTP error code {status} when fetching '
                f'topic {topic}',
            )
            return None

        content = unwrap_envelope(data)
        if content is None:
            logger.debug(f'Relay holds no value for topic {topic}')
        return content

    async def fetch_with_retry(
        self,
        topic: str,
        max_attempts: int = 5,
        delay: float = 1.5,
        *,
        decoder: Callable[[dict[str, Any]], T | None] | None = None,
    ) -> T | dict[str, Any] | None:
        """Fetch a topic, polling until a value is available.

        Publishes can take a moment to become visible through the relay, so
        the topic is fetched up to `max_attempts` times with a fixed `delay`
        between attempts.

        Args:
            topic: Topic name.
            max_attempts: Maximum number of fetch attempts.
            delay: Seconds to wait between attempts.
            decoder: Optional callable which converts the fetched payload
                into the result. An attempt fails if the decoder returns
                `None`.

        Returns:
            The first successfully decoded value or `None` if every attempt
            failed.

        Raises:
            ValueError: If `max_attempts` is less than one.
        """
        if max_attempts < 1:
            raise ValueError(
                f'max_attempts must be at least one. Got {max_attempts}.',
            )

        for attempt in range(1, max_attempts + 1):
            content = await self.fetch(topic)
            if content is not None:
                value = content if decoder is None else decoder(content)
                if value is not None:
                    return value

            logger.warning(
                f'Fetch attempt {attempt}/{max_attempts} for topic {topic} '
                'did not return a value',
            )
            if attempt < max_attempts:
                await asyncio.sleep(delay)

        logger.error(
            f'Giving up on topic {topic} after {max_attempts} attempts',
        )
        return None
