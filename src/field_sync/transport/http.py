from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional

import aiohttp

from field_sync.config.models import NetworkSettings
from field_sync.core.errors import NetworkError
from field_sync.transport.interfaces import TransportResponse

logger = logging.getLogger(__name__)


class AiohttpTransport:
    """Transport over a shared aiohttp session rooted at the configured base URL."""

    def __init__(self, config: NetworkSettings):
        self._base_url = config.base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> AiohttpTransport:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self._session and not self._session.closed:
            return
        self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _url(self, key: str) -> str:
        if key.startswith(("http://", "https://")):
            return key
        return f"{self._base_url}/{key.lstrip('/')}"

    async def send(
        self,
        method: str,
        key: str,
        payload: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> TransportResponse:
        await self.start()
        assert self._session is not None

        request_headers = {"Accept": "application/json"}
        if payload is not None:
            request_headers["Content-Type"] = "application/json"
        if headers:
            request_headers.update(headers)

        url = self._url(key)
        logger.debug("Sending request. method=%s url=%s", method, url)
        try:
            async with self._session.request(method, url, data=payload, headers=request_headers) as response:
                body = await response.read()
                return TransportResponse(
                    status=response.status,
                    body=body,
                    headers={name: value for name, value in response.headers.items()},
                )
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out: {method} {url}") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request failed: {method} {url} error={e}") from e
