"""
Streaming pass-through for signed file URLs.
"""

from typing import Optional

import httpx
import structlog

from .errors import UpstreamFailureError

logger = structlog.get_logger()


class FileProxy:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def open(self, url: str) -> httpx.Response:
        """Open ``url`` for streaming. The caller must ``aclose()`` the response."""
        client = self._get_client()
        try:
            request = client.build_request("GET", url, timeout=self.timeout)
            response = await client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error("proxy_upstream_failed", url=url, error=str(e) or type(e).__name__)
            raise UpstreamFailureError("failed to fetch") from e

        if response.is_error:
            await response.aclose()
            logger.error("proxy_upstream_failed", url=url, status=response.status_code)
            raise UpstreamFailureError("failed to fetch")
        return response

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
