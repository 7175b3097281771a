from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from fundwatch.infra.settings import Settings, settings as default_settings
from fundwatch.services.errors import ParseError, TransportError

log = logging.getLogger(__name__)


class RawFetcher:
    """
    One outbound GET per call. No retries and no caching; transport failures are
    raised as TransportError and left for the caller to classify.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.config.http_timeout_seconds,
            follow_redirects=True,
        )

    async def __aenter__(self) -> "RawFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, referer: Optional[str]) -> Dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}
        if referer:
            headers["Referer"] = referer
        return headers

    async def _get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        referer: Optional[str] = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.get(url, params=params or None, headers=self._headers(referer))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            log.warning("upstream %s returned HTTP %s", url, status)
            raise TransportError(url, f"HTTP {status}", status_code=status) from exc
        except httpx.RequestError as exc:
            log.warning("upstream %s unreachable: %s", url, exc)
            raise TransportError(url, str(exc) or exc.__class__.__name__) from exc
        return resp

    async def fetch(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        referer: Optional[str] = None,
    ) -> str:
        """Return the raw response body as text."""
        resp = await self._get(url, params=params, referer=referer)
        return resp.text

    async def fetch_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        referer: Optional[str] = None,
    ) -> Any:
        """Return the decoded body of an endpoint that answers with plain JSON."""
        resp = await self._get(url, params=params, referer=referer)
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseError(f"non-JSON body from {url}") from exc
