"""HTTP transport backed by httpx."""

import logging
from typing import Any

import httpx

from ..audit.context import get_audit_context
from ..errors import DeliveryError
from .base import Transport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class HttpTransport(Transport):
    """POSTs JSON records to an API server.

    The bearer token is taken from the session credential of the current
    audit context, so each request is attributed to the acting user.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        ctx = get_audit_context()
        if ctx.session_token is not None:
            headers["Authorization"] = f"Bearer {ctx.session_token.get_value()}"
        return headers

    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise DeliveryError(f"POST {path} failed: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise DeliveryError(
                f"POST {path} rejected with status {response.status_code}",
                {"status": response.status_code},
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            logger.debug("Non-JSON response from %s", path)
            return {}
        return data if isinstance(data, dict) else {"data": data}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
