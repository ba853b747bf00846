# src/infrastructure/provider_client.py
from typing import Any, Dict, Optional

import httpx
import structlog

from src.errors import ProviderRequestError

logger = structlog.get_logger(__name__)


class ProviderClient:
    """
    Thin JSON client for provider APIs.

    Every call carries a bounded timeout; non-2xx answers, transport failures and timeouts
    all surface as ProviderRequestError so callers can degrade on a single exception type.
    Nothing is retried here.
    """

    def __init__(self, platform: str, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.platform = platform
        self.timeout = timeout
        self.transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.request(method, url, headers=headers, params=params, data=data, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("provider_request_timeout", platform=self.platform, url=_strip_query(url))
            raise ProviderRequestError(self.platform, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("provider_request_transport_error", platform=self.platform, url=_strip_query(url), error=str(exc))
            raise ProviderRequestError(self.platform, f"transport error: {exc}") from exc

        if r.status_code >= 400:
            raise ProviderRequestError(
                self.platform,
                f"{method} {_strip_query(url)} answered {r.status_code}",
                status_code=r.status_code,
                body=r.text[:500],
            )
        if not r.content:
            return {}
        try:
            body = r.json()
        except ValueError as exc:
            raise ProviderRequestError(self.platform, "response is not JSON", status_code=r.status_code) from exc
        return body if isinstance(body, dict) else {"data": body}

    async def get(self, url, headers=None, params=None) -> Dict[str, Any]:
        return await self.request("GET", url, headers=headers, params=params)

    async def post(self, url, headers=None, params=None, data=None, json=None) -> Dict[str, Any]:
        return await self.request("POST", url, headers=headers, params=params, data=data, json=json)


def _strip_query(url: str) -> str:
    # query strings can carry access tokens (Graph API); keep them out of logs
    return url.split("?", 1)[0]
