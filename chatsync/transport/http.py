"""Async REST client for the chat resource server.

Wraps a single ``httpx.AsyncClient`` so that every component shares one
connection pool and one cookie jar. The session cookie set by
``POST /auth/login`` is the only credential the client carries: no bearer
header is ever attached.

Errors are translated into the chatsync taxonomy:

    404                -> NotFound
    other 4xx          -> ValidationFailure
    5xx / network      -> RemoteFailure

The server's ``message`` field is surfaced as the error text when present.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import ApiSettings
from ..errors import NotFound, RemoteFailure, SyncError, ValidationFailure

logger = logging.getLogger(__name__)


def _extract_message(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("detail")
        if isinstance(message, str):
            return message
    return None


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiClient:
    """Thin async facade over ``httpx.AsyncClient``.

    Args:
        settings: API section of the client settings.
        transport: Optional httpx transport (tests pass an ASGI transport
            bound to a fake server).
    """

    def __init__(
        self,
        settings: Optional[ApiSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ApiSettings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
            verify=self.settings.verify_tls,
            transport=transport,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Perform one request and return the decoded body.

        Raises:
            SyncError: Mapped from the HTTP status or transport error.
        """
        try:
            response = await self._client.request(
                method, path, params=params, json=json, data=data, files=files
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self._map_status_error(e.response) from e
        except httpx.RequestError as e:
            logger.warning("[Api] %s %s failed: %s", method, path, e)
            raise RemoteFailure(f"Network error: {e}") from e

        logger.debug("[Api] %s %s -> %s", method, path, response.status_code)
        return _decode(response)

    @staticmethod
    def _map_status_error(response: httpx.Response) -> SyncError:
        payload = _decode(response)
        message = _extract_message(payload)
        status = response.status_code
        logger.warning(
            "[Api] %s %s -> %s %s",
            response.request.method,
            response.request.url.path,
            status,
            message or "",
        )
        if status == 404:
            return NotFound(message, status_code=status, payload=payload)
        if 400 <= status < 500:
            return ValidationFailure(message, status_code=status, payload=payload)
        return RemoteFailure(message or f"Server error ({status})", status_code=status, payload=payload)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(
        self,
        path: str,
        json: Any = None,
        *,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await self.request("POST", path, json=json, data=data, files=files)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
