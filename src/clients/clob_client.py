"""
Async HTTP client for the Polymarket CLOB auth surface.

Covers the calls the auth pipeline needs: API key derivation/creation,
the balance-allowance probe and an unauthenticated connectivity check.
Responses are returned as ApiResponse whatever the status; only
connection-level failures raise (as TransportError).
"""

import asyncio
import errno
import json
import socket
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from py_clob_client.endpoints import (
    CREATE_API_KEY,
    DERIVE_API_KEY,
    GET_BALANCE_ALLOWANCE,
    GET_MARKETS,
)

from ..auth.errors import TransportError
from ..utils.logger import get_logger

logger = get_logger("clob")

_ERRNO_CODES = {
    errno.ECONNRESET: "ECONNRESET",
    errno.ETIMEDOUT: "ETIMEDOUT",
    errno.ECONNREFUSED: "ECONNREFUSED",
    errno.EHOSTUNREACH: "EHOSTUNREACH",
    errno.ENETUNREACH: "ENETUNREACH",
}


@dataclass
class ApiResponse:
    """Status, parsed body and error text of one exchange call."""
    status: int
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def extract_error_message(data: Any) -> Optional[str]:
    """Pull a human-readable error out of a response body."""
    if data is None:
        return None
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        for field in ("error", "message", "errorMsg", "error_msg"):
            value = data.get(field)
            if value:
                return value if isinstance(value, str) else json.dumps(value)
    return json.dumps(data)


def transport_error_from(exc: BaseException) -> TransportError:
    """Map an aiohttp/asyncio exception to a TransportError with an errno-style code."""
    if isinstance(exc, asyncio.TimeoutError):
        return TransportError("ETIMEDOUT", "request timed out")
    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return TransportError("ECONNRESET", str(exc) or "server disconnected")
    if isinstance(exc, aiohttp.ClientConnectorError):
        os_error = exc.os_error
        if isinstance(os_error, socket.gaierror):
            return TransportError("ENOTFOUND", str(exc))
        code = _ERRNO_CODES.get(getattr(os_error, "errno", None), "ECONNREFUSED")
        return TransportError(code, str(exc))
    if isinstance(exc, aiohttp.ClientOSError):
        code = _ERRNO_CODES.get(exc.errno, "ECONNRESET")
        return TransportError(code, str(exc))
    if isinstance(exc, aiohttp.ClientPayloadError):
        return TransportError("ECONNRESET", str(exc))
    return TransportError("EUNKNOWN", str(exc))


class CLOBClient:
    """
    Minimal async client for CLOB auth endpoints.

    Signing happens in the auth package; this client only sends the
    headers it is given, using the exact path that was signed.
    """

    DEFAULT_HOST = "https://clob.polymarket.com"

    def __init__(self, host: str = DEFAULT_HOST, timeout_seconds: float = 10.0):
        """
        Initialize CLOB client.

        Args:
            host: CLOB base URL
            timeout_seconds: Total timeout per request
        """
        self.host = host.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        logger.info("CLOB client initialized", extra={"host": self.host})

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        headers: Optional[dict] = None,
        timeout_seconds: Optional[float] = None
    ) -> ApiResponse:
        """Send a request to host + path exactly as given."""
        if not self._session:
            await self.initialize()

        url = f"{self.host}{path}"
        timeout = aiohttp.ClientTimeout(total=timeout_seconds or self.timeout_seconds)

        try:
            async with self._session.request(method, url, headers=headers, timeout=timeout) as response:
                text = await response.text()
                try:
                    data = json.loads(text) if text else None
                except ValueError:
                    data = text
                error = None if 200 <= response.status < 300 else extract_error_message(data)
                return ApiResponse(status=response.status, data=data, error=error)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = transport_error_from(e)
            logger.debug(
                f"CLOB transport error: {error.code}",
                extra={"method": method, "path": path, "code": error.code}
            )
            raise error from e

    async def get_markets_status(self, timeout_seconds: Optional[float] = None) -> ApiResponse:
        """Unauthenticated GET /markets, used as a connectivity probe."""
        return await self._request("GET", GET_MARKETS, timeout_seconds=timeout_seconds)

    async def derive_api_key(self, headers: dict) -> ApiResponse:
        """GET /auth/derive-api-key with L1 headers."""
        return await self._request("GET", DERIVE_API_KEY, headers=headers)

    async def create_api_key(self, headers: dict) -> ApiResponse:
        """POST /auth/api-key with L1 headers."""
        return await self._request("POST", CREATE_API_KEY, headers=headers)

    async def get_balance_allowance(self, signed_path: str, headers: dict) -> ApiResponse:
        """GET /balance-allowance; signed_path must carry the signed query."""
        if not signed_path.startswith(GET_BALANCE_ALLOWANCE):
            raise ValueError(f"Not a balance-allowance path: {signed_path}")
        return await self._request("GET", signed_path, headers=headers)

    async def signed_get(self, signed_path: str, headers: dict) -> ApiResponse:
        """GET an arbitrary L2-authenticated path."""
        return await self._request("GET", signed_path, headers=headers)
