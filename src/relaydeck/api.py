"""HTTP client for the relay's channel management API."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Sequence
from urllib import error, request

from .categories import Category
from .credentials import CredentialStore
from .errors import ApiError, AuthenticationError
from .logging_utils import get_logger
from .models import Channel, DashboardPayload, PingResult, parse_ping_sweep

log = get_logger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:3000/api"
DEFAULT_TIMEOUT = 10.0


def _send_request(
    method: str,
    url: str,
    body: Optional[bytes],
    headers: dict[str, str],
    timeout: float,
) -> tuple[int, bytes]:
    """Perform a blocking HTTP request and return ``(status, body)``.

    HTTP error statuses are returned rather than raised so that the caller
    can read the error body.
    """

    log.debug("%s %s (timeout=%s)", method, url, timeout)
    req = request.Request(url, data=body, method=method)
    for name, value in headers.items():
        req.add_header(name, value)
    try:
        with request.urlopen(req, timeout=timeout) as response:  # type: ignore[call-arg]
            return response.status, response.read()
    except error.HTTPError as exc:
        try:
            payload = exc.read()
        finally:
            exc.close()
        return exc.code, payload


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf8", errors="replace") if raw else ""
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, str) and body.strip():
        return body.strip()
    return f"Request failed ({status})"


def _dashboard_path(category: Category) -> str:
    if category is Category.GEMINI:
        return "/gemini/channels/dashboard"
    if category is Category.RESPONSES:
        return "/messages/channels/dashboard?type=responses"
    return "/messages/channels/dashboard"


def _load_balance_path(category: Category) -> str:
    if category is Category.MESSAGES:
        return "/loadbalance"
    return f"/{category.value}/loadbalance"


class ApiClient:
    """Async wrapper around the relay REST endpoints.

    Requests run in a worker thread. Every request carries the key held by
    ``credentials``; a 401 answer clears it and raises
    :class:`AuthenticationError`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        credentials: Optional[CredentialStore] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials or CredentialStore(persist=False)
        self.timeout = timeout

    async def request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        api_key = self.credentials.api_key
        if api_key:
            headers["x-api-key"] = api_key
        body = json.dumps(payload).encode("utf8") if payload is not None else None
        try:
            status, raw = await asyncio.to_thread(
                _send_request, method, url, body, headers, self.timeout
            )
        except (error.URLError, OSError) as exc:
            log.error("%s %s failed: %s", method, path, exc)
            raise ApiError(str(getattr(exc, "reason", exc)), 0) from exc

        decoded = _decode_body(raw)
        if status == 401:
            log.warning("Relay rejected the access key (%s %s); clearing stored key", method, path)
            self.credentials.clear()
            raise AuthenticationError("Authentication failed; enter the access key again", status, decoded)
        if not 200 <= status < 300:
            message = _error_message(decoded, status)
            log.error("%s %s returned %s: %s", method, path, status, message)
            raise ApiError(message, status, decoded)
        if status == 204:
            return None
        return decoded

    # -- reads -------------------------------------------------------------

    async def fetch_dashboard(self, category: Category) -> DashboardPayload:
        payload = await self.request("GET", _dashboard_path(category))
        try:
            return DashboardPayload.from_payload(payload)
        except ValueError as exc:
            raise ApiError(f"Malformed dashboard response: {exc}", 200, payload) from exc

    async def ping(self, category: Category, index: int) -> PingResult:
        payload = await self.request("GET", f"/{category.value}/ping/{index}")
        if not isinstance(payload, dict):
            raise ApiError("Malformed ping response", 200, payload)
        return PingResult.from_payload(payload, default_id=index)

    async def ping_all(self, category: Category) -> list[PingResult]:
        payload = await self.request("GET", f"/{category.value}/ping")
        try:
            return parse_ping_sweep(payload)
        except ValueError as exc:
            raise ApiError(f"Malformed ping sweep response: {exc}", 200, payload) from exc

    # -- mutations ---------------------------------------------------------

    async def add_channel(self, category: Category, channel: Channel) -> None:
        await self.request(
            "POST", f"/{category.value}/channels", channel.to_payload(include_runtime=False)
        )

    async def update_channel(self, category: Category, index: int, channel: Channel) -> None:
        await self.request(
            "PUT", f"/{category.value}/channels/{index}", channel.to_payload(include_runtime=False)
        )

    async def delete_channel(self, category: Category, index: int) -> None:
        await self.request("DELETE", f"/{category.value}/channels/{index}")

    async def reorder_channels(self, category: Category, order: Sequence[int]) -> None:
        await self.request("POST", f"/{category.value}/channels/reorder", {"order": list(order)})

    async def set_channel_status(self, category: Category, index: int, status: str) -> None:
        await self.request("PATCH", f"/{category.value}/channels/{index}/status", {"status": status})

    async def set_channel_promotion(self, category: Category, index: int, duration_seconds: int) -> None:
        await self.request(
            "POST",
            f"/{category.value}/channels/{index}/promotion",
            {"duration": duration_seconds},
        )

    async def update_load_balance(self, category: Category, strategy: str) -> None:
        await self.request("PUT", _load_balance_path(category), {"strategy": strategy})


__all__ = ["ApiClient", "DEFAULT_API_BASE_URL", "DEFAULT_TIMEOUT"]
