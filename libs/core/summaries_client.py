from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from libs.core import logging as core_logging
from libs.core.ndjson import NDJSON_MEDIA_TYPE, consume_ndjson_stream

SESSION_EXPIRED_MESSAGE = "Session expired. Please sign in again."

LOGGER = core_logging.get_logger("summaries_client")

TokenRefresher = Callable[[], Awaitable[Optional[str]]]


class SummariesApiError(Exception):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionExpiredError(SummariesApiError):
    pass


class AuthSession:
    """Bearer token holder whose refreshes are shared by concurrent callers."""

    def __init__(self, access_token: Optional[str], refresher: TokenRefresher) -> None:
        self.access_token = access_token
        self._refresher = refresher
        self._inflight: Optional[asyncio.Task[Optional[str]]] = None

    async def refresh(self, stale_token: Optional[str] = None) -> Optional[str]:
        # Another caller already replaced the token this request was sent with.
        if stale_token is not None and self.access_token and self.access_token != stale_token:
            return self.access_token
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_refresh())
        return await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> Optional[str]:
        try:
            token = await self._refresher()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("token_refresh_failed", error_type=exc.__class__.__name__)
            token = None
        finally:
            self._inflight = None
        if token:
            self.access_token = token
        return token


def http_token_refresher(client: httpx.AsyncClient, url: str) -> TokenRefresher:
    async def _refresh() -> Optional[str]:
        response = await client.post(url, json={})
        if response.status_code != 200:
            return None
        token = _json_or_none(response)
        if isinstance(token, dict) and isinstance(token.get("accessToken"), str):
            return token["accessToken"]
        return None

    return _refresh


class SummariesClient:
    def __init__(
        self,
        base_url: str,
        session: AuthSession,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 120.0,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.session = session
        self.timeout_s = timeout_s
        self._client = client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            yield client

    async def stream_summary(
        self, body: Dict[str, Any], on_partial: Callable[[Dict[str, Any]], None]
    ) -> Dict[str, Any]:
        return await self._generate("/api/v1/summaries/stream", body, on_partial)

    async def stream_comparison(
        self,
        listing_ids: List[str],
        on_partial: Callable[[Dict[str, Any]], None],
        force_regenerate: bool = False,
    ) -> Dict[str, Any]:
        body = {"listingIds": list(listing_ids), "forceRegenerate": force_regenerate}
        return await self._generate("/api/v1/summaries/compare/stream", body, on_partial)

    async def create_summary(self, body: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request_data("POST", "/api/v1/summaries", body)
        if not isinstance(data, dict):
            raise SummariesApiError("Failed to create summary")
        return data

    async def compare(self, listing_ids: List[str], force_regenerate: bool = False) -> Dict[str, Any]:
        body = {"listingIds": list(listing_ids), "forceRegenerate": force_regenerate}
        data = await self._request_data("POST", "/api/v1/summaries/compare", body)
        if not isinstance(data, dict):
            raise SummariesApiError("Failed to create comparison")
        return data

    async def get_summary_for_listing(self, listing_id: str) -> Optional[Dict[str, Any]]:
        data = await self._request_data("GET", f"/api/v1/summaries/listing/{listing_id}", None)
        return data if isinstance(data, dict) else None

    async def _generate(
        self,
        path: str,
        body: Dict[str, Any],
        on_partial: Callable[[Dict[str, Any]], None],
    ) -> Dict[str, Any]:
        async with self._http() as client:
            response = await self._send(client, "POST", path, body)
            try:
                if response.status_code >= 400:
                    await response.aread()
                    raise _api_error(response)
                content_type = response.headers.get("content-type", "").lower()
                if content_type.startswith(NDJSON_MEDIA_TYPE):
                    return await consume_ndjson_stream(response.aiter_bytes(), on_partial)
                if content_type.startswith("application/json"):
                    await response.aread()
                    data = _envelope_data(response)
                    if not isinstance(data, dict):
                        raise SummariesApiError("Response did not include a result", response.status_code)
                    on_partial(data)
                    return data
                raise SummariesApiError(
                    f"Unexpected response type: {content_type or 'unknown'}", response.status_code
                )
            finally:
                await response.aclose()

    async def _request_data(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Any:
        async with self._http() as client:
            response = await self._send(client, method, path, body)
            try:
                await response.aread()
                if response.status_code >= 400:
                    raise _api_error(response)
                return _envelope_data(response)
            finally:
                await response.aclose()

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        token = self.session.access_token
        response = await client.send(self._build(client, method, path, body, token), stream=True)
        if response.status_code != 401:
            return response
        await response.aclose()
        new_token = await self.session.refresh(stale_token=token)
        if not new_token:
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE, 401)
        retry = await client.send(self._build(client, method, path, body, new_token), stream=True)
        if retry.status_code == 401:
            await retry.aclose()
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE, 401)
        return retry

    def _build(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        token: Optional[str],
    ) -> httpx.Request:
        headers = {"Accept": f"{NDJSON_MEDIA_TYPE}, application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return client.build_request(
            method,
            f"{self.base_url}{path}",
            json=body,
            headers=headers,
            timeout=self.timeout_s,
        )


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _envelope_data(response: httpx.Response) -> Any:
    payload = _json_or_none(response)
    if not isinstance(payload, dict):
        raise SummariesApiError("Invalid JSON response", response.status_code)
    if payload.get("success") is False:
        raise SummariesApiError(str(payload.get("message") or "Request failed"), response.status_code)
    return payload.get("data")


def _api_error(response: httpx.Response) -> SummariesApiError:
    payload = _json_or_none(response)
    message = None
    if isinstance(payload, dict):
        message = payload.get("message")
    return SummariesApiError(
        str(message or f"Request failed ({response.status_code})"), response.status_code
    )
