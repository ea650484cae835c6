"""
Marketplace API Client - Rate-limited HTTP access to the seller catalog.

Every call goes through the shared RateLimiter. Responses feed quota headers
back into the limiter, 401s trigger exactly one token refresh + retry, and
HTTP errors are mapped onto catalogsync.exceptions.

Example:
    >>> async with APIClient(config, limiter, StaticTokenProvider(token)) as client:
    ...     me = await client.get_account_identity()
    ...     page = await client.search_scan(me["id"])
    ...     items = await client.get_multiple(page.ids)
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
import structlog

from ..core.config import ClientConfig
from ..core.rate_limiter import RateLimiter
from ..exceptions import (
    AuthExpiredError,
    CatalogAPIError,
    TransientAPIError,
    error_details,
    raise_for_status,
)
from .auth import TokenProvider


@dataclass
class ScanPage:
    """One page of the scroll-cursor search"""
    ids: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    """Split a sequence into lists of at most ``size`` items"""
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class APIClient:
    """
    Async client for the marketplace REST API.

    Owns an aiohttp.ClientSession unless one is passed in.
    """

    def __init__(
        self,
        config: ClientConfig,
        rate_limiter: RateLimiter,
        token_provider: TokenProvider,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration (base URL, timeout, batch size)
            rate_limiter: Shared limiter gating every request
            token_provider: Source of the bearer token
            session: Existing session to use (caller keeps ownership)
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self.token_provider = token_provider
        self.base_url = config.base_url.rstrip("/")

        self._session = session
        self._owns_session = session is None
        self.auth_refreshes = 0

        self.logger = structlog.get_logger(__name__)

    async def __aenter__(self) -> "APIClient":
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it"""
        if not self._owns_session or self._session is None:
            return
        if not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        """Issue one HTTP call and decode its body (no limiter, no retry)"""
        session = self._get_session()
        token = await self.token_provider.get_current_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}{path}"

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
            ) as response:
                status = response.status
                response_headers = response.headers
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning("http_request_failed", method=method, path=path, error=str(e))
            raise TransientAPIError(f"{method} {path} failed: {e or type(e).__name__}") from e

        payload: Any = None
        if text:
            try:
                payload = json.loads(text)
            except ValueError:
                payload = text

        raise_for_status(status, payload, response_headers)

        self.rate_limiter.on_response_feedback(
            _header_int(response_headers, "X-RateLimit-Remaining"),
            _header_int(response_headers, "X-RateLimit-Reset"),
        )
        return payload

    async def _limited(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        body: Any,
    ) -> Any:
        async def call() -> Any:
            return await self._send(method, path, params, body)

        if self.rate_limiter.is_near_limit():
            self.logger.warning("near_rate_limit_queueing", method=method, path=path)
            return await self.rate_limiter.enqueue(call)
        return await self.rate_limiter.execute(call)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        """
        Rate-limited, authorised API call.

        Args:
            method: HTTP method
            path: Path relative to the base URL (leading slash)
            params: Query string parameters
            body: JSON body

        Returns:
            Decoded JSON payload

        Raises:
            AuthExpiredError: If the token is rejected again after one refresh
            CatalogAPIError: For any other error response
        """
        try:
            return await self._limited(method, path, params, body)
        except AuthExpiredError:
            self.logger.warning("auth_expired_refreshing", method=method, path=path)
            await self.token_provider.refresh()
            self.auth_refreshes += 1
            return await self._limited(method, path, params, body)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def search_scan(
        self,
        account_id: str,
        cursor: Optional[str] = None,
        page_size: int = 50,
    ) -> ScanPage:
        """
        Fetch one page of the seller's catalog in scan mode.

        Args:
            account_id: Seller account id
            cursor: scroll_id from the previous page (None for the first page)
            page_size: Entries per page

        Returns:
            ScanPage; next_cursor None means the remote has no more results
        """
        params: Dict[str, Any] = {"search_type": "scan", "limit": page_size}
        if cursor:
            params["scroll_id"] = cursor

        payload = await self.get(f"/users/{account_id}/items/search", params=params)
        if not isinstance(payload, dict):
            raise CatalogAPIError("Unexpected search response shape", payload=payload)

        ids = [str(i) for i in payload.get("results") or []]
        next_cursor = payload.get("scroll_id") or None

        self.logger.debug(
            "search_page_fetched",
            account_id=account_id,
            ids=len(ids),
            has_cursor=next_cursor is not None,
        )
        return ScanPage(ids=ids, next_cursor=next_cursor)

    async def get_entity(self, entity_id: str) -> Dict[str, Any]:
        """Get full details of one catalog entry"""
        self.logger.debug("get_entity", entity_id=entity_id)
        return await self.get(f"/items/{entity_id}")

    async def get_multiple(
        self,
        ids: Sequence[str],
        attributes: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch many catalog entries through the multi-get endpoint.

        Chunks that fail are logged and skipped. Diff the returned entities
        against ``ids`` to find what is missing.

        Args:
            ids: Entity ids to fetch
            attributes: Restrict returned fields

        Returns:
            Entity bodies that came back with code 200
        """
        if not ids:
            return []

        chunks = chunked(list(ids), self.config.batch_size)
        results: List[Dict[str, Any]] = []

        self.logger.info("multiget_started", requested=len(ids), chunks=len(chunks))

        for index, chunk in enumerate(chunks):
            params: Dict[str, Any] = {"ids": ",".join(chunk)}
            if attributes:
                params["attributes"] = ",".join(attributes)

            try:
                response = await self.get("/items", params=params)
            except CatalogAPIError as e:
                self.logger.error(
                    "multiget_chunk_failed",
                    chunk=index,
                    size=len(chunk),
                    **error_details(e),
                )
            else:
                if isinstance(response, list):
                    for entry in response:
                        if not isinstance(entry, dict):
                            continue
                        code = entry.get("code", entry.get("statusCode"))
                        if code == 200 and entry.get("body") is not None:
                            results.append(entry["body"])

            if len(chunks) > 1 and index < len(chunks) - 1 and self.config.batch_delay > 0:
                await asyncio.sleep(self.config.batch_delay)

        self.logger.info("multiget_complete", fetched=len(results), requested=len(ids))
        return results

    async def get_account_identity(self) -> Dict[str, Any]:
        """Get the seller account behind the current token (/users/me)"""
        self.logger.info("get_account_identity")
        return await self.get("/users/me")

    def get_rate_limit_stats(self) -> Dict[str, Any]:
        return self.rate_limiter.get_stats()

    def is_near_rate_limit(self) -> bool:
        return self.rate_limiter.is_near_limit()

    async def health_check(self) -> Dict[str, Any]:
        """
        Probe the API with an identity call.

        Returns:
            Status dictionary; errors are reported, not raised
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        stats = self.get_rate_limit_stats()
        try:
            identity = await self.get_account_identity()
        except CatalogAPIError as e:
            return {
                "status": "ERROR",
                "rate_limit": stats,
                "timestamp": timestamp,
                **error_details(e),
            }

        return {
            "status": "OK",
            "account_id": identity.get("id") if isinstance(identity, dict) else None,
            "rate_limit": stats,
            "timestamp": timestamp,
        }
