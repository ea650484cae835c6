"""
Shared test doubles.

FakeMarketplace + FakeSession stand in for the remote API behind a real
APIClient; FakeSearchClient scripts search pages directly for scanner tests.
"""

import asyncio
import json
from collections import deque
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urlparse

import pytest

from catalogsync.api import ScanPage
from catalogsync.core.config import RateLimitConfig, ScanConfig


class FakeClock:
    """Controllable clock whose sleep advances time instead of waiting"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeResponse:
    def __init__(self, status: int, payload: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.headers = headers or {}
        if payload is None:
            self._text = ""
        elif isinstance(payload, str):
            self._text = payload
        else:
            self._text = json.dumps(payload)

    async def text(self) -> str:
        return self._text


class _RequestContext:
    def __init__(self, produce: Callable[[], FakeResponse]):
        self._produce = produce

    async def __aenter__(self) -> FakeResponse:
        await asyncio.sleep(0)
        return self._produce()

    async def __aexit__(self, exc_type, exc, tb):
        return False


Handler = Callable[[str, str, Dict[str, Any], Dict[str, str]], Tuple[int, Any, Dict[str, str]]]


class FakeSession:
    """Minimal aiohttp.ClientSession replacement driven by a handler"""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, params=None, json=None, headers=None):
        path = urlparse(url).path
        record = {
            "method": method,
            "path": path,
            "params": dict(params or {}),
            "headers": dict(headers or {}),
        }
        self.requests.append(record)

        def produce() -> FakeResponse:
            status, payload, response_headers = self.handler(
                method, path, record["params"], record["headers"]
            )
            return FakeResponse(status, payload, response_headers)

        return _RequestContext(produce)

    async def close(self):
        self.closed = True


def scripted_handler(responses: Iterable[Any]) -> Handler:
    """Handler returning (status, payload, headers) tuples in order, or raising exceptions"""
    queue = deque(responses)

    def handler(method, path, params, headers):
        item = queue.popleft()
        if isinstance(item, BaseException):
            raise item
        if len(item) == 2:
            return item[0], item[1], {}
        return item

    return handler


class FakeMarketplace:
    """
    In-memory marketplace: scroll-cursor search, multi-get and /users/me.

    Cursor "cN" points at page index N.
    """

    def __init__(self, pages: List[List[str]], account_id: str = "123"):
        self.pages = pages
        self.account_id = account_id
        self.expire_cursors: Set[str] = set()
        self.failing_item_calls: Set[int] = set()
        self.missing_items: Set[str] = set()
        self.valid_tokens: Optional[Set[str]] = None
        self.search_calls: List[Optional[str]] = []
        self.item_calls = 0

    def handle(self, method, path, params, headers):
        if self.valid_tokens is not None:
            token = headers.get("Authorization", "").replace("Bearer ", "")
            if token not in self.valid_tokens:
                return 401, {"message": "invalid access token"}, {}

        if path == "/users/me":
            return 200, {"id": int(self.account_id), "nickname": "SELLER"}, {}

        if path == f"/users/{self.account_id}/items/search":
            return self._search(params)

        if path == "/items":
            return self._items(params)

        return 404, {"message": "not found"}, {}

    def _search(self, params):
        cursor = params.get("scroll_id")
        self.search_calls.append(cursor)

        if cursor in self.expire_cursors:
            self.expire_cursors.discard(cursor)
            return 400, {"message": "scroll_id expired", "error": "bad_request"}, {}

        index = int(cursor[1:]) if cursor else 0
        if index >= len(self.pages):
            return 200, {"results": [], "scroll_id": None}, {}

        next_index = index + 1
        next_cursor = f"c{next_index}" if next_index < len(self.pages) else None
        return 200, {"results": list(self.pages[index]), "scroll_id": next_cursor}, {}

    def _items(self, params):
        call = self.item_calls
        self.item_calls += 1
        if call in self.failing_item_calls:
            return 500, {"message": "internal error"}, {}

        body = []
        for entity_id in params["ids"].split(","):
            if entity_id in self.missing_items:
                body.append({"code": 404, "body": {"message": "not found"}})
            else:
                body.append({"code": 200, "body": {"id": entity_id, "title": f"Item {entity_id}"}})
        return 200, body, {}


class FakeSearchClient:
    """Duck-typed APIClient exposing only search_scan, scripted per call"""

    def __init__(self, responses: Iterable[Any], rate_limiter=None):
        self.responses = deque(responses)
        self.cursors: List[Optional[str]] = []
        self.rate_limiter = rate_limiter

    async def search_scan(self, account_id, cursor=None, page_size=50):
        self.cursors.append(cursor)
        await asyncio.sleep(0)
        item = self.responses.popleft()
        if isinstance(item, BaseException):
            raise item
        return item


class PagedSearchClient:
    """search_scan over a fixed page list; cursor "cN" points at page N"""

    def __init__(self, pages: List[List[str]], rate_limiter=None):
        self.pages = pages
        self.cursors: List[Optional[str]] = []
        self.rate_limiter = rate_limiter

    async def search_scan(self, account_id, cursor=None, page_size=50):
        self.cursors.append(cursor)
        await asyncio.sleep(0)
        index = int(cursor[1:]) if cursor else 0
        if index >= len(self.pages):
            return ScanPage(ids=[], next_cursor=None)
        next_cursor = f"c{index + 1}" if index + 1 < len(self.pages) else None
        return ScanPage(ids=list(self.pages[index]), next_cursor=next_cursor)


def page(ids: List[str], cursor: Optional[str] = None) -> ScanPage:
    return ScanPage(ids=list(ids), next_cursor=cursor)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fast_scan_config():
    return ScanConfig(
        page_size=2,
        page_budget=20,
        page_delay=0,
        near_limit_page_delay=0,
        min_seconds_per_page=0,
    )


@pytest.fixture
def fast_rate_config():
    return RateLimitConfig(
        queue_item_delay=0,
        default_retry_after=0,
        recovery_delay=300,
    )
