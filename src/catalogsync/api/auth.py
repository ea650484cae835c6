"""
Bearer token providers.

Token acquisition and OAuth refresh live outside this package; the client
only needs something that hands out the current token and can be asked to
refresh it once after a 401.
"""

from typing import Awaitable, Callable, Protocol

import structlog

from ..exceptions import AuthExpiredError


logger = structlog.get_logger(__name__)


class TokenProvider(Protocol):
    async def get_current_token(self) -> str: ...

    async def refresh(self) -> str: ...


class StaticTokenProvider:
    """Fixed token from configuration; cannot refresh"""

    def __init__(self, token: str):
        if not token:
            raise ValueError("token must not be empty")
        self._token = token

    async def get_current_token(self) -> str:
        return self._token

    async def refresh(self) -> str:
        logger.warning("token_refresh_unavailable", provider="static")
        raise AuthExpiredError("Static access token was rejected and cannot be refreshed")


class CallbackTokenProvider:
    """
    Adapts host-supplied coroutines (e.g. a token manager backed by a DB).

    Args:
        get_token: Returns the current bearer token
        refresh_token: Refreshes and returns the new bearer token
    """

    def __init__(
        self,
        get_token: Callable[[], Awaitable[str]],
        refresh_token: Callable[[], Awaitable[str]],
    ):
        self._get_token = get_token
        self._refresh_token = refresh_token

    async def get_current_token(self) -> str:
        return await self._get_token()

    async def refresh(self) -> str:
        try:
            token = await self._refresh_token()
        except AuthExpiredError:
            raise
        except Exception as e:
            logger.error("token_refresh_failed", error=str(e))
            raise AuthExpiredError(f"Token refresh failed: {e}") from e

        if not token:
            raise AuthExpiredError("Token refresh returned an empty token")

        logger.info("token_refreshed")
        return token
