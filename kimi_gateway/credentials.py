from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from .config import settings
from .errors import AuthInvalid, RequestFailed, StreamBusy
from .http_client import build_headers, get_async_client, upstream_url

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    refresh_token: str
    refresh_at: int


Refresher = Callable[[str], Awaitable[AccessToken]]


def mask_token(token: str) -> str:
    if len(token) <= 12:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


def _is_expired(refresh_at: int) -> bool:
    return int(time.time()) > refresh_at


class TokenManager:
    """
    Process-wide access token cache keyed by refresh token.

    Refreshes are single-flight per refresh token: while one refresh is in
    flight, later callers queue a future and receive the same outcome. The
    check-then-register step in `request_token` contains no await, so the
    event loop cannot interleave two callers between the lookup and the
    registration.
    """

    def __init__(self, *, refresher: Refresher | None = None, ttl_seconds: int | None = None) -> None:
        self._cache: dict[str, AccessToken] = {}
        self._pending: dict[str, list[asyncio.Future[AccessToken]]] = {}
        self._refresher: Refresher = refresher or self._refresh_access_token
        self._ttl_seconds = settings.access_token_ttl_seconds if ttl_seconds is None else ttl_seconds

    def cached(self, refresh_token: str) -> AccessToken | None:
        return self._cache.get(refresh_token)

    def is_refreshing(self, refresh_token: str) -> bool:
        return refresh_token in self._pending

    def evict(self, refresh_token: str) -> None:
        if self._cache.pop(refresh_token, None) is not None:
            logger.info("Evicted access token for %s", mask_token(refresh_token))

    async def acquire(self, refresh_token: str) -> str:
        token = self._cache.get(refresh_token)
        if token is None or _is_expired(token.refresh_at):
            token = await self.request_token(refresh_token)
            self._cache[refresh_token] = token
        return token.access_token

    async def request_token(self, refresh_token: str) -> AccessToken:
        waiters = self._pending.get(refresh_token)
        if waiters is not None:
            fut: asyncio.Future[AccessToken] = asyncio.get_running_loop().create_future()
            waiters.append(fut)
            return await fut

        self._pending[refresh_token] = []
        logger.info("Refresh token: %s", mask_token(refresh_token))
        try:
            token = await self._refresher(refresh_token)
        except Exception as e:
            self._settle(refresh_token, error=e)
            raise
        except BaseException:
            self._settle(refresh_token, error=RequestFailed("Token refresh was interrupted"))
            raise
        self._settle(refresh_token, result=token)
        logger.info("Refresh successful for %s", mask_token(refresh_token))
        return token

    def _settle(
        self,
        refresh_token: str,
        *,
        result: AccessToken | None = None,
        error: BaseException | None = None,
    ) -> None:
        waiters = self._pending.pop(refresh_token, [])
        for fut in waiters:
            if fut.done():
                continue
            if error is not None:
                fut.set_exception(error)
            else:
                fut.set_result(result)  # type: ignore[arg-type]

    async def _refresh_access_token(self, refresh_token: str) -> AccessToken:
        client = await get_async_client("kimi")
        resp = await client.get(
            upstream_url("/api/auth/token/refresh"),
            headers=build_headers(refresh_token),
            timeout=settings.metadata_timeout_seconds,
        )
        data = self.check_result(resp, refresh_token)
        access = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(access, str) or not access:
            raise RequestFailed("Token refresh returned no access_token")
        new_refresh = data.get("refresh_token")
        return AccessToken(
            access_token=access,
            refresh_token=new_refresh if isinstance(new_refresh, str) and new_refresh else refresh_token,
            refresh_at=int(time.time()) + self._ttl_seconds,
        )

    def check_result(self, resp: httpx.Response, refresh_token: str) -> Any:
        """
        Validate an upstream response that has already been read.

        Returns the decoded body (None when empty). Raises on a 401 or on a
        body that carries `error_type`; auth failures evict the cached token so
        the next `acquire` refreshes.
        """
        if resp.status_code == 401:
            self.evict(refresh_token)
            raise AuthInvalid()
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        if not isinstance(data, dict):
            return data
        error_type = data.get("error_type")
        if not isinstance(error_type, str):
            return data
        message = data.get("message")
        if error_type == "auth.token.invalid":
            self.evict(refresh_token)
        if error_type == "chat.user_stream_pushing":
            raise StreamBusy()
        raise RequestFailed(f"[Kimi request failed]: {message}")


token_manager = TokenManager()
