from __future__ import annotations

import asyncio
from contextlib import suppress

import httpx

from .config import settings

# Headers sent by a desktop Chrome session on the Kimi web client.
FAKE_HEADERS: dict[str, str] = {
    "Accept": "*/*",
    # httpx only decodes gzip/deflate out of the box.
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Origin": settings.base_url,
    "R-Timezone": "Asia/Shanghai",
    "Sec-Ch-Ua": '"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
}

_clients: dict[str, httpx.AsyncClient] = {}
_clients_lock: asyncio.Lock | None = None


async def get_async_client(name: str = "default") -> httpx.AsyncClient:
    """Return a process-wide client for `name`, creating it on first use."""
    global _clients_lock
    if _clients_lock is None:
        _clients_lock = asyncio.Lock()
    client = _clients.get(name)
    if client is not None and not client.is_closed:
        return client
    async with _clients_lock:
        client = _clients.get(name)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(timeout=None, follow_redirects=True)
            _clients[name] = client
        return client


async def aclose_all() -> None:
    clients = list(_clients.values())
    _clients.clear()
    for client in clients:
        with suppress(Exception):
            await client.aclose()


def upstream_url(path: str) -> str:
    return f"{settings.base_url.rstrip('/')}/{path.lstrip('/')}"


def build_headers(access_token: str, *, referer: str | None = None, extra: dict[str, str] | None = None) -> dict[str, str]:
    headers = dict(FAKE_HEADERS)
    headers["Authorization"] = f"Bearer {access_token}"
    headers["Referer"] = referer or f"{settings.base_url.rstrip('/')}/"
    if extra:
        headers.update(extra)
    return headers
