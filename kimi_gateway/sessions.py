from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Coroutine
from typing import Any

from .config import settings
from .credentials import TokenManager, token_manager
from .errors import RequestFailed
from .http_client import build_headers, get_async_client, upstream_url

logger = logging.getLogger("uvicorn.error")

# Strong references for fire-and-forget tasks; asyncio only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task:
    """Run `coro` without awaiting it. Failures are logged, never raised."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("%s failed: %s", label, exc)

    task.add_done_callback(_done)
    return task


def pending_background_tasks() -> set[asyncio.Task]:
    return set(_background_tasks)


async def create_conversation(name: str, refresh_token: str, *, tokens: TokenManager | None = None) -> str:
    tokens = tokens or token_manager
    access = await tokens.acquire(refresh_token)
    client = await get_async_client("kimi")
    resp = await client.post(
        upstream_url("/api/chat"),
        json={"name": name, "is_example": False},
        headers=build_headers(access),
        timeout=settings.metadata_timeout_seconds,
    )
    data = tokens.check_result(resp, refresh_token)
    conv_id = data.get("id") if isinstance(data, dict) else None
    if not isinstance(conv_id, str) or not conv_id:
        raise RequestFailed("Conversation creation returned no id")
    return conv_id


async def remove_conversation(conv_id: str, refresh_token: str, *, tokens: TokenManager | None = None) -> None:
    # The upstream may refuse to delete conversations it flagged for content;
    # callers run this in the background and only log failures.
    tokens = tokens or token_manager
    access = await tokens.acquire(refresh_token)
    client = await get_async_client("kimi")
    resp = await client.delete(
        upstream_url(f"/api/chat/{conv_id}"),
        headers=build_headers(access, referer=upstream_url(f"/chat/{conv_id}")),
        timeout=settings.metadata_timeout_seconds,
    )
    tokens.check_result(resp, refresh_token)


_FAKE_CALLS: list[tuple[str, str, dict[str, Any] | None]] = [
    ("GET", "/api/user", None),
    ("GET", "/api/chat_1m/user/status", None),
    ("POST", "/api/chat/list", {"offset": 0, "size": 50}),
    ("POST", "/api/show_case/list", {"offset": 0, "size": 4, "enable_cache": True, "order": "asc"}),
]


async def fake_request(refresh_token: str, *, tokens: TokenManager | None = None) -> None:
    """Hit one of the endpoints the web client polls on page load."""
    tokens = tokens or token_manager
    access = await tokens.acquire(refresh_token)
    method, path, payload = random.choice(_FAKE_CALLS)
    client = await get_async_client("kimi")
    await client.request(
        method,
        upstream_url(path),
        json=payload,
        headers=build_headers(access),
        timeout=settings.metadata_timeout_seconds,
    )
