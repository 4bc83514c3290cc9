from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

import httpx

from .attachments import upload_file
from .config import settings
from .credentials import TokenManager, token_manager
from .errors import RequestFailed
from .http_client import build_headers, get_async_client, upstream_url
from .messages import extract_ref_file_urls, prepare_messages
from .openai_compat import ChatMessage
from .sessions import create_conversation, fake_request, remove_conversation, spawn_background
from .translator import create_trans_stream, receive_stream

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


async def with_retries(
    op: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_retry_count: int | None = None,
    retry_delay: float | None = None,
) -> T:
    """Run `op` up to `max_retry_count + 1` times, sleeping a fixed delay between attempts."""
    max_retry = settings.max_retry_count if max_retry_count is None else max_retry_count
    delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
    attempt = 0
    while True:
        try:
            return await op()
        except Exception as e:
            if attempt >= max_retry:
                raise
            attempt += 1
            logger.error("%s error: %s", label, e)
            logger.warning("Try again after %.1fs (attempt %d/%d)...", delay, attempt + 1, max_retry + 1)
            await asyncio.sleep(delay)


def _schedule_removal(conv_id: str, refresh_token: str, tokens: TokenManager) -> None:
    spawn_background(
        remove_conversation(conv_id, refresh_token, tokens=tokens),
        label=f"[{conv_id}] remove conversation",
    )


async def _check_stream_response(resp: httpx.Response, refresh_token: str, tokens: TokenManager) -> None:
    content_type = resp.headers.get("content-type", "")
    if resp.is_success and "application/json" not in content_type:
        return
    await resp.aread()
    tokens.check_result(resp, refresh_token)
    raise RequestFailed(f"Unexpected completion response: [{resp.status_code}] {resp.text[:200]}")


async def _open_completion(
    *,
    messages: list[ChatMessage],
    refresh_token: str,
    use_search: bool,
    tokens: TokenManager,
) -> tuple[str, httpx.Response]:
    urls = extract_ref_file_urls(messages)
    refs: list[str] = []
    if urls:
        refs = list(await asyncio.gather(*(upload_file(u, refresh_token, tokens=tokens) for u in urls)))

    if settings.fake_requests:
        spawn_background(fake_request(refresh_token, tokens=tokens), label="fake request")

    conv_id = await create_conversation(f"cmpl-{uuid.uuid4().hex}", refresh_token, tokens=tokens)
    try:
        access = await tokens.acquire(refresh_token)
        client = await get_async_client("kimi-stream")
        request = client.build_request(
            "POST",
            upstream_url(f"/api/chat/{conv_id}/completion/stream"),
            json={"messages": prepare_messages(messages), "refs": refs, "use_search": use_search},
            headers=build_headers(access, referer=upstream_url(f"/chat/{conv_id}")),
            timeout=settings.stream_timeout_seconds,
        )
        resp = await client.send(request, stream=True)
        try:
            await _check_stream_response(resp, refresh_token, tokens)
        except BaseException:
            await resp.aclose()
            raise
    except Exception:
        _schedule_removal(conv_id, refresh_token, tokens)
        raise
    return conv_id, resp


async def create_completion(
    model: str | None,
    messages: list[ChatMessage],
    refresh_token: str,
    *,
    use_search: bool = True,
    tokens: TokenManager | None = None,
    max_retry_count: int | None = None,
    retry_delay: float | None = None,
) -> dict[str, Any]:
    tokens = tokens or token_manager
    model = model or settings.default_model

    async def _attempt() -> dict[str, Any]:
        conv_id, resp = await _open_completion(
            messages=messages, refresh_token=refresh_token, use_search=use_search, tokens=tokens
        )
        started = time.time()
        try:
            answer = await receive_stream(model, conv_id, resp.aiter_lines())
        finally:
            await resp.aclose()
            _schedule_removal(conv_id, refresh_token, tokens)
        logger.info("[%s] Stream has completed transfer %dms", conv_id, int((time.time() - started) * 1000))
        return answer

    return await with_retries(
        _attempt, label="Stream response", max_retry_count=max_retry_count, retry_delay=retry_delay
    )


class CompletionStream:
    """
    SSE frames for one opened upstream stream.

    `aclose` releases the upstream response and schedules conversation removal
    even when no frame was ever requested. Release happens once.
    """

    def __init__(
        self,
        conv_id: str,
        resp: httpx.Response,
        frames: AsyncGenerator[str, None],
        on_release: Callable[[], None],
    ) -> None:
        self.conv_id = conv_id
        self._resp = resp
        self._frames = frames
        self._on_release = on_release
        self._closed = False

    def __aiter__(self) -> CompletionStream:
        return self

    async def __anext__(self) -> str:
        try:
            return await self._frames.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._frames.aclose()
        finally:
            await self._resp.aclose()
            self._on_release()


async def create_completion_stream(
    model: str | None,
    messages: list[ChatMessage],
    refresh_token: str,
    *,
    use_search: bool = True,
    tokens: TokenManager | None = None,
    max_retry_count: int | None = None,
    retry_delay: float | None = None,
) -> CompletionStream:
    """
    Open the upstream stream (with retries) and return its SSE frames.

    Retries only cover the work before the first byte; once frames flow the
    translator owns error handling. Callers must `aclose()` the result.
    """
    tokens = tokens or token_manager
    model = model or settings.default_model

    async def _attempt() -> tuple[str, httpx.Response]:
        return await _open_completion(
            messages=messages, refresh_token=refresh_token, use_search=use_search, tokens=tokens
        )

    conv_id, resp = await with_retries(
        _attempt, label="Stream response", max_retry_count=max_retry_count, retry_delay=retry_delay
    )
    started = time.time()
    released = False

    def _release() -> None:
        nonlocal released
        if released:
            return
        released = True
        logger.info("[%s] Stream has completed transfer %dms", conv_id, int((time.time() - started) * 1000))
        _schedule_removal(conv_id, refresh_token, tokens)

    frames = create_trans_stream(model, conv_id, resp.aiter_lines(), on_end=_release)
    return CompletionStream(conv_id, resp, frames, _release)
