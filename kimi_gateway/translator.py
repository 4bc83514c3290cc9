from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Literal

from .errors import StreamMalformed

logger = logging.getLogger("uvicorn.error")

APOLOGY_TEXT = "\n[Generation was stopped because the content is not compliant, let's change the topic]"
SEARCH_RESULTS_HEADER = "\n\nSearch results from:\n"
SILENT_SEARCH_MARKER = "silent_search"
REPLACEMENT_CHAR = "\ufffd"
DONE_FRAME = "data: [DONE]\n\n"
USAGE = {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}

EventKind = Literal["text", "search", "done", "error", "ignored"]


@dataclass(frozen=True)
class UpstreamEvent:
    kind: EventKind
    text: str = ""
    title: str = ""
    url: str = ""

    @property
    def terminal(self) -> bool:
        return self.kind in ("done", "error")


_IGNORED = UpstreamEvent("ignored")


def truncate_at_replacement(text: str) -> str:
    """
    Cut `text` at the first U+FFFD.

    A replacement character means the upstream split a multi-byte character
    inside its own payload; the rest of that delta is dropped, not repaired.
    """
    idx = text.find(REPLACEMENT_CHAR)
    return text if idx == -1 else text[:idx]


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[tuple[str | None, str]]:
    """
    Frame decoded SSE lines into `(event, data)` pairs.

    Takes `httpx.Response.aiter_lines()`, which already handles multi-byte
    characters and CRLF pairs split across network chunks. Events with empty
    data are not dispatched.
    """
    event: str | None = None
    data_lines: list[str] = []
    async for line in lines:
        if line.startswith(":"):
            continue
        if not line.strip():
            data = "\n".join(data_lines)
            if data:
                yield event, data
            event = None
            data_lines = []
            continue
        if line.startswith("event:"):
            event = line[len("event:") :].strip() or None
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:") :].lstrip())
            continue
    data = "\n".join(data_lines)
    if data:
        yield event, data


def parse_upstream_event(data: str) -> UpstreamEvent:
    try:
        obj = json.loads(data)
    except ValueError as e:
        raise StreamMalformed(f"Stream response invalid: {data}") from e
    if not isinstance(obj, dict):
        return _IGNORED

    name = obj.get("event")
    if name == "cmpl":
        text = obj.get("text")
        if isinstance(text, str) and text:
            return UpstreamEvent("text", text=truncate_at_replacement(text))
        return _IGNORED
    if name == "search_plus":
        msg = obj.get("msg")
        if isinstance(msg, dict) and msg.get("type") == "get_res":
            return UpstreamEvent("search", title=str(msg.get("title") or ""), url=str(msg.get("url") or ""))
        return _IGNORED
    if name == "all_done":
        return UpstreamEvent("done")
    if name == "error":
        return UpstreamEvent("error")
    return _IGNORED


def is_silent_search(model: str) -> bool:
    return SILENT_SEARCH_MARKER in (model or "")


async def receive_stream(model: str, conv_id: str, lines: AsyncIterable[str]) -> dict[str, Any]:
    """
    Collect the whole upstream stream into one `chat.completion` object.

    Returns whatever was accumulated if the stream closes without a terminal
    event. Transport errors and malformed payloads propagate.
    """
    created = int(time.time())
    silent = is_silent_search(model)
    parts: list[str] = []
    refs: list[str] = []

    async with aclosing(iter_sse_events(lines)) as events:
        async for _, data in events:
            event = parse_upstream_event(data)
            if event.kind == "text":
                parts.append(event.text)
            elif event.kind == "search":
                if not silent:
                    refs.append(f"{event.title}({event.url})\n")
            elif event.terminal:
                if event.kind == "error":
                    parts.append(APOLOGY_TEXT)
                if refs:
                    parts.append(SEARCH_RESULTS_HEADER + "".join(refs))
                break

    return {
        "id": conv_id,
        "model": model,
        "object": "chat.completion",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": "".join(parts)}, "finish_reason": "stop"}
        ],
        "usage": dict(USAGE),
        "created": created,
    }


def _chunk(
    conv_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    *,
    finish_reason: str | None = None,
    usage: dict[str, int] | None = None,
) -> str:
    obj: dict[str, Any] = {
        "id": conv_id,
        "model": model,
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        "created": created,
    }
    if usage is not None:
        obj["usage"] = usage
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"


async def create_trans_stream(
    model: str,
    conv_id: str,
    lines: AsyncIterable[str],
    *,
    on_end: Callable[[], None] | None = None,
) -> AsyncGenerator[str, None]:
    """
    Re-emit the upstream stream as OpenAI `chat.completion.chunk` SSE frames.

    Never raises into the consumer once started. Malformed payloads and
    transport errors end the stream with `[DONE]` like a normal close.
    `on_end` runs exactly once when the generator finishes or is closed.
    """
    created = int(time.time())
    silent = is_silent_search(model)
    search_flag = False
    try:
        yield _chunk(conv_id, model, created, {"role": "assistant", "content": ""})
        try:
            async with aclosing(iter_sse_events(lines)) as events:
                async for _, data in events:
                    event = parse_upstream_event(data)
                    if event.kind == "text":
                        content = ("\n" if search_flag else "") + event.text
                        search_flag = False
                        yield _chunk(conv_id, model, created, {"content": content})
                    elif event.kind == "search":
                        if silent:
                            continue
                        search_flag = True
                        line = f"Searching {event.title}({event.url}) ...\n"
                        yield _chunk(conv_id, model, created, {"content": line})
                    elif event.terminal:
                        delta = {"content": APOLOGY_TEXT} if event.kind == "error" else {}
                        yield _chunk(conv_id, model, created, delta, finish_reason="stop", usage=dict(USAGE))
                        break
        except StreamMalformed as e:
            logger.error("[%s] %s", conv_id, e)
        except Exception as e:
            logger.error("[%s] stream transport error: %s", conv_id, e)
        yield DONE_FRAME
    finally:
        if on_end is not None:
            on_end()
