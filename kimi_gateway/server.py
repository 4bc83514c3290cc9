from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from .completions import create_completion, create_completion_stream
from .config import settings
from .errors import GatewayError
from .http_client import aclose_all as _aclose_http_clients
from .openai_compat import ChatCompletionRequest, ErrorResponse, normalize_message_content

app = FastAPI(title="kimi-gateway", version="0.1.0")
logger = logging.getLogger("uvicorn.error")

if settings.cors_origins.strip():
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )


_active_requests = 0
_token_cursor = itertools.count()


def split_tokens(authorization: str | None) -> list[str]:
    """`Bearer tok1,tok2` -> ["tok1", "tok2"]."""
    if not authorization:
        return []
    raw = authorization.strip()
    scheme, _, rest = raw.partition(" ")
    if scheme.lower() == "bearer":
        raw = rest
    return [t.strip() for t in raw.split(",") if t.strip()]


def pick_token(tokens: list[str]) -> str:
    return tokens[next(_token_cursor) % len(tokens)]


def _require_tokens(authorization: str | None) -> list[str]:
    tokens = split_tokens(authorization)
    if not tokens:
        raise HTTPException(status_code=401, detail="Missing Authorization: Bearer <refresh_token>[,<refresh_token>...]")
    return tokens


def _openai_error(message: str, *, status_code: int = 500, code: int | None = None) -> JSONResponse:
    payload = ErrorResponse(
        error={
            "message": message,
            "type": "kimi_gateway_error",
            "param": None,
            "code": code,
        }
    ).model_dump()
    return JSONResponse(status_code=status_code, content=payload)


def _truncate_for_log(text: str) -> str:
    limit = settings.log_max_chars
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated, {len(text)} chars total)"


def _short_id(resp_id: str) -> str:
    return resp_id[:8]


# ─────────────────────────────────────────────────────────────────────────────
# Request Statistics Tracking
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class RequestStats:
    """Track request statistics for periodic reporting."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_duration_ms: int = 0
    last_report_time: float = field(default_factory=time.time)

    def record_success(self, duration_ms: int) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.total_duration_ms += duration_ms

    def record_failure(self) -> None:
        self.total_requests += 1
        self.failed_requests += 1

    def avg_duration_ms(self) -> float:
        if self.successful_requests == 0:
            return 0
        return self.total_duration_ms / self.successful_requests

    def reset(self) -> "RequestStats":
        """Return current stats and reset counters."""
        snapshot = RequestStats(
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            total_duration_ms=self.total_duration_ms,
            last_report_time=self.last_report_time,
        )
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.total_duration_ms = 0
        self.last_report_time = time.time()
        return snapshot


_request_stats = RequestStats()
_RICH_CONSOLE: Console | None = None


def _console() -> Console:
    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        # stderr matches uvicorn's default logging stream.
        _RICH_CONSOLE = Console(stderr=True)
    return _RICH_CONSOLE


def _maybe_print_stats() -> None:
    """Print stats summary if interval has passed."""
    elapsed = time.time() - _request_stats.last_report_time
    if elapsed < settings.stats_interval_seconds or _request_stats.total_requests == 0:
        return
    stats = _request_stats.reset()

    if not settings.log_rich:
        logger.info(
            "📊 Stats (last %ds): requests=%d success=%d failed=%d avg_ms=%.0f",
            int(elapsed), stats.total_requests, stats.successful_requests,
            stats.failed_requests, stats.avg_duration_ms(),
        )
        return

    table = Table(title=f"📊 Stats Summary (last {int(elapsed)}s)", border_style="dim")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Total Requests", str(stats.total_requests))
    table.add_row("✅ Successful", str(stats.successful_requests))
    table.add_row("❌ Failed", str(stats.failed_requests))
    table.add_row("⏱️ Avg Duration", f"{stats.avg_duration_ms():.0f}ms")
    _console().print(table)


def _print_error_panel(resp_id: str, error_msg: str, status_code: int = 500) -> None:
    """Print error in a red panel for visibility."""
    if not settings.log_rich:
        return
    _console().print(Panel(
        Text(error_msg, style="bold white"),
        title=f"❌ Error [{_short_id(resp_id)}] HTTP {status_code}",
        border_style="red",
        expand=False,
    ))


def _print_separator(resp_id: str, *, model: str, stream: bool) -> None:
    """Print a visual separator for new requests."""
    if not settings.log_rich:
        return
    parts = [f"🔷 {'STREAM' if stream else 'REQUEST'}", f"model={model}", f"[{_short_id(resp_id)}]"]
    if _active_requests > 1:
        parts.append(f"📥 {_active_requests} concurrent")
    _console().print(Rule(" ".join(parts), style="bold blue"))


@app.on_event("startup")
async def _log_startup_config() -> None:
    # Intentionally omit secrets (tokens).
    items: list[tuple[str, object]] = [
        ("base_url", settings.base_url),
        ("default_model", settings.default_model),
        ("access_token_ttl_seconds", settings.access_token_ttl_seconds),
        ("max_retry_count", settings.max_retry_count),
        ("retry_delay_seconds", settings.retry_delay_seconds),
        ("stream_timeout_seconds", settings.stream_timeout_seconds),
        ("file_max_bytes", settings.file_max_bytes),
        ("fake_requests", settings.fake_requests),
    ]
    width = max(len(k) for k, _ in items)
    rendered = "Gateway config:\n" + "\n".join(f"  {k:<{width}} = {v}" for k, v in items)
    logger.info(rendered)


@app.on_event("shutdown")
async def _shutdown() -> None:
    await _aclose_http_clients()


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/ping")
async def ping():
    return PlainTextResponse("pong")


@app.get("/v1/models")
async def list_models():
    return {
        "object": "list",
        "data": [{"id": m, "object": "model", "created": 0, "owned_by": "kimi-gateway"} for m in settings.models()],
    }


@app.post("/v1/chat/completions")
async def chat_completions(
    req: ChatCompletionRequest,
    authorization: str | None = Header(default=None),
):
    refresh_token = pick_token(_require_tokens(authorization))
    model = (req.model or "").strip() or settings.default_model
    resp_id = uuid.uuid4().hex
    t0 = time.time()

    global _active_requests
    _active_requests += 1
    _print_separator(resp_id, model=model, stream=req.stream)
    logger.info("[%s] ▶ model=%s stream=%s messages=%d", resp_id, model, req.stream, len(req.messages))
    if req.messages:
        q = normalize_message_content(req.messages[-1].content)
        if q:
            logger.debug("[%s] Q:\n%s", resp_id, _truncate_for_log(q))

    try:
        if not req.stream:
            response = await create_completion(model, req.messages, refresh_token, use_search=req.use_search)
            duration_ms = int((time.time() - t0) * 1000)
            text = response["choices"][0]["message"]["content"]
            logger.info("[%s] response status=200 duration_ms=%d chars=%d", resp_id, duration_ms, len(text))
            _active_requests -= 1
            _request_stats.record_success(duration_ms)
            _maybe_print_stats()
            return response

        frames = await create_completion_stream(model, req.messages, refresh_token, use_search=req.use_search)
    except GatewayError as e:
        logger.error("[%s] error status=%d code=%d %s", resp_id, e.status_code, e.code, _truncate_for_log(e.message))
        _active_requests -= 1
        _request_stats.record_failure()
        _print_error_panel(resp_id, e.message, e.status_code)
        return _openai_error(e.message, status_code=e.status_code, code=e.code)
    except (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException):
        error_msg = "Upstream request timed out"
        logger.error("[%s] error status=504 timeout", resp_id)
        _active_requests -= 1
        _request_stats.record_failure()
        _print_error_panel(resp_id, error_msg, 504)
        return _openai_error(error_msg, status_code=504)
    except Exception as e:
        error_msg = str(e) or e.__class__.__name__
        logger.error("[%s] error status=500 %s", resp_id, _truncate_for_log(error_msg))
        _active_requests -= 1
        _request_stats.record_failure()
        _print_error_panel(resp_id, error_msg, 500)
        return _openai_error(error_msg, status_code=500)

    released = False

    async def _release_stream() -> None:
        # Called from the generator finally and as the background task; runs once.
        global _active_requests
        nonlocal released
        if released:
            return
        released = True
        try:
            await frames.aclose()
        finally:
            duration_ms = int((time.time() - t0) * 1000)
            logger.info("[%s] stream closed duration_ms=%d", resp_id, duration_ms)
            _active_requests -= 1
            _request_stats.record_success(duration_ms)
            _maybe_print_stats()

    async def sse_gen() -> AsyncIterator[str]:
        try:
            async for frame in frames:
                yield frame
        finally:
            await _release_stream()

    background = BackgroundTasks()
    background.add_task(_release_stream)
    return StreamingResponse(sse_gen(), media_type="text/event-stream", background=background)
