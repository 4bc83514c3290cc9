import json
from unittest.mock import patch

import httpx

from kimi_gateway import http_client


def sse(*events: dict) -> bytes:
    return b"".join(f"data: {json.dumps(e, ensure_ascii=False)}\n\n".encode("utf-8") for e in events)


async def achunks(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def alines(*chunks: bytes, source=None):
    """Decoded lines of a response body delivered as `chunks`, the way the upstream stream is read."""
    return httpx.Response(200, content=source if source is not None else achunks(*chunks)).aiter_lines()


def parse_frame(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n"), frame
    return json.loads(frame[len("data: ") : -2])


def install_mock_transport(handler) -> tuple[httpx.AsyncClient, object]:
    """Route every shared upstream client through `handler`."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    patcher = patch.dict(http_client._clients, {"kimi": client, "kimi-stream": client, "files": client})
    return client, patcher
