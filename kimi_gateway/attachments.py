from __future__ import annotations

import base64
import logging
import mimetypes
import posixpath
import uuid
from urllib.parse import urlparse

from .config import settings
from .credentials import TokenManager, token_manager
from .errors import FileInvalid, FileTooLarge, RequestFailed
from .http_client import build_headers, get_async_client, upstream_url
from .messages import is_base64_data_url

logger = logging.getLogger("uvicorn.error")


def _decode_data_url(data_url: str) -> tuple[bytes, str]:
    try:
        header, payload = data_url.split(",", 1)
    except ValueError as e:
        raise FileInvalid("Invalid data: URL") from e
    mime = header.removeprefix("data:").split(";", 1)[0].strip() or "application/octet-stream"
    # base64 payload may contain newlines; strip whitespace.
    payload = "".join(payload.split())
    try:
        data = base64.b64decode(payload, validate=False)
    except Exception as e:
        raise FileInvalid("Invalid base64 file payload") from e
    return data, mime


def _filename_from_url(url: str) -> str:
    name = posixpath.basename(urlparse(url).path)
    return name or f"{uuid.uuid4().hex}.bin"


async def check_file_url(file_url: str) -> None:
    """Fail fast on unreachable or oversized remote files, before any upload."""
    if is_base64_data_url(file_url):
        return
    client = await get_async_client("files")
    try:
        resp = await client.head(file_url, timeout=settings.metadata_timeout_seconds)
    except Exception as e:
        raise FileInvalid(f"File {file_url} is not valid: {e}") from e
    if resp.status_code >= 400:
        raise FileInvalid(f"File {file_url} is not valid: [{resp.status_code}] {resp.reason_phrase}")
    length = resp.headers.get("content-length")
    if length and length.isdigit() and int(length) > settings.file_max_bytes:
        raise FileTooLarge(f"File {file_url} exceeds {settings.file_max_bytes} bytes")


async def _download(file_url: str) -> bytes:
    client = await get_async_client("files")
    buf = bytearray()
    async with client.stream("GET", file_url, timeout=settings.download_timeout_seconds) as resp:
        if resp.status_code >= 400:
            raise FileInvalid(f"File {file_url} is not valid: [{resp.status_code}] {resp.reason_phrase}")
        async for chunk in resp.aiter_bytes():
            buf.extend(chunk)
            if len(buf) > settings.file_max_bytes:
                raise FileTooLarge(f"File {file_url} exceeds {settings.file_max_bytes} bytes")
    return bytes(buf)


async def pre_sign_url(filename: str, refresh_token: str, *, tokens: TokenManager | None = None) -> dict:
    tokens = tokens or token_manager
    access = await tokens.acquire(refresh_token)
    client = await get_async_client("kimi")
    resp = await client.post(
        upstream_url("/api/pre-sign-url"),
        json={"action": "file", "name": filename},
        headers=build_headers(access),
        timeout=settings.metadata_timeout_seconds,
    )
    data = tokens.check_result(resp, refresh_token)
    if not isinstance(data, dict) or not isinstance(data.get("url"), str):
        raise RequestFailed("Pre-sign request returned no upload url")
    return data


async def upload_file(file_url: str, refresh_token: str, *, tokens: TokenManager | None = None) -> str:
    """Upload a remote or base64 file to Kimi and return its file id."""
    tokens = tokens or token_manager
    await check_file_url(file_url)

    if is_base64_data_url(file_url):
        data, mime_type = _decode_data_url(file_url)
        if len(data) > settings.file_max_bytes:
            raise FileTooLarge(f"Inline file exceeds {settings.file_max_bytes} bytes")
        ext = mimetypes.guess_extension(mime_type) or ".bin"
        filename = f"{uuid.uuid4().hex}{ext}"
    else:
        filename = _filename_from_url(file_url)
        data = await _download(file_url)
        mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

    signed = await pre_sign_url(filename, refresh_token, tokens=tokens)
    upload_url = signed["url"]
    object_name = signed.get("object_name")

    access = await tokens.acquire(refresh_token)
    client = await get_async_client("kimi")
    resp = await client.put(
        upload_url,
        content=data,
        headers=build_headers(access, extra={"Content-Type": mime_type}),
        timeout=settings.upload_timeout_seconds,
    )
    tokens.check_result(resp, refresh_token)

    resp = await client.post(
        upstream_url("/api/file"),
        json={"type": "file", "name": filename, "object_name": object_name},
        headers=build_headers(access),
        timeout=settings.metadata_timeout_seconds,
    )
    registered = tokens.check_result(resp, refresh_token)
    file_id = registered.get("id") if isinstance(registered, dict) else None
    if not isinstance(file_id, str) or not file_id:
        raise RequestFailed("File registration returned no id")

    resp = await client.post(
        upstream_url("/api/file/parse_process"),
        json={"ids": [file_id]},
        headers=build_headers(access),
        timeout=settings.upload_timeout_seconds,
    )
    tokens.check_result(resp, refresh_token)
    logger.info("Uploaded %s as file_id=%s bytes=%d", filename, file_id, len(data))
    return file_id
