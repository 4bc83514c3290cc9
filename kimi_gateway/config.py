from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_csv(name: str) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return []
    items: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            items.append(part)
    return items


@dataclass(frozen=True)
class Settings:
    host: str = os.environ.get("KIMI_GATEWAY_HOST", "127.0.0.1")
    port: int = _env_int("KIMI_GATEWAY_PORT", 8000)

    # Upstream web service.
    base_url: str = _env_str("KIMI_BASE_URL", "https://kimi.moonshot.cn")
    default_model: str = _env_str("KIMI_MODEL", "kimi")
    advertised_models: list[str] = field(default_factory=lambda: _env_csv("KIMI_ADVERTISED_MODELS"))

    # Access tokens are refreshed after this many seconds.
    access_token_ttl_seconds: int = _env_int("KIMI_ACCESS_TOKEN_TTL", 300)

    # Whole-operation retry around a completion (attempts = max_retry_count + 1).
    max_retry_count: int = _env_int("KIMI_MAX_RETRY_COUNT", 3)
    retry_delay_seconds: float = _env_float("KIMI_RETRY_DELAY_SECONDS", 5.0)

    # Per-call timeouts.
    metadata_timeout_seconds: float = _env_float("KIMI_METADATA_TIMEOUT_SECONDS", 15.0)
    stream_timeout_seconds: float = _env_float("KIMI_STREAM_TIMEOUT_SECONDS", 120.0)
    download_timeout_seconds: float = _env_float("KIMI_DOWNLOAD_TIMEOUT_SECONDS", 60.0)
    upload_timeout_seconds: float = _env_float("KIMI_UPLOAD_TIMEOUT_SECONDS", 120.0)

    # Attachment size ceiling (bytes).
    file_max_bytes: int = _env_int("KIMI_FILE_MAX_BYTES", 100 * 1024 * 1024)

    # Issue a random "browsing" call before each completion, like the web client does.
    fake_requests: bool = _env_bool("KIMI_FAKE_REQUESTS", True)

    # Logging.
    log_rich: bool = _env_bool("KIMI_LOG_RICH", True)
    log_max_chars: int = _env_int("KIMI_LOG_MAX_CHARS", 4000)
    stats_interval_seconds: int = _env_int("KIMI_STATS_INTERVAL_SECONDS", 60)

    # CORS (comma-separated origins). Empty disables CORS.
    cors_origins: str = os.environ.get("KIMI_CORS_ORIGINS", "")

    def models(self) -> list[str]:
        if self.advertised_models:
            return self.advertised_models[:]
        return [self.default_model, f"{self.default_model}-search", f"{self.default_model}-silent_search"]


settings = Settings()
