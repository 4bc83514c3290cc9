from __future__ import annotations


class GatewayError(Exception):
    """Base class for failures that map onto an OpenAI-style error response."""

    code: int = -2001
    status_code: int = 500
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class RequestFailed(GatewayError):
    code = -2001
    status_code = 500
    default_message = "Upstream request failed"


class AuthInvalid(RequestFailed):
    # Raised after the cached access token was evicted. Rendered like any
    # other RequestFailed.
    default_message = "Access token is invalid or expired"


class FileInvalid(GatewayError):
    code = -2004
    status_code = 400
    default_message = "File URL is not valid"


class FileTooLarge(GatewayError):
    code = -2005
    status_code = 413
    default_message = "File exceeds the size limit"


class StreamBusy(GatewayError):
    code = -2006
    status_code = 429
    default_message = "A stream is already in progress for this account, try again later"


class StreamMalformed(GatewayError):
    code = -2007
    status_code = 502
    default_message = "Upstream stream is malformed"


__all__ = [
    "AuthInvalid",
    "FileInvalid",
    "FileTooLarge",
    "GatewayError",
    "RequestFailed",
    "StreamBusy",
    "StreamMalformed",
]
