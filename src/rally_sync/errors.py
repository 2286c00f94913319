from __future__ import annotations

from typing import Any, Dict, List, Optional


class ApiError(Exception):
    """Application fault returned by the backend; passed through to callers."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str = "",
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.status = status
        self.code = code
        self.message = message
        self.details = details or []
        super().__init__(f"{status} {code}: {message}" if message else f"{status} {code}")


class AuthorizationError(ApiError):
    """HTTP 401. Only the credential coordinator acts on it."""


class TransportError(ApiError):
    """The request never produced a response (network failure or timeout)."""

    def __init__(self, message: str) -> None:
        super().__init__(0, "NETWORK_ERROR", message)


class RenewalError(Exception):
    """Credential renewal failed and the session was destroyed."""


class HandshakeError(Exception):
    """The persistent connection could not be opened.

    ``status`` carries the HTTP status of a rejected upgrade, if any.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


def error_from_envelope(status: int, payload: object) -> ApiError:
    """Build the right ``ApiError`` subclass from ``{"error": {...}}``."""

    code = "UNKNOWN_ERROR"
    message = ""
    details: List[Dict[str, Any]] = []
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        if isinstance(error.get("code"), str):
            code = error["code"]
        if isinstance(error.get("message"), str):
            message = error["message"]
        if isinstance(error.get("details"), list):
            details = [item for item in error["details"] if isinstance(item, dict)]
    if status == 401:
        return AuthorizationError(status, code if code != "UNKNOWN_ERROR" else "UNAUTHORIZED", message, details)
    return ApiError(status, code, message, details)
