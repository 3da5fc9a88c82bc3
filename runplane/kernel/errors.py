from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


class RunplaneError(Exception):
    """Base typed error for runplane.

    Goals:
    - Stable `code` for programmatic handling across clients.
    - Human-readable `message` for operator surfaces.
    - `retryable` tells callers whether repeating the same request can succeed.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        retryable: bool = False,
        meta: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected uppercase snake case tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.retryable = bool(retryable)
        self.meta = dict(meta or {})
        self.headers = dict(headers or {})

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            # Keep `detail` for compatibility with FastAPI error surfaces.
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(RunplaneError):
    def __init__(self, *, message: str = "Not found", code: str = "NOT_FOUND", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class UnauthorizedError(RunplaneError):
    def __init__(
        self,
        *,
        message: str = "Not authenticated",
        code: str = "UNAUTHORIZED",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=401, meta=meta)


class ConflictError(RunplaneError):
    def __init__(
        self,
        *,
        message: str = "Conflict",
        code: str = "CONFLICT",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class MaxAttemptsReachedError(ConflictError):
    def __init__(self, *, message: str = "Run reached max attempts and cannot be retried.", meta: dict[str, Any] | None = None):
        super().__init__(code="MAX_ATTEMPTS_REACHED", message=message, meta=meta)


class ValidationError(RunplaneError):
    def __init__(
        self,
        *,
        message: str = "Invalid request",
        code: str = "INVALID_REQUEST",
        meta: dict[str, Any] | None = None,
        status_code: int = 400,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class RateLimitedError(RunplaneError):
    def __init__(
        self,
        *,
        retry_after_seconds: int,
        headers: dict[str, str] | None = None,
        message: str = "Too many requests. Please slow down.",
    ):
        super().__init__(
            code="RATE_LIMITED",
            message=message,
            status_code=429,
            retryable=True,
            meta={"retryAfter": int(retry_after_seconds)},
            headers=headers,
        )
        self.retry_after_seconds = int(retry_after_seconds)

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload = super().to_public_dict(request_id=request_id)
        payload["retryAfter"] = self.retry_after_seconds
        return payload
