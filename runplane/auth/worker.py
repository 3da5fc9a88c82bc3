"""
Worker token authorization.

Cron triggers and the worker CLI authenticate with a shared secret taken from
`RUNPLANE_WORKER_TOKEN` or `CRON_SECRET`. The token may arrive either in the
`x-runplane-worker-token` header or as `Authorization: Bearer <token>`.
"""

from __future__ import annotations

import hmac
import re
from dataclasses import dataclass
from typing import Literal, Mapping

from runplane.config import Settings, get_settings

WORKER_TOKEN_HEADER = "x-runplane-worker-token"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

WorkerAuthMethod = Literal["header-token", "bearer-token"]


@dataclass(frozen=True)
class WorkerAuthorization:
    ok: bool
    method: WorkerAuthMethod | None = None
    error: str | None = None


def _normalize_token(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_bearer_token(authorization_header: str | None) -> str | None:
    value = _normalize_token(authorization_header)
    if not value:
        return None
    match = _BEARER_RE.match(value)
    if not match:
        return None
    return _normalize_token(match.group(1))


def get_configured_worker_tokens(settings: Settings | None = None) -> list[str]:
    settings = settings or get_settings()
    tokens: list[str] = []
    for raw in (settings.runplane_worker_token, settings.cron_secret):
        token = _normalize_token(raw)
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def _matches(candidate: str, configured: list[str]) -> bool:
    # Compare against every token so timing does not reveal which one matched.
    matched = False
    for token in configured:
        if hmac.compare_digest(candidate.encode(), token.encode()):
            matched = True
    return matched


def authorize_worker_request(
    headers: Mapping[str, str],
    settings: Settings | None = None,
) -> WorkerAuthorization:
    configured = get_configured_worker_tokens(settings)
    if not configured:
        return WorkerAuthorization(
            ok=False,
            error="Worker authorization is not configured. Set RUNPLANE_WORKER_TOKEN or CRON_SECRET.",
        )

    header_token = _normalize_token(headers.get(WORKER_TOKEN_HEADER))
    bearer_token = parse_bearer_token(headers.get("authorization"))

    if not header_token and not bearer_token:
        return WorkerAuthorization(
            ok=False,
            error=f"Missing worker token. Provide {WORKER_TOKEN_HEADER} or Authorization: Bearer <token>.",
        )

    if header_token and _matches(header_token, configured):
        return WorkerAuthorization(ok=True, method="header-token")
    if bearer_token and _matches(bearer_token, configured):
        return WorkerAuthorization(ok=True, method="bearer-token")

    return WorkerAuthorization(ok=False, error="Invalid worker token.")
