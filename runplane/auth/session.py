"""
User session tokens.

Sessions are HS256 JWTs signed with `SESSION_JWT_SECRET`; the `sub` claim is
the user id that scopes every run query.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
import structlog

from runplane.config import Settings, get_settings
from runplane.kernel.errors import UnauthorizedError

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    expires_at: datetime | None = None


def _require_secret(settings: Settings) -> str:
    if not settings.session_jwt_secret:
        logger.error("SESSION_JWT_SECRET not configured")
        raise UnauthorizedError(message="Session authentication is not configured.")
    return settings.session_jwt_secret


def create_session_token(
    user_id: str,
    *,
    expires_in: timedelta = timedelta(hours=1),
    settings: Settings | None = None,
) -> str:
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    if settings.session_jwt_audience:
        payload["aud"] = settings.session_jwt_audience
    return jwt.encode(payload, _require_secret(settings), algorithm=JWT_ALGORITHM)


def verify_session_token(token: str, settings: Settings | None = None) -> SessionUser:
    settings = settings or get_settings()
    secret = _require_secret(settings)
    options = {"require": ["sub", "exp"]}
    try:
        if settings.session_jwt_audience:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                audience=settings.session_jwt_audience,
                options=options,
            )
        else:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={**options, "verify_aud": False},
            )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError(message="Session expired. Please log in again.", code="SESSION_EXPIRED")
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected session token", error=str(exc))
        raise UnauthorizedError(message="Unauthorized. Please log in.")

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise UnauthorizedError(message="Unauthorized. Please log in.")
    return SessionUser(
        user_id=user_id,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )
