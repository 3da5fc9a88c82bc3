from datetime import datetime, timedelta, timezone

import jwt
import pytest

from runplane.auth.session import JWT_ALGORITHM, create_session_token, verify_session_token
from runplane.config import Settings
from runplane.kernel.errors import UnauthorizedError


@pytest.fixture
def settings() -> Settings:
    return Settings(session_jwt_secret="unit-secret", session_jwt_audience=None)


def test_round_trip(settings):
    token = create_session_token("user-9", settings=settings)

    user = verify_session_token(token, settings)

    assert user.user_id == "user-9"
    assert user.expires_at > datetime.now(timezone.utc)


def test_expired_token(settings):
    token = create_session_token("user-9", expires_in=timedelta(seconds=-5), settings=settings)

    with pytest.raises(UnauthorizedError) as exc_info:
        verify_session_token(token, settings)
    assert exc_info.value.code == "SESSION_EXPIRED"


def test_wrong_secret(settings):
    token = create_session_token("user-9", settings=Settings(session_jwt_secret="other-secret"))

    with pytest.raises(UnauthorizedError) as exc_info:
        verify_session_token(token, settings)
    assert exc_info.value.code == "UNAUTHORIZED"


def test_missing_subject(settings):
    token = jwt.encode(
        {"exp": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp())},
        "unit-secret",
        algorithm=JWT_ALGORITHM,
    )

    with pytest.raises(UnauthorizedError):
        verify_session_token(token, settings)


def test_audience_is_enforced():
    issuing = Settings(session_jwt_secret="unit-secret", session_jwt_audience="runplane")
    token = create_session_token("user-9", settings=issuing)

    assert verify_session_token(token, issuing).user_id == "user-9"
    with pytest.raises(UnauthorizedError):
        verify_session_token(token, Settings(session_jwt_secret="unit-secret", session_jwt_audience="other"))


def test_unconfigured_secret():
    with pytest.raises(UnauthorizedError):
        verify_session_token("anything", Settings(session_jwt_secret=None))
