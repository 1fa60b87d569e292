import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from xnrt_ledger.core.exceptions.base import UnauthorizedError
from xnrt_ledger.core.service.auth.jwt_service import JWTService
from xnrt_ledger.core.service.auth.models.token import TokenType
from xnrt_ledger.infra.config.settings import get_settings

settings = get_settings()

TEST_USER_ID = uuid.UUID("7f9c2d4e-1b3a-4c5d-8e6f-0a1b2c3d4e5f")


@pytest.fixture
def jwt_service():
    return JWTService()


def test_create_access_token(jwt_service):
    """Should create a verifiable access token for the user"""
    token = jwt_service.create_access_token(TEST_USER_ID, is_admin=True)

    assert token.access_token
    assert token.token_type == "bearer"
    assert token.expires_in == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    payload = jwt_service.verify_token(token.access_token)
    assert payload.sub == str(TEST_USER_ID)
    assert payload.type == TokenType.ACCESS
    assert payload.admin is True


def test_tokens_have_unique_ids(jwt_service):
    first = jwt_service.verify_token(jwt_service.create_access_token(TEST_USER_ID).access_token)
    second = jwt_service.verify_token(jwt_service.create_access_token(TEST_USER_ID).access_token)

    assert first.jti != second.jti


def test_verify_expired_token(jwt_service):
    """Should reject an expired token"""
    token = jwt_service.create_access_token(TEST_USER_ID, expires_delta=timedelta(seconds=-1))

    with pytest.raises(UnauthorizedError) as exc_info:
        jwt_service.verify_token(token.access_token)
    assert exc_info.value.message == "Token has expired"


def test_verify_token_with_wrong_secret(jwt_service):
    token = JWTService(secret_key="another-secret-key-of-sufficient-length").create_access_token(TEST_USER_ID)

    with pytest.raises(UnauthorizedError) as exc_info:
        jwt_service.verify_token(token.access_token)
    assert exc_info.value.status_code == 401


def test_verify_token_with_wrong_type(jwt_service):
    """Should reject a well-signed token that is not an access token"""
    now = datetime.now(timezone.utc)
    token = jwt.encode({
        "sub": str(TEST_USER_ID),
        "exp": int((now + timedelta(minutes=5)).timestamp()),
        "iat": int(now.timestamp()),
        "type": "refresh",
        "jti": "refresh-1"
    }, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(UnauthorizedError):
        jwt_service.verify_token(token)


def test_verify_malformed_token(jwt_service):
    with pytest.raises(UnauthorizedError) as exc_info:
        jwt_service.verify_token("not.a.token")
    assert exc_info.value.message == "Invalid token"
