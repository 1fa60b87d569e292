import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from xnrt_ledger.core.exceptions.base import UnauthorizedError
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.core.service.auth.models.token import TokenPayload, TokenResponse, TokenType
from xnrt_ledger.infra.config.settings import get_settings

logger = get_logger(__name__)
settings = get_settings()


class JWTService:
    """Service for issuing and verifying access tokens"""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.access_token_expire_minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES

    def create_access_token(
        self,
        user_id: UUID,
        is_admin: bool = False,
        expires_delta: Optional[timedelta] = None
    ) -> TokenResponse:
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))

        payload = TokenPayload(
            sub=str(user_id),
            exp=expires_at,
            iat=issued_at,
            type=TokenType.ACCESS,
            jti=str(uuid.uuid4()),
            admin=is_admin
        )
        encoded_jwt = jwt.encode(payload.model_dump(mode="json") | {
            "exp": int(expires_at.timestamp()),
            "iat": int(issued_at.timestamp())
        }, self.secret_key, algorithm=self.algorithm)

        return TokenResponse(
            access_token=encoded_jwt,
            expires_in=int((expires_at - issued_at).total_seconds())
        )

    def verify_token(self, token: str) -> TokenPayload:
        """
        Verify a JWT token and return its payload
        Raises UnauthorizedError if the token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
            token_data = TokenPayload(**payload)
        except ExpiredSignatureError:
            logger.info("Token expired")
            raise UnauthorizedError("Token has expired")
        except (InvalidTokenError, ValueError) as e:
            logger.warning("Invalid token", extra={"error": str(e)})
            raise UnauthorizedError("Invalid token")

        if token_data.type != TokenType.ACCESS:
            raise UnauthorizedError("Invalid token type")
        return token_data
