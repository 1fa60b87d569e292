from typing import Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.dependencies import get_jwt_service
from xnrt_ledger.core.exceptions.base import ForbiddenError, UnauthorizedError
from xnrt_ledger.core.service.auth.jwt_service import JWTService
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.logger.logger import logger
from xnrt_ledger.infra.database import get_async_session
from xnrt_ledger.infra.repository.user_repository import UserRepository


class CustomHTTPBearer(HTTPBearer):
    """Bearer extraction that reports failures through the service error format"""

    async def __call__(self, request: Request) -> Optional[HTTPAuthorizationCredentials]:
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            raise UnauthorizedError("Not authenticated")

        try:
            scheme, credentials = auth_header.split()
        except ValueError:
            raise UnauthorizedError("Invalid authorization header")

        if scheme.lower() != "bearer":
            raise UnauthorizedError("Invalid authentication scheme")
        return HTTPAuthorizationCredentials(scheme=scheme, credentials=credentials)


bearer_scheme = CustomHTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    jwt_service: JWTService = Depends(get_jwt_service),
    session: AsyncSession = Depends(get_async_session)
) -> User:
    payload = jwt_service.verify_token(credentials.credentials)
    try:
        user_id = UUID(payload.sub)
    except ValueError:
        raise UnauthorizedError("Invalid token subject")

    user = await UserRepository(session).get_by_id(user_id)
    if user is None:
        logger.warning("Token subject no longer exists", extra={"user_id": payload.sub})
        raise UnauthorizedError("User not found")
    return User.model_validate(user)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user
