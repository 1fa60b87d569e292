from fastapi import APIRouter, Depends, status

from xnrt_ledger.api.middleware.authentication.jwt_bearer import get_current_user
from xnrt_ledger.api.models.request_models import RegisterRequestDTO
from xnrt_ledger.api.models.response_models import RegisterResponseDTO
from xnrt_ledger.core.dependencies import get_jwt_service, get_user_service
from xnrt_ledger.core.service.auth.jwt_service import JWTService
from xnrt_ledger.core.service.ledger.models import Balance
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.service.user.user_service import UserService

router = APIRouter(tags=["users"])


@router.post("/users/register", response_model=RegisterResponseDTO, status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequestDTO,
    user_service: UserService = Depends(get_user_service),
    jwt_service: JWTService = Depends(get_jwt_service)
):
    """Create a user with an empty balance and return an access token for it."""
    user = await user_service.register(referrer_code=request.referralCode)
    token = jwt_service.create_access_token(user.id, is_admin=user.is_admin)
    return RegisterResponseDTO(user=user, token=token)


@router.get("/users/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
    return user


@router.get("/balance", response_model=Balance)
async def balance(
    user: User = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    return await user_service.get_balance(user.id)
