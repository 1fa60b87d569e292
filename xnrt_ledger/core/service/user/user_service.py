import secrets
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from xnrt_ledger.core.exceptions.base import NotFoundError, ValidationError
from xnrt_ledger.core.service.ledger.models import Balance
from xnrt_ledger.core.service.user.models import User
from xnrt_ledger.core.logger.logger import get_logger
from xnrt_ledger.infra.repository.balance_repository import BalanceRepository
from xnrt_ledger.infra.repository.user_repository import UserRepository

logger = get_logger(__name__)


class UserService:
    """Registers users together with their balance row"""

    REFERRAL_CODE_PREFIX = "XNRT"
    MAX_CODE_ATTEMPTS = 5

    def __init__(self, session: AsyncSession):
        self.session = session
        self.users = UserRepository(session)
        self.balances = BalanceRepository(session)

    def _generate_referral_code(self) -> str:
        return f"{self.REFERRAL_CODE_PREFIX}{secrets.token_hex(4).upper()}"

    async def register(
        self,
        referrer_code: Optional[str] = None,
        referral_code: Optional[str] = None,
        is_admin: bool = False
    ) -> User:
        """
        Create a user and an all-zero balance in one transaction

        Args:
            referrer_code: Referral code of the inviting user, if any
            referral_code: Fixed code for the new user (house account seeding); generated otherwise
            is_admin: Admin flag
        """
        referred_by = None
        if referrer_code:
            referrer = await self.users.get_by_referral_code(referrer_code.strip().upper())
            if referrer is None:
                raise ValidationError("Invalid referral code", details={"referral_code": referrer_code})
            referred_by = referrer.id

        for attempt in range(self.MAX_CODE_ATTEMPTS):
            code = referral_code or self._generate_referral_code()
            try:
                user = await self.users.create_user(code, referred_by=referred_by, is_admin=is_admin)
                await self.balances.create(user.id)
                await self.session.commit()
                return User.model_validate(user)
            except IntegrityError:
                await self.session.rollback()
                if referral_code:
                    raise ValidationError("Referral code already in use", details={"referral_code": referral_code})
                logger.warning("Referral code collision, regenerating", extra={"attempt": attempt + 1})

        raise ValidationError("Could not allocate a unique referral code")

    async def get_user(self, user_id: UUID) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        return User.model_validate(user)

    async def get_balance(self, user_id: UUID) -> Balance:
        balance = await self.balances.get(user_id)
        if balance is None:
            raise NotFoundError("Balance not found", details={"user_id": str(user_id)})
        return Balance.model_validate(balance)

    async def ensure_house_account(self, referral_code: str) -> User:
        """Create the house account on first start; returns the existing one afterwards"""
        house = await self.users.get_by_referral_code(referral_code)
        if house is not None:
            return User.model_validate(house)
        try:
            user = await self.register(referral_code=referral_code, is_admin=True)
        except ValidationError:
            # Another worker seeded it first
            house = await self.users.get_by_referral_code(referral_code)
            if house is None:
                raise
            return User.model_validate(house)
        logger.info("House account created", extra={"user_id": str(user.id), "referral_code": referral_code})
        return user
