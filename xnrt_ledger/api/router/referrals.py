from fastapi import APIRouter, Depends

from xnrt_ledger.api.middleware.authentication.jwt_bearer import get_current_user
from xnrt_ledger.core.dependencies import get_commission_engine
from xnrt_ledger.core.service.ledger.commission_engine import CommissionEngine
from xnrt_ledger.core.service.ledger.models import ReferralStats
from xnrt_ledger.core.service.user.models import User

router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.get("/stats", response_model=ReferralStats)
async def referral_stats(
    user: User = Depends(get_current_user),
    engine: CommissionEngine = Depends(get_commission_engine)
):
    return await engine.referral_stats(user.id)
