"""Models for withdrawal processing."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from xnrt_ledger.core.service.ledger.models import BalancePool


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Withdrawal(BaseModel):
    id: UUID
    user_id: UUID
    source: BalancePool
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    usdt_amount: Decimal
    destination_address: str
    status: WithdrawalStatus
    admin_notes: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
