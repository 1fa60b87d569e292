from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class User(BaseModel):
    """Platform user as seen by the ledger"""
    id: UUID
    referral_code: str
    referred_by: Optional[UUID] = None
    is_admin: bool = False
    deposit_address: Optional[str] = Field(None, description="HD-derived personal receive address")
    created_at: datetime

    class Config:
        from_attributes = True
