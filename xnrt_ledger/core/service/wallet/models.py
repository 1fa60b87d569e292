from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class WalletChallenge(BaseModel):
    """Single-use ownership challenge for an external wallet address"""
    user_id: UUID
    address: str = Field(..., description="Lower-case 0x address")
    nonce: str
    message: str = Field(..., description="Exact text the wallet must sign")
    issued_at: str = Field(..., description="ISO-8601 issuance timestamp, echoed back on confirm")
    expires_at: datetime
    consumed: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "6f1c2a4e-8d0b-4a55-9a43-2d7f1f0f6c11",
                "address": "0x742d35cc6634c0532925a3b844bc454e4438f44e",
                "nonce": "9f2c4e1ab07d43e1b6c2a7f0e55d1c3a",
                "message": "XNRT Wallet Link\n\nAddress: 0x742d35cc6634c0532925a3b844bc454e4438f44e\n"
                           "Nonce: 9f2c4e1ab07d43e1b6c2a7f0e55d1c3a\nIssued: 2025-01-01T10:00:00.000+00:00",
                "issued_at": "2025-01-01T10:00:00.000+00:00",
                "expires_at": "2025-01-01T10:10:00Z",
                "consumed": False
            }
        }


class WalletLink(BaseModel):
    user_id: UUID
    address: str
    linked_at: datetime

    class Config:
        from_attributes = True


class DepositAddress(BaseModel):
    address: str
    network: str = "BSC"
    token: str = "USDT"
    derivation_index: int
