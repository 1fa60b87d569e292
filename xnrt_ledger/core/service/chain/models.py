from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TransferEvent(BaseModel):
    """A decoded ERC-20 Transfer log"""
    tx_hash: str
    block_number: int
    from_address: str
    to_address: str
    amount: Decimal
    log_index: int = 0


class VerifyResult(BaseModel):
    """Outcome of checking one reported transaction on chain"""
    verified: bool
    confirmations: int = 0
    amount: Optional[Decimal] = Field(None, description="Sum of token transfers to the expected address")
    from_address: Optional[str] = None
    block_number: Optional[int] = None
    reason: Optional[str] = None


class ScanPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MATCHING = "matching"
    CREDITING = "crediting"


class ScanResult(BaseModel):
    success: bool = True
    skipped: bool = False
    phase: ScanPhase = ScanPhase.IDLE
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    head_block: Optional[int] = None
    transfers_found: int = 0
    credited: int = 0
    pending: int = 0
    unmatched: int = 0
    malformed: int = 0
    error: Optional[str] = None
