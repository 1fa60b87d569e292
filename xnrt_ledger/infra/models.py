"""
SQLAlchemy ORM models for database tables
"""

from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Boolean, Numeric, Text, ForeignKey, Index, UniqueConstraint, Uuid, text
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

# 36 digits with 8 decimals covers token amounts with 18-decimal on-chain sources after conversion
Amount = Numeric(36, 8)
ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    """SQLAlchemy ORM model for users table"""

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referral_code = Column(String(32), nullable=False, unique=True)
    referred_by = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    deposit_address = Column(String(42), nullable=True, unique=True)
    derivation_index = Column(Integer, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_users_referred_by', 'referred_by'),
    )

    def __repr__(self):
        return f"<User(id='{self.id}', referral_code='{self.referral_code}', admin={self.is_admin})>"


class BalanceModel(Base):
    """SQLAlchemy ORM model for balances table (one row per user)"""

    __tablename__ = "balances"

    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    main_balance = Column(Amount, nullable=False, default=ZERO)
    staking_balance = Column(Amount, nullable=False, default=ZERO)
    mining_balance = Column(Amount, nullable=False, default=ZERO)
    referral_balance = Column(Amount, nullable=False, default=ZERO)
    total_earned = Column(Amount, nullable=False, default=ZERO)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Balance(user_id='{self.user_id}', main={self.main_balance}, referral={self.referral_balance})>"


class WalletLinkModel(Base):
    """SQLAlchemy ORM model for linked_wallets table"""

    __tablename__ = "linked_wallets"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    address = Column(String(42), nullable=False, unique=True)
    signature = Column(Text, nullable=False)
    linked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_linked_wallets_user', 'user_id'),
    )

    def __repr__(self):
        return f"<WalletLink(user_id='{self.user_id}', address='{self.address}')>"


class DepositModel(Base):
    """SQLAlchemy ORM model for deposits table"""

    __tablename__ = "deposits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source = Column(String(32), nullable=False)
    amount = Column(Amount, nullable=False)
    converted_amount = Column(Amount, nullable=False)
    transaction_hash = Column(String(66), nullable=True)
    # position of the Transfer log inside the transaction; NULL for user reports covering the whole transaction
    log_index = Column(Integer, nullable=True)
    block_number = Column(BigInteger, nullable=True)
    from_address = Column(String(42), nullable=True)
    to_address = Column(String(42), nullable=True)
    confirmations = Column(Integer, default=0, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default='pending', nullable=False)
    proof_image_url = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('transaction_hash', 'log_index', name='uq_deposits_transfer'),
        Index(
            'uq_deposits_report_hash', 'transaction_hash', unique=True,
            postgresql_where=text('log_index IS NULL'), sqlite_where=text('log_index IS NULL')
        ),
        Index('idx_deposits_user', 'user_id'),
        Index('idx_deposits_status', 'status'),
    )

    def __repr__(self):
        return f"<Deposit(id='{self.id}', user_id='{self.user_id}', status='{self.status}', hash='{self.transaction_hash}')>"


class UnmatchedDepositModel(Base):
    """SQLAlchemy ORM model for unmatched_deposits table"""

    __tablename__ = "unmatched_deposits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_address = Column(String(42), nullable=False)
    to_address = Column(String(42), nullable=False)
    amount = Column(Amount, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=True)
    block_number = Column(BigInteger, nullable=True)
    confirmations = Column(Integer, default=0, nullable=False)
    reason = Column(Text, nullable=True)
    resolved = Column(Boolean, default=False, nullable=False)
    resolved_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('tx_hash', 'log_index', name='uq_unmatched_deposits_transfer'),
        Index(
            'uq_unmatched_deposits_report_hash', 'tx_hash', unique=True,
            postgresql_where=text('log_index IS NULL'), sqlite_where=text('log_index IS NULL')
        ),
        Index('idx_unmatched_deposits_resolved', 'resolved'),
    )

    def __repr__(self):
        return f"<UnmatchedDeposit(tx_hash='{self.tx_hash}', resolved={self.resolved})>"


class StakeModel(Base):
    """SQLAlchemy ORM model for stakes table"""

    __tablename__ = "stakes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tier = Column(String(40), nullable=False)
    amount = Column(Amount, nullable=False)
    daily_rate = Column(Numeric(10, 4), nullable=False)
    duration = Column(Integer, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    last_profit_date = Column(DateTime(timezone=True), nullable=True)
    accumulated_profit = Column(Amount, nullable=False, default=ZERO)
    status = Column(String(20), default='active', nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_stakes_user', 'user_id'),
        Index('idx_stakes_status', 'status'),
    )

    def __repr__(self):
        return f"<Stake(id='{self.id}', tier='{self.tier}', status='{self.status}')>"


class ReferralModel(Base):
    """SQLAlchemy ORM model for referrals table"""

    __tablename__ = "referrals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    referrer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    referred_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    level = Column(Integer, nullable=False)
    total_commission = Column(Amount, nullable=False, default=ZERO)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_referrals_pair', 'referrer_id', 'referred_user_id', unique=True),
    )

    def __repr__(self):
        return f"<Referral(referrer='{self.referrer_id}', referred='{self.referred_user_id}', level={self.level})>"


class WithdrawalModel(Base):
    """SQLAlchemy ORM model for withdrawals table"""

    __tablename__ = "withdrawals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source = Column(String(20), nullable=False)
    amount = Column(Amount, nullable=False)
    fee = Column(Amount, nullable=False)
    net_amount = Column(Amount, nullable=False)
    usdt_amount = Column(Amount, nullable=False)
    destination_address = Column(String(42), nullable=False)
    status = Column(String(20), default='pending', nullable=False)
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_withdrawals_user', 'user_id'),
        Index('idx_withdrawals_status', 'status'),
    )

    def __repr__(self):
        return f"<Withdrawal(id='{self.id}', source='{self.source}', status='{self.status}')>"


class ScannerStateModel(Base):
    """SQLAlchemy ORM model for scanner_state table"""

    __tablename__ = "scanner_state"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scanner_id = Column(String(50), nullable=False, unique=True)
    last_processed_block = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<ScannerState(scanner_id='{self.scanner_id}', last_processed_block={self.last_processed_block})>"


class ActivityModel(Base):
    """SQLAlchemy ORM model for activities table (ledger journal)"""

    __tablename__ = "activities"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(40), nullable=False)
    amount = Column(Amount, nullable=True)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_activities_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Activity(user_id='{self.user_id}', type='{self.type}')>"
