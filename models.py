"""
Escrow Release Service - Database Schema
========================================

Schema for the escrow fund-release subsystem:
- Escrow transactions and their ordered milestones
- Milestone release records (the database-backed release lock)
- Disputes (read by the freeze guard, resolved by admins)
- Wallet ledger entries and the immutable transaction timeline

Timestamps are stored as naive UTC.
"""

from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# Money columns: two decimal places, the currency minor unit
Money = Numeric(18, 2)

# Sentinel milestone index used by the release lock for full (non-milestone) releases
FULL_RELEASE_INDEX = -1


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionStatus(Enum):
    """Escrow transaction lifecycle states (wire contract values)"""
    DRAFT = "DRAFT"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    FUNDED = "FUNDED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    RELEASED = "RELEASED"
    PAYOUT_SCHEDULED = "PAYOUT_SCHEDULED"
    PAID_OUT = "PAID_OUT"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"


class MilestoneReleaseStatus(Enum):
    """Release lock states"""
    CREATED = "CREATED"
    CREATING = "CREATING"
    RELEASED = "RELEASED"
    FAILED = "FAILED"


class DisputeStatus(Enum):
    """Dispute lifecycle states"""
    OPEN = "OPEN"
    UNDER_NEGOTIATION = "UNDER_NEGOTIATION"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ACTIVE_DISPUTE_STATUSES = (
    DisputeStatus.OPEN.value,
    DisputeStatus.UNDER_NEGOTIATION.value,
    DisputeStatus.UNDER_REVIEW.value,
)


class DisputeOutcome(Enum):
    """Admin dispute resolution outcomes (wire contract values)"""
    FULL_RELEASE = "FULL_RELEASE"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    FULL_REFUND = "FULL_REFUND"


class LedgerEntryType(Enum):
    """Wallet ledger entry direction"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


# ============================================================================
# ESCROW TRANSACTIONS
# ============================================================================

class EscrowTransaction(Base):
    """Escrow unit holding buyer funds until release conditions are met"""
    __tablename__ = "escrow_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(32), unique=True, nullable=False, index=True)  # Public facing ID

    # Participants
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    seller_payout_account_id = Column(String(128), nullable=True)

    # Financial details
    currency = Column(String(10), nullable=False, default="USD")
    subtotal = Column(Money, nullable=False)
    buyer_fee = Column(Money, nullable=False, default=Decimal("0.00"))
    seller_fee = Column(Money, nullable=False, default=Decimal("0.00"))
    seller_net = Column(Money, nullable=False)
    # Seller payout recorded by the gateway when the buyer paid (preferred split source)
    recorded_seller_payout = Column(Money, nullable=True)
    payment_reference = Column(String(128), nullable=True)
    # Buyer refunds issued through dispute resolution
    refunded_amount = Column(Money, nullable=False, default=Decimal("0.00"))

    # Status and lifecycle
    status = Column(String(32), default=TransactionStatus.DRAFT.value, nullable=False)
    item_type = Column(String(32), nullable=True)
    allows_partial_release = Column(Boolean, default=False, nullable=False)

    # Proof and auto-release timing
    proof_submitted_at = Column(DateTime, nullable=True)
    auto_release_at = Column(DateTime, nullable=True)
    auto_release_scheduled = Column(Boolean, default=False, nullable=False)

    # Admin resolution claim, taken before any refund is sent
    resolution_claim_token = Column(String(64), nullable=True)
    resolution_claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=True)
    released_at = Column(DateTime, nullable=True)

    milestones = relationship(
        "Milestone",
        back_populates="transaction",
        order_by="Milestone.milestone_index",
        cascade="all, delete-orphan",
    )
    releases = relationship("MilestoneRelease", back_populates="transaction")
    disputes = relationship("Dispute", back_populates="transaction")

    __table_args__ = (
        CheckConstraint("seller_net >= 0", name="ck_escrow_transactions_seller_net_non_negative"),
        CheckConstraint("subtotal > 0", name="ck_escrow_transactions_subtotal_positive"),
        Index("ix_escrow_transactions_status", "status"),
        Index("ix_escrow_transactions_auto_release", "auto_release_scheduled", "auto_release_at"),
    )

    @property
    def buyer_total(self) -> Decimal:
        return Decimal(self.subtotal) + Decimal(self.buyer_fee or 0)

    def __repr__(self):
        return f"<EscrowTransaction(transaction_id={self.transaction_id}, status={self.status})>"


class Milestone(Base):
    """Independently releasable slice of a transaction subtotal"""
    __tablename__ = "escrow_milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("escrow_transactions.id"), nullable=False)
    milestone_index = Column(Integer, nullable=False)
    title = Column(String(255), nullable=False)
    amount = Column(Money, nullable=False)
    due_date = Column(DateTime, nullable=True)
    review_window_days = Column(Integer, default=3, nullable=False)
    revision_limit = Column(Integer, default=1, nullable=False)
    revision_count = Column(Integer, default=0, nullable=False)

    transaction = relationship("EscrowTransaction", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("transaction_id", "milestone_index", name="uq_escrow_milestones_position"),
        CheckConstraint("amount > 0", name="ck_escrow_milestones_amount_positive"),
        CheckConstraint("milestone_index >= 0", name="ck_escrow_milestones_index_non_negative"),
    )

    def __repr__(self):
        return f"<Milestone(transaction_id={self.transaction_id}, index={self.milestone_index}, amount={self.amount})>"


class MilestoneRelease(Base):
    """
    Release attempt record and database-backed mutex.

    The unique (transaction_id, milestone_index) pair is what prevents a double
    release: only one row per key exists and only one can reach RELEASED.
    Rows are never deleted.
    """
    __tablename__ = "milestone_releases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("escrow_transactions.id"), nullable=False)
    milestone_index = Column(Integer, nullable=False)  # FULL_RELEASE_INDEX for full releases
    status = Column(String(16), default=MilestoneReleaseStatus.CREATING.value, nullable=False)

    milestone_amount = Column(Money, nullable=True)
    seller_fee = Column(Money, nullable=True)
    seller_net = Column(Money, nullable=True)
    split_source = Column(String(16), nullable=True)

    payout_reference = Column(String(128), nullable=True)
    idempotency_key = Column(String(128), nullable=True)
    attempt_count = Column(Integer, default=1, nullable=False)
    released_by = Column(String(64), nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    released_at = Column(DateTime, nullable=True)

    transaction = relationship("EscrowTransaction", back_populates="releases")

    __table_args__ = (
        UniqueConstraint("transaction_id", "milestone_index", name="uq_milestone_releases_key"),
        Index("ix_milestone_releases_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return (
            f"<MilestoneRelease(transaction_id={self.transaction_id}, "
            f"index={self.milestone_index}, status={self.status})>"
        )


class Dispute(Base):
    """Dispute raised on a transaction or one of its milestones"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("escrow_transactions.id"), nullable=False)
    milestone_id = Column(Integer, ForeignKey("escrow_milestones.id"), nullable=True)
    raised_by = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(32), default=DisputeStatus.OPEN.value, nullable=False)
    resolution = Column(String(32), nullable=True)
    resolved_by = Column(String(64), nullable=True)

    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    transaction = relationship("EscrowTransaction", back_populates="disputes")

    __table_args__ = (
        Index("ix_disputes_transaction_status", "transaction_id", "status"),
    )

    def __repr__(self):
        return f"<Dispute(transaction_id={self.transaction_id}, status={self.status})>"


class WalletLedgerEntry(Base):
    """Append-only seller wallet ledger entry"""
    __tablename__ = "wallet_ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("escrow_transactions.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    entry_type = Column(String(8), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_ledger_entries_amount_positive"),
    )


class TimelineEvent(Base):
    """Immutable audit/timeline event for a transaction"""
    __tablename__ = "timeline_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("escrow_transactions.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    actor_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
