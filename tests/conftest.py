"""
Shared fixtures for escrow release tests

Key Components:
1. Per-test SQLite database bound through database.bind_engine
2. In-memory payment gateway with scriptable latency and failures
3. Release engine wired to fresh lock manager, audit logger and notifier
4. Transaction factory covering full-release and milestone transactions
"""

import itertools
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional, Sequence

import pytest

import database
from config import Config
from database import build_engine, bind_engine, managed_session
from models import Base, EscrowTransaction, Milestone, TransactionStatus
from services.audit_logger import AuditLogger
from services.dispute_resolution import DisputeResolutionService
from services.notification_service import NotificationService
from services.payment_gateway import InMemoryPaymentGateway
from services.release_engine import ReleaseEngine
from services.release_lock_manager import ReleaseLockManager
from utils.datetime_helpers import get_naive_utc_now
from utils.fee_calculator import buyer_fee as compute_buyer_fee, seller_fee as compute_seller_fee, round_currency
from tests.fixtures import ADMIN_ID, BUYER_ID, PAYOUT_ACCOUNT, SELLER_ID

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

_transaction_counter = itertools.count(1)


@pytest.fixture(autouse=True)
def fee_config(monkeypatch):
    """Pin fee and admin settings regardless of the environment"""
    monkeypatch.setattr(Config, "SELLER_FEE_PERCENTAGE", Decimal("5.0"))
    monkeypatch.setattr(Config, "BUYER_FEE_PERCENTAGE", Decimal("0"))
    monkeypatch.setattr(Config, "DEFAULT_REVIEW_WINDOW_DAYS", 3)
    monkeypatch.setattr(Config, "ADMIN_IDS", [ADMIN_ID])


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite database so concurrent sessions see each other's commits"""
    original_engine = database.engine
    test_engine = build_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}")
    bind_engine(test_engine)
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()
    bind_engine(original_engine)


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway()


@pytest.fixture
def notifier():
    return NotificationService()


@pytest.fixture
def lock_manager(db_engine):
    return ReleaseLockManager()


@pytest.fixture
def release_engine(db_engine, gateway, lock_manager, notifier):
    return ReleaseEngine(
        gateway=gateway,
        lock_manager=lock_manager,
        audit=AuditLogger(),
        notifier=notifier,
        gateway_timeout=1.0,
    )


@pytest.fixture
def dispute_service(release_engine):
    return DisputeResolutionService(engine=release_engine)


@pytest.fixture
def make_transaction(db_engine):
    """
    Factory for escrow transactions.

    Returns the public transaction id. Proof is submitted (and auto-release
    scheduled in the past when auto_release_due is set) unless proof=False.
    """

    def _make(
        subtotal: str = "100.00",
        status: TransactionStatus = TransactionStatus.PROOF_SUBMITTED,
        milestones: Optional[Sequence[str]] = None,
        buyer_fee: Optional[str] = None,
        recorded_seller_payout: Optional[str] = None,
        payout_account: Optional[str] = PAYOUT_ACCOUNT,
        payment_reference: Optional[str] = "pay_test_1",
        proof: bool = True,
        auto_release_due: bool = False,
    ) -> str:
        amount = round_currency(subtotal)
        fee = compute_seller_fee(amount)
        b_fee = round_currency(buyer_fee) if buyer_fee is not None else compute_buyer_fee(amount)
        now = get_naive_utc_now()
        transaction_id = f"ES{next(_transaction_counter):06d}"

        with managed_session() as session:
            tx = EscrowTransaction(
                transaction_id=transaction_id,
                buyer_id=BUYER_ID,
                seller_id=SELLER_ID,
                seller_payout_account_id=payout_account,
                currency="USD",
                subtotal=amount,
                buyer_fee=b_fee,
                seller_fee=fee,
                seller_net=round_currency(amount - fee),
                recorded_seller_payout=(
                    round_currency(recorded_seller_payout) if recorded_seller_payout is not None else None
                ),
                payment_reference=payment_reference,
                status=status.value,
                allows_partial_release=bool(milestones),
            )
            if proof:
                tx.proof_submitted_at = now - timedelta(days=4)
                tx.auto_release_at = now - timedelta(hours=1) if auto_release_due else now + timedelta(days=3)
                tx.auto_release_scheduled = True
            for index, milestone_amount in enumerate(milestones or []):
                tx.milestones.append(Milestone(
                    milestone_index=index,
                    title=f"Milestone {index + 1}",
                    amount=round_currency(milestone_amount),
                ))
            session.add(tx)
        return transaction_id

    return _make

