"""
Dispute Resolution Service
Admin-driven terminal actions for disputed escrow transactions

Every outcome moves money through the same primitives as a normal release:
FULL_RELEASE and the seller's share of a PARTIAL_REFUND go through the
release engine; refunds go through the payment gateway and are mirrored as
seller wallet debits.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import (
    ACTIVE_DISPUTE_STATUSES, Dispute, DisputeOutcome, DisputeStatus, EscrowTransaction, TransactionStatus,
)
from services.audit_logger import TimelineEventType
from services.release_engine import ActorRole, ReleaseEngine, ReleaseResult, release_engine
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import EscrowStateValidator, StatusChange, transition, transition_path
from utils.exceptions import (
    EscrowReleaseError, ExternalGatewayError, InvalidRefundAmountError, InvalidTransitionError,
    OtherGatewayError, ResolutionInProgressError, TransactionNotFoundError, UnauthorizedActionError,
)
from utils.fee_calculator import ZERO, round_currency

logger = logging.getLogger(__name__)


def build_refund_idempotency_key(transaction_pk: int) -> str:
    """One buyer refund per transaction; retries and takeovers reuse the key"""
    return f"escrow-refund-{transaction_pk}"


class _ResolutionClaim(NamedTuple):
    token: str
    transaction_pk: int
    payment_reference: Optional[str]
    amount: Decimal
    released_net: Decimal
    has_releases: bool


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    success: bool
    transaction_id: str
    outcome: str
    refund_amount: Decimal = ZERO
    refund_reference: Optional[str] = None
    seller_net: Optional[Decimal] = None
    release: Optional[ReleaseResult] = None
    transaction_status: Optional[str] = None
    error_message: Optional[str] = None


class DisputeResolutionService:
    """Service for dispute creation and admin resolution"""

    def __init__(self, engine: Optional[ReleaseEngine] = None):
        self.engine = engine or release_engine

    @property
    def gateway(self):
        return self.engine.gateway

    @staticmethod
    def _load(session: Session, transaction_id: str) -> EscrowTransaction:
        tx = session.query(EscrowTransaction).filter(
            EscrowTransaction.transaction_id == transaction_id
        ).first()
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    def open_dispute(
        self,
        transaction_id: str,
        buyer_id: str,
        reason: str,
        milestone_index: Optional[int] = None,
    ) -> int:
        """
        Raise a dispute as the buyer.

        A transaction-wide dispute moves the transaction to DISPUTED. A
        milestone-scoped dispute only freezes that milestone.
        """
        changes: List[StatusChange] = []
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            if str(buyer_id) != str(tx.buyer_id):
                raise UnauthorizedActionError("Only the buyer can open a dispute")
            if not EscrowStateValidator.can_buyer_dispute(tx.status):
                raise InvalidTransitionError(
                    tx.status, TransactionStatus.DISPUTED.value,
                    EscrowStateValidator.get_valid_transitions(tx.status),
                )

            milestone_id = None
            if milestone_index is not None:
                milestone = next((m for m in tx.milestones if m.milestone_index == milestone_index), None)
                if milestone is None:
                    raise EscrowReleaseError(f"Milestone {milestone_index} does not exist")
                milestone_id = milestone.id
            else:
                changes.append(transition(tx, TransactionStatus.DISPUTED, buyer_id))
                tx.auto_release_scheduled = False
                tx.auto_release_at = None

            dispute = Dispute(
                transaction_id=tx.id,
                milestone_id=milestone_id,
                raised_by=str(buyer_id),
                reason=reason,
                status=DisputeStatus.OPEN.value,
            )
            session.add(dispute)
            session.flush()
            dispute_id = dispute.id

        self.engine.audit.record_status_changes(changes)
        logger.info(f"⚖️ DISPUTE_OPENED: {transaction_id} dispute={dispute_id} milestone={milestone_index}")
        return dispute_id

    @staticmethod
    def _resolve_open_disputes(session: Session, tx: EscrowTransaction, outcome: DisputeOutcome, admin_id: str) -> int:
        disputes = session.query(Dispute).filter(
            Dispute.transaction_id == tx.id,
            Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
        ).all()
        now = get_naive_utc_now()
        for dispute in disputes:
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = outcome.value
            dispute.resolved_by = str(admin_id)
            dispute.resolved_at = now
        return len(disputes)

    @staticmethod
    def _refund_amount(
        outcome: DisputeOutcome,
        refund_amount: Optional[Decimal],
        buyer_total: Decimal,
        held: Decimal,
        has_releases: bool,
    ) -> Decimal:
        if outcome == DisputeOutcome.PARTIAL_REFUND:
            if refund_amount is None:
                raise InvalidRefundAmountError("Partial refund amount is required")
            amount = round_currency(refund_amount)
            if amount <= ZERO or amount >= buyer_total or amount > held:
                raise InvalidRefundAmountError(
                    f"Partial refund must be greater than 0, less than the buyer total {buyer_total} "
                    f"and at most the {held} still held"
                )
            return amount
        if outcome == DisputeOutcome.FULL_REFUND:
            if has_releases:
                raise InvalidRefundAmountError("Funds were already partly released; use a partial refund")
            return buyer_total
        return ZERO

    def _claim_resolution(
        self,
        transaction_id: str,
        outcome: DisputeOutcome,
        admin_id: str,
        refund_amount: Optional[Decimal],
    ) -> _ResolutionClaim:
        """
        Validate the outcome and claim the transaction for this resolution.

        The claim is a conditional update on the DISPUTED row, so exactly one
        concurrent resolver reaches the gateway. Claims older than the stuck
        threshold are taken over; the refund idempotency key makes that safe.
        """
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            if tx.status != TransactionStatus.DISPUTED.value:
                raise InvalidTransitionError(
                    tx.status, TransactionStatus.RESOLVED.value,
                    EscrowStateValidator.get_valid_transitions(tx.status),
                )

            released_rows = self.engine.lock_manager.released_rows(session, tx.id)
            released_amount = sum((Decimal(r.milestone_amount or 0) for r in released_rows), ZERO)
            released_net = round_currency(sum((Decimal(r.seller_net or 0) for r in released_rows), ZERO))
            buyer_total = round_currency(tx.buyer_total)
            held = max(
                round_currency(buyer_total - released_amount - Decimal(tx.refunded_amount or 0)), ZERO
            )
            amount = self._refund_amount(outcome, refund_amount, buyer_total, held, bool(released_rows))

            token = uuid.uuid4().hex
            now = get_naive_utc_now()
            stale_before = now - timedelta(minutes=Config.RELEASE_STUCK_THRESHOLD_MINUTES)
            claimed = session.query(EscrowTransaction).filter(
                EscrowTransaction.id == tx.id,
                EscrowTransaction.status == TransactionStatus.DISPUTED.value,
                or_(
                    EscrowTransaction.resolution_claim_token.is_(None),
                    EscrowTransaction.resolution_claimed_at < stale_before,
                ),
            ).update(
                {'resolution_claim_token': token, 'resolution_claimed_at': now},
                synchronize_session=False,
            )
            if claimed != 1:
                logger.warning(f"⏳ RESOLUTION_IN_PROGRESS: {transaction_id} requested by {admin_id}")
                raise ResolutionInProgressError(transaction_id)

            logger.info(f"🔒 RESOLUTION_CLAIMED: {transaction_id} outcome={outcome.value} by={admin_id}")
            return _ResolutionClaim(
                token=token,
                transaction_pk=tx.id,
                payment_reference=tx.payment_reference,
                amount=amount,
                released_net=released_net,
                has_releases=bool(released_rows),
            )

    @staticmethod
    def _release_claim(claim: _ResolutionClaim) -> None:
        with managed_session() as session:
            session.query(EscrowTransaction).filter(
                EscrowTransaction.id == claim.transaction_pk,
                EscrowTransaction.resolution_claim_token == claim.token,
            ).update(
                {'resolution_claim_token': None, 'resolution_claimed_at': None},
                synchronize_session=False,
            )
        logger.info(f"🔓 RESOLUTION_CLAIM_RELEASED: transaction_pk={claim.transaction_pk}")

    async def _refund(self, claim: _ResolutionClaim) -> Optional[str]:
        if not claim.payment_reference:
            logger.warning(f"⚠️ REFUND_SKIPPED_NO_PAYMENT_REFERENCE: amount={claim.amount}")
            return None
        idempotency_key = build_refund_idempotency_key(claim.transaction_pk)
        try:
            return await asyncio.wait_for(
                self.gateway.refund(claim.payment_reference, claim.amount, idempotency_key=idempotency_key),
                timeout=self.engine.gateway_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"⏱️ REFUND_TIMEOUT: transaction_pk={claim.transaction_pk} key={idempotency_key}")
            raise ExternalGatewayError("Refund timed out; retrying reuses the same refund", timed_out=True)
        except ExternalGatewayError:
            raise
        except Exception as e:
            raise OtherGatewayError(f"Refund failed: {e}") from e

    async def resolve_dispute(
        self,
        transaction_id: str,
        outcome: DisputeOutcome,
        admin_id: str,
        refund_amount: Optional[Decimal] = None,
    ) -> ResolutionResult:
        """
        Resolve a DISPUTED transaction.

        FULL_RELEASE: resolve, then release everything still held to the seller.
        PARTIAL_REFUND: refund 0 < amount < buyer total, capped at what is still
            held; debit the seller and reduce seller_net, then release the
            remainder. With nothing left to release the transaction closes:
            CANCELED when nothing was paid out, PAYOUT_SCHEDULED otherwise.
        FULL_REFUND: refund the buyer total, debit the seller subtotal, REFUNDED.
        """
        claim = self._claim_resolution(transaction_id, outcome, admin_id, refund_amount)
        amount = claim.amount

        # A failed refund gives the claim back and leaves the dispute open
        refund_reference = None
        if amount > ZERO:
            try:
                refund_reference = await self._refund(claim)
            except ExternalGatewayError as e:
                logger.error(f"❌ REFUND_FAILED: {transaction_id} amount={amount}: {e.message}")
                self._release_claim(claim)
                raise
            logger.info(f"↩️ BUYER_REFUNDED: {transaction_id} amount={amount} ref={refund_reference}")

        changes: List[StatusChange] = []
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            resolved_count = self._resolve_open_disputes(session, tx, outcome, admin_id)
            changes.append(transition(tx, TransactionStatus.RESOLVED, admin_id))
            tx.resolution_claim_token = None
            tx.resolution_claimed_at = None
            if amount > ZERO:
                tx.refunded_amount = round_currency(Decimal(tx.refunded_amount or 0) + amount)
            wallet = self.engine.wallet_factory(session)

            if outcome == DisputeOutcome.PARTIAL_REFUND:
                wallet.debit_seller(
                    tx.id, tx.seller_id, amount, tx.currency,
                    metadata={'resolution': outcome.value, 'admin_id': str(admin_id), 'refund_reference': refund_reference},
                )
                # Net already paid out stays paid out
                tx.seller_net = max(round_currency(Decimal(tx.seller_net) - amount), claim.released_net)
                if Decimal(tx.seller_net) - claim.released_net <= ZERO:
                    if claim.has_releases:
                        changes.extend(transition_path(
                            tx, [TransactionStatus.RELEASED, TransactionStatus.PAYOUT_SCHEDULED], admin_id
                        ))
                    else:
                        changes.append(transition(tx, TransactionStatus.CANCELED, admin_id))
            elif outcome == DisputeOutcome.FULL_REFUND:
                wallet.debit_seller(
                    tx.id, tx.seller_id, Decimal(tx.subtotal), tx.currency,
                    metadata={'resolution': outcome.value, 'admin_id': str(admin_id), 'refund_reference': refund_reference},
                )
                tx.seller_net = ZERO
                changes.append(transition(tx, TransactionStatus.REFUNDED, admin_id))

            tx.auto_release_scheduled = False
            tx.auto_release_at = None
            seller_net = Decimal(tx.seller_net)
            status = tx.status
            transaction_pk = tx.id
            buyer_id, seller_id = tx.buyer_id, tx.seller_id

        logger.info(
            f"⚖️ DISPUTE_RESOLVED: {transaction_id} outcome={outcome.value} disputes={resolved_count} "
            f"refund={amount} seller_net={seller_net}"
        )
        audit = self.engine.audit
        audit.record_status_changes(changes)
        audit.record_timeline_event(
            transaction_pk, TimelineEventType.DISPUTE_RESOLVED,
            self._resolution_message(outcome, amount), str(admin_id),
            details={'refund_reference': refund_reference},
        )
        if amount > ZERO:
            audit.record_timeline_event(
                transaction_pk, TimelineEventType.BUYER_REFUNDED,
                f"Buyer refunded {amount}", str(admin_id),
            )
        await self.engine.notifier.notify_dispute_resolved(buyer_id, seller_id, transaction_id, outcome.value)

        release = None
        error_message = None
        if status == TransactionStatus.RESOLVED.value:
            try:
                release = await self.engine.release_funds(
                    transaction_id, None, actor_id=str(admin_id), role=ActorRole.ADMIN
                )
                status = release.transaction_status
            except EscrowReleaseError as e:
                # Resolution stands; the admin retries the release from RESOLVED
                logger.error(f"❌ RESOLUTION_RELEASE_FAILED: {transaction_id}: {e.message}")
                error_message = e.message

        return ResolutionResult(
            success=error_message is None,
            transaction_id=transaction_id,
            outcome=outcome.value,
            refund_amount=amount,
            refund_reference=refund_reference,
            seller_net=seller_net,
            release=release,
            transaction_status=status,
            error_message=error_message,
        )

    @staticmethod
    def _resolution_message(outcome: DisputeOutcome, amount: Decimal) -> str:
        if outcome == DisputeOutcome.FULL_RELEASE:
            return "Admin released funds to seller"
        if outcome == DisputeOutcome.PARTIAL_REFUND:
            return f"Admin partially refunded buyer {amount}"
        return f"Admin fully refunded buyer {amount}"


# Global dispute resolution service instance
dispute_resolution_service = DisputeResolutionService()
