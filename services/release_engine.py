"""
Release Engine
Orchestrates every movement of escrowed funds to a seller

Each release runs: dispute freeze gate -> eligibility -> proportional split ->
release lock -> gateway transfer -> lock completion + wallet credit + status
advance -> best-effort timeline and notifications. Buyer clicks, admin
resolutions and the auto-release job all come through here; there is no other
writer of milestone_releases.

Database sessions are never held across the gateway await.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Set, Tuple

from sqlalchemy.orm import Session

from config import Config
from database import managed_session
from models import (
    FULL_RELEASE_INDEX, EscrowTransaction, Milestone, MilestoneRelease, TransactionStatus
)
from services.audit_logger import AuditLogger, TimelineEventType, audit_logger
from services.dispute_freeze import check_dispute_freeze, ensure_not_frozen
from services.notification_service import NotificationService, notification_service
from services.payment_gateway import HttpPaymentGateway, PaymentGateway
from services.release_lock_manager import (
    ReleaseLockHandle, ReleaseLockManager, describe_index, release_lock_manager
)
from services.wallet_service import WalletService
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import EscrowStateValidator, StatusChange, transition
from utils.exceptions import (
    EscrowReleaseError, ExternalGatewayError, InsufficientBalanceError, InvalidTransitionError,
    LockInProgressError, OtherGatewayError, ReleaseNotEligibleError, TransactionNotFoundError,
    UnauthorizedActionError,
)
from utils.fee_calculator import (
    ZERO, PayoutSplit, PayoutSplitSource, proportional_split, round_currency
)
from utils.milestone_utils import (
    calculate_auto_release_at, can_request_revision, next_unreleased_index, unreleased_predecessors,
    validate_milestones,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


class ActorRole(Enum):
    """Who is asking for money to move"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class ReleaseEligibility(NamedTuple):
    eligible: bool
    reasons: List[str]


@dataclass
class ReleaseResult:
    """Outcome of one release (full or milestone)"""
    success: bool
    transaction_id: str
    milestone_index: Optional[int] = None
    release_id: Optional[int] = None
    amount: Optional[Decimal] = None
    seller_fee: Optional[Decimal] = None
    seller_net: Optional[Decimal] = None
    payout_reference: Optional[str] = None
    payout_deferred: bool = False
    already_released: bool = False
    all_milestones_released: bool = False
    transaction_status: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        for key in ("amount", "seller_fee", "seller_net"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data


@dataclass
class ReleaseAllResult:
    released_count: int
    total_milestones: int
    per_milestone_results: List[ReleaseResult] = field(default_factory=list)
    all_milestones_released: bool = False

    def to_dict(self) -> dict:
        return {
            'released_count': self.released_count,
            'total_milestones': self.total_milestones,
            'all_milestones_released': self.all_milestones_released,
            'per_milestone_results': [r.to_dict() for r in self.per_milestone_results],
        }


class FinalizeOutcome(NamedTuple):
    all_released: bool
    proof_reset: bool
    status: str


@dataclass
class _ReleaseContext:
    """Values read before the gateway await, so no session spans it"""
    transaction_pk: int
    transaction_id: str
    seller_id: str
    currency: str
    payout_account_id: Optional[str]
    milestone_index: Optional[int]
    milestone_title: Optional[str]
    role: ActorRole


class ReleaseEngine:
    """Single orchestration point for releasing escrowed funds"""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        lock_manager: Optional[ReleaseLockManager] = None,
        wallet_factory: Callable[[Session], WalletService] = WalletService,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[NotificationService] = None,
        gateway_timeout: Optional[float] = None,
    ):
        self.gateway = gateway or HttpPaymentGateway()
        self.lock_manager = lock_manager or release_lock_manager
        self.wallet_factory = wallet_factory
        self.audit = audit or audit_logger
        self.notifier = notifier or notification_service
        self.gateway_timeout = gateway_timeout or Config.GATEWAY_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Lookups and guards
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, transaction_id: str) -> EscrowTransaction:
        tx = session.query(EscrowTransaction).filter(
            EscrowTransaction.transaction_id == transaction_id
        ).first()
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    @staticmethod
    def _authorize(tx: EscrowTransaction, role: ActorRole, actor_id: str) -> None:
        if role == ActorRole.SELLER:
            raise UnauthorizedActionError("Sellers cannot release escrowed funds")
        if role == ActorRole.BUYER and str(actor_id) != str(tx.buyer_id):
            raise UnauthorizedActionError("Only the buyer can release these funds")
        if role == ActorRole.SYSTEM and actor_id != SYSTEM_ACTOR_ID:
            raise UnauthorizedActionError("Automatic releases must run as the system actor")

    @staticmethod
    def _find_milestone(tx: EscrowTransaction, milestone_index: Optional[int]) -> Optional[Milestone]:
        if milestone_index is None:
            return None
        for milestone in tx.milestones:
            if milestone.milestone_index == milestone_index:
                return milestone
        return None

    @staticmethod
    def _uses_milestones(tx: EscrowTransaction) -> bool:
        return bool(tx.allows_partial_release and tx.milestones)

    def _status_reasons(self, tx: EscrowTransaction, role: ActorRole, milestone_release: bool) -> List[str]:
        status = tx.status
        if role == ActorRole.SYSTEM:
            allowed = EscrowStateValidator.can_auto_release(status)
        elif milestone_release:
            allowed = status in EscrowStateValidator.MILESTONE_RELEASABLE or (
                role == ActorRole.ADMIN and status == TransactionStatus.RESOLVED.value
            )
        elif role == ActorRole.ADMIN:
            allowed = status in EscrowStateValidator.ADMIN_RELEASABLE
        else:
            allowed = EscrowStateValidator.can_buyer_release(status)

        if allowed:
            return []
        return [f"Transaction status {status} does not allow release"]

    def _proof_reasons(
        self, session: Session, tx: EscrowTransaction, role: ActorRole, milestone_release: bool
    ) -> List[str]:
        reasons = []
        if role == ActorRole.SYSTEM:
            if tx.proof_submitted_at is None:
                return ["Proof has not been submitted yet"]
            if not tx.auto_release_scheduled or tx.auto_release_at is None:
                reasons.append("Auto-release is not scheduled")
            elif tx.auto_release_at > get_naive_utc_now():
                reasons.append("Review window has not elapsed yet")

            # A fresh proof is required after every released milestone
            released_times = [r.released_at for r in self.lock_manager.released_rows(session, tx.id) if r.released_at]
            if released_times and max(released_times) >= tx.proof_submitted_at:
                reasons.append("Proof is required again after the previous milestone was released")
        elif role == ActorRole.BUYER and not milestone_release and tx.proof_submitted_at is None:
            reasons.append("Proof has not been submitted yet")
        return reasons

    def _milestone_reasons(
        self, session: Session, tx: EscrowTransaction, milestone_index: int, released: Set[int]
    ) -> List[str]:
        if not self._uses_milestones(tx):
            return ["Milestone releases are not enabled for this transaction"]
        plan_errors = validate_milestones(tx.subtotal, [m.amount for m in tx.milestones])
        if plan_errors:
            return plan_errors
        if Decimal(tx.refunded_amount or 0) > ZERO:
            return ["Buyer was partly refunded; release the remaining balance in full"]
        if self._find_milestone(tx, milestone_index) is None:
            return [f"Milestone {milestone_index} does not exist"]
        if FULL_RELEASE_INDEX in released:
            return ["Funds were already released in full"]
        if milestone_index in released:
            return [f"Milestone {milestone_index} is already released"]

        pending = unreleased_predecessors(milestone_index, released)
        if pending:
            listed = ", ".join(str(i) for i in pending)
            return [f"Milestone {listed} must be released first"]
        return []

    def _eligibility_reasons(
        self,
        session: Session,
        tx: EscrowTransaction,
        milestone_index: Optional[int],
        role: ActorRole,
        include_freeze: bool = True,
    ) -> List[str]:
        milestone_release = milestone_index is not None
        reasons = []

        if include_freeze:
            milestone = self._find_milestone(tx, milestone_index)
            freeze = check_dispute_freeze(session, tx.id, milestone.id if milestone else None)
            if freeze.frozen:
                reasons.append(freeze.reason)

        reasons.extend(self._status_reasons(tx, role, milestone_release))
        reasons.extend(self._proof_reasons(session, tx, role, milestone_release))

        released = self.lock_manager.released_indices(session, tx.id)
        if milestone_release:
            reasons.extend(self._milestone_reasons(session, tx, milestone_index, released))
        elif FULL_RELEASE_INDEX in released:
            reasons.append("Funds were already released in full")
        elif self._uses_milestones(tx) and {m.milestone_index for m in tx.milestones} <= released:
            reasons.append("All milestones are already released")

        return reasons

    # ------------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------------

    def _compute_split(self, session: Session, tx: EscrowTransaction, milestone_index: Optional[int]) -> PayoutSplit:
        released_rows = [
            r for r in self.lock_manager.released_rows(session, tx.id) if r.milestone_index != FULL_RELEASE_INDEX
        ]
        released_amount = sum((Decimal(r.milestone_amount or 0) for r in released_rows), ZERO)
        released_fee = sum((Decimal(r.seller_fee or 0) for r in released_rows), ZERO)
        released_net = sum((Decimal(r.seller_net or 0) for r in released_rows), ZERO)
        source = (
            PayoutSplitSource.RECORDED if tx.recorded_seller_payout is not None else PayoutSplitSource.RECOMPUTED
        )

        if milestone_index is None:
            # Everything not yet paid out, using the transaction's stored figures
            refunded = Decimal(tx.refunded_amount or 0)
            net = max(round_currency(Decimal(tx.seller_net) - released_net), ZERO)
            amount = max(round_currency(Decimal(tx.subtotal) - released_amount - refunded), ZERO)
            if refunded > ZERO:
                # Buyer refunds come out of the gross still held
                fee = max(round_currency(amount - net), ZERO)
            else:
                fee = max(round_currency(Decimal(tx.seller_fee) - released_fee), ZERO)
            return PayoutSplit(amount=amount, seller_fee=fee, seller_net=net, source=source)

        milestone = self._find_milestone(tx, milestone_index)
        split = proportional_split(milestone.amount, tx.subtotal, tx.recorded_seller_payout)

        remaining = [m for m in tx.milestones if m.milestone_index not in {r.milestone_index for r in released_rows}]
        if len(remaining) == 1 and remaining[0].milestone_index == milestone_index:
            # Last milestone absorbs rounding so the milestone nets sum to seller_net
            net = max(round_currency(Decimal(tx.seller_net) - released_net), ZERO)
            split = PayoutSplit(
                amount=split.amount,
                seller_fee=round_currency(split.amount - net),
                seller_net=net,
                source=split.source,
            )
        return split

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def compute_release_eligibility(
        self,
        transaction_id: str,
        milestone_index: Optional[int] = None,
        role: ActorRole = ActorRole.BUYER,
    ) -> ReleaseEligibility:
        """Read-only release pre-check used by UI polling and before mutation"""
        with managed_session() as session:
            tx = session.query(EscrowTransaction).filter(
                EscrowTransaction.transaction_id == transaction_id
            ).first()
            if tx is None:
                return ReleaseEligibility(False, [f"Transaction {transaction_id} not found"])
            reasons = self._eligibility_reasons(session, tx, milestone_index, role)
            return ReleaseEligibility(not reasons, reasons)

    async def release_funds(
        self,
        transaction_id: str,
        milestone_index: Optional[int] = None,
        actor_id: str = SYSTEM_ACTOR_ID,
        role: ActorRole = ActorRole.SYSTEM,
        apply_proof_reset: bool = True,
    ) -> ReleaseResult:
        """
        Release a milestone, or everything still held when milestone_index is None.

        Raises DisputeFreezeError, ReleaseNotEligibleError, UnauthorizedActionError,
        LockInProgressError or ExternalGatewayError. A release that already
        happened returns its stored result with already_released=True and no
        side effects.
        """
        lock_index = FULL_RELEASE_INDEX if milestone_index is None else milestone_index

        with managed_session() as session:
            tx = self._load(session, transaction_id)
            self._authorize(tx, role, actor_id)

            milestone = self._find_milestone(tx, milestone_index)
            ensure_not_frozen(session, tx.id, milestone.id if milestone else None)

            existing = self.lock_manager.get_released(session, tx.id, lock_index)
            if existing is not None:
                return self._stored_result(session, tx, existing)

            reasons = self._eligibility_reasons(session, tx, milestone_index, role, include_freeze=False)
            if reasons:
                logger.info(f"🚫 RELEASE_NOT_ELIGIBLE: {transaction_id} milestone={milestone_index} {reasons}")
                raise ReleaseNotEligibleError(reasons)

            split = self._compute_split(session, tx, milestone_index)
            if split.seller_net <= ZERO:
                raise ReleaseNotEligibleError(["Nothing is left to release to the seller"])

            ctx = _ReleaseContext(
                transaction_pk=tx.id,
                transaction_id=tx.transaction_id,
                seller_id=tx.seller_id,
                currency=tx.currency,
                payout_account_id=tx.seller_payout_account_id,
                milestone_index=milestone_index,
                milestone_title=milestone.title if milestone else None,
                role=role,
            )

        handle = self.lock_manager.acquire(ctx.transaction_pk, lock_index, actor_id)
        if handle.already_released:
            with managed_session() as session:
                tx = session.get(EscrowTransaction, ctx.transaction_pk)
                row = session.get(MilestoneRelease, handle.release_id)
                return self._stored_result(session, tx, row)
        if handle.in_progress:
            raise LockInProgressError(transaction_id, lock_index)

        return await self._execute(ctx, handle, split, actor_id, apply_proof_reset)

    async def _execute(
        self,
        ctx: _ReleaseContext,
        handle: ReleaseLockHandle,
        split: PayoutSplit,
        actor_id: str,
        apply_proof_reset: bool,
    ) -> ReleaseResult:
        label = f"{ctx.transaction_id} milestone={describe_index(handle.milestone_index)}"
        if not self.lock_manager.mark_created(handle, split):
            # Reconciliation settled the row while this attempt was starting
            logger.warning(f"⏳ RELEASE_LOCK_LOST: {label} release_id={handle.release_id}; transfer not sent")
            raise LockInProgressError(ctx.transaction_id, handle.milestone_index)

        payout_reference = None
        deferred_reason = None
        if not ctx.payout_account_id:
            deferred_reason = "seller payout account is not set up"
        else:
            try:
                payout_reference = await asyncio.wait_for(
                    self.gateway.create_transfer(
                        split.seller_net, ctx.currency, ctx.payout_account_id, handle.idempotency_key
                    ),
                    timeout=self.gateway_timeout,
                )
            except asyncio.TimeoutError:
                # Outcome unknown: the lock stays in flight for the reconciliation sweep
                logger.error(
                    f"⏱️ RELEASE_TRANSFER_TIMEOUT: {label} key={handle.idempotency_key} "
                    f"after {self.gateway_timeout}s"
                )
                self.audit.record_timeline_event(
                    ctx.transaction_pk, TimelineEventType.RELEASE_ATTEMPTED,
                    "Transfer timed out; awaiting reconciliation", actor_id,
                )
                raise ExternalGatewayError("Payment gateway timed out", timed_out=True)
            except InsufficientBalanceError as e:
                deferred_reason = f"insufficient gateway balance ({e.message})"
            except ExternalGatewayError as e:
                self._fail(ctx, handle, actor_id, e.message)
                raise
            except Exception as e:
                self._fail(ctx, handle, actor_id, str(e))
                raise OtherGatewayError(f"Transfer failed: {e}") from e

        if deferred_reason:
            logger.warning(f"💰 RELEASE_PAYOUT_DEFERRED: {label}: {deferred_reason}; crediting wallet only")

        outcome = self.finalize_release(handle, split, payout_reference, actor_id, ctx.role, apply_proof_reset)

        release_type = TimelineEventType.FUNDS_RELEASED
        if ctx.milestone_index is not None:
            release_type = (
                TimelineEventType.MILESTONE_AUTO_RELEASED if ctx.role == ActorRole.SYSTEM
                else TimelineEventType.MILESTONE_RELEASED
            )
        what = f'Milestone "{ctx.milestone_title}"' if ctx.milestone_title else "Funds"
        self.audit.record_timeline_event(
            ctx.transaction_pk, release_type,
            f"{what} released: {ctx.currency} {split.seller_net} to seller",
            actor_id,
            details={'release_id': handle.release_id, 'payout_reference': payout_reference},
        )
        if deferred_reason:
            self.audit.record_timeline_event(
                ctx.transaction_pk, TimelineEventType.PAYOUT_DEFERRED,
                f"Bank payout deferred: {deferred_reason}", actor_id,
            )
        await self.notifier.notify_funds_released(
            ctx.seller_id, ctx.transaction_id, split.seller_net, ctx.currency,
            milestone_title=ctx.milestone_title, payout_deferred=bool(deferred_reason),
        )

        return ReleaseResult(
            success=True,
            transaction_id=ctx.transaction_id,
            milestone_index=ctx.milestone_index,
            release_id=handle.release_id,
            amount=split.amount,
            seller_fee=split.seller_fee,
            seller_net=split.seller_net,
            payout_reference=payout_reference,
            payout_deferred=bool(deferred_reason),
            all_milestones_released=outcome.all_released,
            transaction_status=outcome.status,
        )

    def _fail(self, ctx: _ReleaseContext, handle: ReleaseLockHandle, actor_id: str, message: str) -> None:
        logger.error(f"❌ RELEASE_TRANSFER_FAILED: {ctx.transaction_id} release_id={handle.release_id}: {message}")
        self.lock_manager.release_failed(handle, message)
        self.audit.record_timeline_event(
            ctx.transaction_pk, TimelineEventType.RELEASE_FAILED,
            f"Transfer failed: {message}", actor_id,
        )

    def finalize_release(
        self,
        handle: ReleaseLockHandle,
        split: PayoutSplit,
        payout_reference: Optional[str],
        actor_id: str,
        role: ActorRole = ActorRole.SYSTEM,
        apply_proof_reset: bool = True,
    ) -> FinalizeOutcome:
        """
        Commit a release whose money has moved (or been deferred to the ledger).

        Lock completion, the wallet credit and the status advance share one
        database transaction. Also used by the reconciliation sweep.
        """
        changes: List[StatusChange] = []
        with managed_session() as session:
            if not self.lock_manager.complete(handle, payout_reference, split, session=session):
                raise EscrowReleaseError(f"Release {handle.release_id} is no longer in flight")

            tx = session.get(EscrowTransaction, handle.transaction_pk)
            if split.seller_net > ZERO:
                self.wallet_factory(session).credit_seller(
                    tx.id, tx.seller_id, split.seller_net, tx.currency,
                    metadata={
                        'release_id': handle.release_id,
                        'milestone_index': handle.milestone_index,
                        'payout_reference': payout_reference,
                        'split_source': split.source.value,
                        'released_by': actor_id,
                    },
                )

            all_released, proof_reset = self._advance_state(
                session, tx, handle.milestone_index, actor_id, apply_proof_reset, changes
            )
            status = tx.status

        self.audit.record_status_changes(changes)
        if proof_reset:
            self.audit.record_timeline_event(
                handle.transaction_pk, TimelineEventType.PROOF_REQUIRED_AGAIN,
                "First milestone released. Seller must submit proof again for remaining milestones.",
                actor_id,
            )
        return FinalizeOutcome(all_released, proof_reset, status)

    def _safe_transition(
        self, tx: EscrowTransaction, status: TransactionStatus, actor_id: str, changes: List[StatusChange]
    ) -> None:
        try:
            changes.append(transition(tx, status, actor_id))
        except InvalidTransitionError as e:
            # Money already moved; the status conflict needs an operator, not a rollback
            logger.critical(f"🚨 RELEASE_STATE_CONFLICT: {tx.transaction_id}: {e.message}")

    def _advance_state(
        self,
        session: Session,
        tx: EscrowTransaction,
        milestone_index: int,
        actor_id: str,
        apply_proof_reset: bool,
        changes: List[StatusChange],
    ) -> Tuple[bool, bool]:
        released = self.lock_manager.released_indices(session, tx.id)
        if milestone_index == FULL_RELEASE_INDEX or FULL_RELEASE_INDEX in released:
            all_released = True
        else:
            all_released = {m.milestone_index for m in tx.milestones} <= released

        tx.auto_release_scheduled = False
        tx.auto_release_at = None

        if all_released:
            for status in (TransactionStatus.RELEASED, TransactionStatus.PAYOUT_SCHEDULED):
                self._safe_transition(tx, status, actor_id, changes)
            return True, False

        if milestone_index == 0 and apply_proof_reset:
            self._reset_proof(tx, actor_id, changes)
            return False, True
        return False, False

    def _reset_proof(self, tx: EscrowTransaction, actor_id: str, changes: List[StatusChange]) -> None:
        tx.proof_submitted_at = None
        tx.auto_release_scheduled = False
        tx.auto_release_at = None
        if tx.status in (TransactionStatus.PROOF_SUBMITTED.value, TransactionStatus.UNDER_REVIEW.value):
            self._safe_transition(tx, TransactionStatus.FUNDED, actor_id, changes)
        logger.info(f"📝 PROOF_RESET: {tx.transaction_id} requires fresh proof for remaining milestones")

    def _stored_result(
        self, session: Session, tx: EscrowTransaction, row: MilestoneRelease
    ) -> ReleaseResult:
        released = self.lock_manager.released_indices(session, tx.id)
        all_released = FULL_RELEASE_INDEX in released or (
            bool(tx.milestones) and {m.milestone_index for m in tx.milestones} <= released
        )
        return ReleaseResult(
            success=True,
            transaction_id=tx.transaction_id,
            milestone_index=None if row.milestone_index == FULL_RELEASE_INDEX else row.milestone_index,
            release_id=row.id,
            amount=row.milestone_amount,
            seller_fee=row.seller_fee,
            seller_net=row.seller_net,
            payout_reference=row.payout_reference,
            payout_deferred=row.payout_reference is None,
            already_released=True,
            all_milestones_released=all_released,
            transaction_status=tx.status,
        )

    async def release_all_milestones(
        self,
        transaction_id: str,
        actor_id: str,
        role: ActorRole = ActorRole.BUYER,
    ) -> ReleaseAllResult:
        """
        Release every unreleased milestone in ascending index order.

        A failure on one milestone is recorded and the loop continues. The
        milestone-0 proof reset is applied once after the batch, only if some
        milestones remain unreleased.
        """
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            self._authorize(tx, role, actor_id)
            if not self._uses_milestones(tx):
                raise ReleaseNotEligibleError(["Milestone releases are not enabled for this transaction"])

            ensure_not_frozen(session, tx.id)
            reasons = self._status_reasons(tx, role, milestone_release=True)
            if reasons:
                raise ReleaseNotEligibleError(reasons)

            released = self.lock_manager.released_indices(session, tx.id)
            if FULL_RELEASE_INDEX in released:
                raise ReleaseNotEligibleError(["Funds were already released in full"])
            indices = sorted(m.milestone_index for m in tx.milestones)
            pending = [i for i in indices if i not in released]
            transaction_pk = tx.id
            if not pending:
                raise ReleaseNotEligibleError(["All milestones have already been released"])

        logger.info(f"📦 RELEASE_ALL_STARTED: {transaction_id} pending={pending} by={actor_id}")
        results: List[ReleaseResult] = []
        for index in pending:
            try:
                result = await self.release_funds(
                    transaction_id, index, actor_id=actor_id, role=role, apply_proof_reset=False
                )
            except EscrowReleaseError as e:
                logger.warning(f"⚠️ RELEASE_ALL_MILESTONE_FAILED: {transaction_id} milestone={index}: {e.message}")
                result = ReleaseResult(
                    success=False,
                    transaction_id=transaction_id,
                    milestone_index=index,
                    error=e.message,
                    error_type=type(e).__name__,
                )
            results.append(result)

        changes: List[StatusChange] = []
        with managed_session() as session:
            tx = session.get(EscrowTransaction, transaction_pk)
            released = self.lock_manager.released_indices(session, transaction_pk)
            all_released = set(indices) <= released
            zero_released_now = any(r.success and not r.already_released and r.milestone_index == 0 for r in results)
            if zero_released_now and not all_released:
                self._reset_proof(tx, actor_id, changes)
        self.audit.record_status_changes(changes)

        released_count = sum(1 for r in results if r.success)
        logger.info(
            f"📦 RELEASE_ALL_FINISHED: {transaction_id} released={released_count}/{len(pending)} "
            f"all_released={all_released}"
        )
        return ReleaseAllResult(
            released_count=released_count,
            total_milestones=len(indices),
            per_milestone_results=results,
            all_milestones_released=all_released,
        )

    # ------------------------------------------------------------------
    # Seller proof and buyer review
    # ------------------------------------------------------------------

    def submit_proof(self, transaction_id: str, seller_id: str) -> EscrowTransaction:
        """Record seller proof and schedule auto-release after the review window"""
        changes: List[StatusChange] = []
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            if str(seller_id) != str(tx.seller_id):
                raise UnauthorizedActionError("Only the seller can submit proof")
            if not EscrowStateValidator.can_seller_submit_proof(tx.status):
                raise InvalidTransitionError(
                    tx.status, TransactionStatus.PROOF_SUBMITTED.value,
                    EscrowStateValidator.get_valid_transitions(tx.status),
                )

            review_window = None
            if self._uses_milestones(tx):
                released = self.lock_manager.released_indices(session, tx.id)
                index = next_unreleased_index((m.milestone_index for m in tx.milestones), released)
                current = self._find_milestone(tx, index)
                review_window = current.review_window_days if current else None

            now = get_naive_utc_now()
            changes.append(transition(tx, TransactionStatus.PROOF_SUBMITTED, seller_id))
            tx.proof_submitted_at = now
            tx.auto_release_at = calculate_auto_release_at(now, review_window)
            tx.auto_release_scheduled = True

        self.audit.record_status_changes(changes)
        self.audit.record_timeline_event(
            tx.id, TimelineEventType.PROOF_SUBMITTED,
            f"Proof submitted; auto-release at {tx.auto_release_at.isoformat()}", seller_id,
        )
        logger.info(f"📎 PROOF_SUBMITTED: {transaction_id} auto_release_at={tx.auto_release_at}")
        return tx

    def request_revision(self, transaction_id: str, buyer_id: str) -> EscrowTransaction:
        """Buyer rejects the current proof; pauses auto-release until resubmission"""
        changes: List[StatusChange] = []
        with managed_session() as session:
            tx = self._load(session, transaction_id)
            if str(buyer_id) != str(tx.buyer_id):
                raise UnauthorizedActionError("Only the buyer can request a revision")

            current = None
            if self._uses_milestones(tx):
                released = self.lock_manager.released_indices(session, tx.id)
                current = self._find_milestone(
                    tx, next_unreleased_index((m.milestone_index for m in tx.milestones), released)
                )
                if current is not None and not can_request_revision(current.revision_count, current.revision_limit):
                    raise ReleaseNotEligibleError(
                        [f"Revision limit of {current.revision_limit} reached for milestone {current.milestone_index}"]
                    )

            changes.append(transition(tx, TransactionStatus.UNDER_REVIEW, buyer_id))
            tx.auto_release_scheduled = False
            tx.auto_release_at = None
            if current is not None:
                current.revision_count += 1

        self.audit.record_status_changes(changes)
        return tx


# Global release engine instance
release_engine = ReleaseEngine()
