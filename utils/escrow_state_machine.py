#!/usr/bin/env python3
"""
Escrow State Machine
Transition table, role predicates and the single writer of transaction status
"""

import logging
from typing import Dict, FrozenSet, List, Optional, Set

from models import EscrowTransaction, TransactionStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)

S = TransactionStatus


class EscrowStateValidator:
    """Validates escrow state transitions and prevents invalid changes"""

    # Valid state transition map
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        # From None/Creation
        None: {S.DRAFT.value, S.AWAITING_PAYMENT.value},
        # Checkout flow
        S.DRAFT.value: {
            S.AWAITING_PAYMENT.value,
            S.FUNDED.value,
            S.CANCELED.value,
        },
        S.AWAITING_PAYMENT.value: {
            S.FUNDED.value,
            S.CANCELED.value,
        },
        # Delivery flow
        S.FUNDED.value: {
            S.PROOF_SUBMITTED.value,
            S.DISPUTED.value,
            S.RELEASED.value,  # Milestone release before fresh proof
            S.CANCELED.value,  # Admin cancellation
        },
        S.PROOF_SUBMITTED.value: {
            S.UNDER_REVIEW.value,
            S.DISPUTED.value,
            S.RELEASED.value,
            S.FUNDED.value,  # Proof reset after first milestone release
        },
        S.UNDER_REVIEW.value: {
            S.PROOF_SUBMITTED.value,  # Resubmission after rejection
            S.DISPUTED.value,
            S.RELEASED.value,
            S.FUNDED.value,
        },
        # Dispute resolution
        S.DISPUTED.value: {S.RESOLVED.value},
        S.RESOLVED.value: {
            S.RELEASED.value,
            S.PAYOUT_SCHEDULED.value,
            S.CANCELED.value,
            S.REFUNDED.value,
        },
        # Payout flow
        S.RELEASED.value: {S.PAYOUT_SCHEDULED.value},
        S.PAYOUT_SCHEDULED.value: {S.PAID_OUT.value},
        # Terminal states (no transitions allowed)
        S.PAID_OUT.value: set(),
        S.CANCELED.value: set(),
        S.REFUNDED.value: set(),
    }

    BUYER_RELEASABLE: FrozenSet[str] = frozenset({S.PROOF_SUBMITTED.value, S.UNDER_REVIEW.value})
    SELLER_PROOF_ALLOWED: FrozenSet[str] = frozenset({S.FUNDED.value, S.UNDER_REVIEW.value})
    AUTO_RELEASABLE: FrozenSet[str] = frozenset({S.PROOF_SUBMITTED.value, S.UNDER_REVIEW.value})
    BUYER_DISPUTABLE: FrozenSet[str] = frozenset(
        {S.FUNDED.value, S.PROOF_SUBMITTED.value, S.UNDER_REVIEW.value}
    )
    # A milestone may be released before fresh proof arrives for the rest
    MILESTONE_RELEASABLE: FrozenSet[str] = frozenset(
        {S.FUNDED.value, S.PROOF_SUBMITTED.value, S.UNDER_REVIEW.value}
    )
    ADMIN_RELEASABLE: FrozenSet[str] = frozenset(
        {S.PROOF_SUBMITTED.value, S.UNDER_REVIEW.value, S.RESOLVED.value}
    )

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is in the table"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str) -> None:
        """Raise InvalidTransitionError naming the edge and the valid set"""
        if not cls.is_valid_transition(current_status, new_status):
            raise InvalidTransitionError(current_status, new_status, cls.get_valid_transitions(current_status))

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return set(cls.VALID_TRANSITIONS.get(current_status, set()))

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in cls.VALID_TRANSITIONS and len(cls.VALID_TRANSITIONS[status]) == 0

    @classmethod
    def can_buyer_release(cls, status: str) -> bool:
        return status in cls.BUYER_RELEASABLE

    @classmethod
    def can_seller_submit_proof(cls, status: str) -> bool:
        """FUNDED for first submission, UNDER_REVIEW for resubmission after rejection"""
        return status in cls.SELLER_PROOF_ALLOWED

    @classmethod
    def can_auto_release(cls, status: str) -> bool:
        return status in cls.AUTO_RELEASABLE

    @classmethod
    def can_buyer_dispute(cls, status: str) -> bool:
        return status in cls.BUYER_DISPUTABLE


class StatusChange:
    """A status edge applied to a transaction, kept for timeline recording"""

    __slots__ = ("transaction_pk", "from_status", "to_status", "actor_id")

    def __init__(self, transaction_pk: int, from_status: str, to_status: str, actor_id: Optional[str]):
        self.transaction_pk = transaction_pk
        self.from_status = from_status
        self.to_status = to_status
        self.actor_id = actor_id

    def __repr__(self):
        return f"<StatusChange({self.from_status} -> {self.to_status})>"


def transition(
    transaction: EscrowTransaction,
    new_status: TransactionStatus,
    actor_id: Optional[str] = None,
) -> StatusChange:
    """
    Move a transaction to a new status.

    This is the only place transaction status is written. The caller owns the
    session and commits; the returned StatusChange is recorded to the timeline
    after commit.
    """
    current = transaction.status
    EscrowStateValidator.validate_transition(current, new_status.value)
    transaction.status = new_status.value
    transaction.updated_at = get_naive_utc_now()
    if new_status == TransactionStatus.RELEASED:
        transaction.released_at = get_naive_utc_now()
    logger.info(
        f"🔄 STATUS_TRANSITION: {transaction.transaction_id} {current} -> {new_status.value} by {actor_id}"
    )
    return StatusChange(transaction.id, current, new_status.value, actor_id)


def transition_path(
    transaction: EscrowTransaction,
    path: List[TransactionStatus],
    actor_id: Optional[str] = None,
) -> List[StatusChange]:
    """Apply a sequence of transitions, each validated against the table"""
    return [transition(transaction, status, actor_id) for status in path]
