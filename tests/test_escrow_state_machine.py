"""
Test Suite for Escrow State Machine
Transition table soundness, role predicates and the transition writer
"""

import itertools

import pytest

from models import EscrowTransaction, TransactionStatus
from utils.escrow_state_machine import EscrowStateValidator, transition, transition_path
from utils.exceptions import InvalidTransitionError

S = TransactionStatus
ALL_STATUSES = [None] + [status.value for status in TransactionStatus]


def _transaction(status: TransactionStatus) -> EscrowTransaction:
    return EscrowTransaction(id=1, transaction_id="ES000001", status=status.value)


class TestEscrowStateValidator:
    """Test complete EscrowStateValidator coverage"""

    def test_every_status_has_an_entry(self):
        for status in TransactionStatus:
            assert status.value in EscrowStateValidator.VALID_TRANSITIONS

    @pytest.mark.parametrize("current,new", list(itertools.product(ALL_STATUSES, ALL_STATUSES[1:])))
    def test_validate_matches_table(self, current, new):
        """validate_transition accepts exactly the edges in the table"""
        allowed = new in EscrowStateValidator.VALID_TRANSITIONS.get(current, set())
        if allowed:
            EscrowStateValidator.validate_transition(current, new)
        else:
            with pytest.raises(InvalidTransitionError) as exc_info:
                EscrowStateValidator.validate_transition(current, new)
            assert exc_info.value.from_status == current
            assert exc_info.value.to_status == new

    def test_terminal_states(self):
        for status in (S.PAID_OUT, S.CANCELED, S.REFUNDED):
            assert EscrowStateValidator.is_terminal_state(status.value) is True
            assert EscrowStateValidator.get_valid_transitions(status.value) == set()
        assert EscrowStateValidator.is_terminal_state(S.FUNDED.value) is False

    def test_disputed_only_moves_to_resolved(self):
        assert EscrowStateValidator.get_valid_transitions(S.DISPUTED.value) == {S.RESOLVED.value}

    def test_error_lists_valid_transitions(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            EscrowStateValidator.validate_transition(S.PAID_OUT.value, S.FUNDED.value)
        assert "PAID_OUT -> FUNDED" in str(exc_info.value)
        assert "terminal" in str(exc_info.value)


class TestRolePredicates:

    def test_buyer_release(self):
        assert EscrowStateValidator.can_buyer_release(S.PROOF_SUBMITTED.value)
        assert EscrowStateValidator.can_buyer_release(S.UNDER_REVIEW.value)
        assert not EscrowStateValidator.can_buyer_release(S.FUNDED.value)
        assert not EscrowStateValidator.can_buyer_release(S.DISPUTED.value)

    def test_seller_proof(self):
        assert EscrowStateValidator.can_seller_submit_proof(S.FUNDED.value)
        assert EscrowStateValidator.can_seller_submit_proof(S.UNDER_REVIEW.value)
        assert not EscrowStateValidator.can_seller_submit_proof(S.PROOF_SUBMITTED.value)

    def test_auto_release(self):
        assert EscrowStateValidator.can_auto_release(S.PROOF_SUBMITTED.value)
        assert not EscrowStateValidator.can_auto_release(S.FUNDED.value)
        assert not EscrowStateValidator.can_auto_release(S.RESOLVED.value)

    def test_buyer_dispute(self):
        for status in (S.FUNDED, S.PROOF_SUBMITTED, S.UNDER_REVIEW):
            assert EscrowStateValidator.can_buyer_dispute(status.value)
        assert not EscrowStateValidator.can_buyer_dispute(S.RELEASED.value)


class TestTransition:

    def test_transition_writes_status(self):
        tx = _transaction(S.PROOF_SUBMITTED)
        change = transition(tx, S.RELEASED, "buyer-1")
        assert tx.status == S.RELEASED.value
        assert tx.released_at is not None
        assert (change.from_status, change.to_status, change.actor_id) == (
            S.PROOF_SUBMITTED.value, S.RELEASED.value, "buyer-1"
        )

    def test_invalid_transition_leaves_status(self):
        tx = _transaction(S.DISPUTED)
        with pytest.raises(InvalidTransitionError):
            transition(tx, S.RELEASED, "buyer-1")
        assert tx.status == S.DISPUTED.value

    def test_transition_path(self):
        tx = _transaction(S.PROOF_SUBMITTED)
        changes = transition_path(tx, [S.RELEASED, S.PAYOUT_SCHEDULED, S.PAID_OUT], "system")
        assert [c.to_status for c in changes] == [S.RELEASED.value, S.PAYOUT_SCHEDULED.value, S.PAID_OUT.value]
        assert tx.status == S.PAID_OUT.value
