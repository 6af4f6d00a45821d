"""
Release Engine Test Suite

Coverage Focus Areas:
- Full release amounts and transfer issuance
- Idempotent replays and concurrent double-clicks
- Dispute freeze enforcement
- Milestone ordering, proof reset and rounding absorption
- Gateway failures: insufficient balance, timeouts, retryable errors
- Seller proof submission and buyer revision requests
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from models import MilestoneReleaseStatus, TransactionStatus
from services.release_engine import SYSTEM_ACTOR_ID, ActorRole
from utils.exceptions import (
    DisputeFreezeError, ExternalGatewayError, InsufficientBalanceError, InvalidTransitionError,
    LockInProgressError, OtherGatewayError, ReleaseNotEligibleError, TransactionNotFoundError,
    UnauthorizedActionError,
)
from tests.fixtures import (
    BUYER_ID, SELLER_ID, get_ledger_entries, get_releases, get_seller_balance, get_timeline_types,
    get_transaction,
)

S = TransactionStatus


class TestFullRelease:

    @pytest.mark.asyncio
    async def test_scenario_a_full_release(self, release_engine, gateway, make_transaction, notifier):
        """Subtotal 100.00 at 5% seller fee releases 95.00 in a single transfer"""
        transaction_id = make_transaction()

        result = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert result.success is True
        assert result.seller_net == Decimal("95.00")
        assert result.seller_fee == Decimal("5.00")
        assert result.payout_reference is not None
        assert result.all_milestones_released is True
        assert gateway.transfer_count == 1
        assert gateway.transfer_calls[0]["amount"] == Decimal("95.00")

        tx = get_transaction(transaction_id)
        assert tx.status == S.PAYOUT_SCHEDULED.value
        assert tx.auto_release_scheduled is False
        assert tx.released_at is not None
        assert get_seller_balance() == Decimal("95.00")
        assert "FUNDS_RELEASED" in get_timeline_types(transaction_id)
        assert notifier.sent[0]["to"] == SELLER_ID

    @pytest.mark.asyncio
    async def test_replay_returns_stored_result(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction()
        first = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        second = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert second.already_released is True
        assert second.release_id == first.release_id
        assert second.payout_reference == first.payout_reference
        assert gateway.transfer_count == 1
        assert len(get_ledger_entries(transaction_id)) == 1
        assert get_seller_balance() == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_concurrent_releases_move_money_once(self, release_engine, gateway, make_transaction):
        """Two simultaneous clicks: one transfer, the other backs off"""
        gateway.delay_seconds = 0.05
        transaction_id = make_transaction()

        results = await asyncio.gather(
            release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER),
            release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], LockInProgressError)
        assert len(gateway.transfer_calls) == 1
        assert get_seller_balance() == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_recorded_payout_marks_split_source(self, release_engine, make_transaction):
        transaction_id = make_transaction(recorded_seller_payout="92.00")
        # A full release pays the stored seller_net
        result = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)
        assert result.seller_net == Decimal("95.00")
        assert get_releases(transaction_id)[0].split_source == "RECORDED"

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, release_engine):
        with pytest.raises(TransactionNotFoundError):
            await release_engine.release_funds("ES999999", actor_id=BUYER_ID, role=ActorRole.BUYER)


class TestAuthorizationAndEligibility:

    @pytest.mark.asyncio
    async def test_seller_cannot_release(self, release_engine, make_transaction):
        transaction_id = make_transaction()
        with pytest.raises(UnauthorizedActionError):
            await release_engine.release_funds(transaction_id, actor_id=SELLER_ID, role=ActorRole.SELLER)

    @pytest.mark.asyncio
    async def test_other_buyer_cannot_release(self, release_engine, make_transaction):
        transaction_id = make_transaction()
        with pytest.raises(UnauthorizedActionError):
            await release_engine.release_funds(transaction_id, actor_id="buyer-2", role=ActorRole.BUYER)

    @pytest.mark.asyncio
    async def test_funded_transaction_not_releasable_by_buyer(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(status=S.FUNDED, proof=False)

        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert "Transaction status FUNDED does not allow release" in exc_info.value.reasons
        assert gateway.transfer_calls == []

    def test_eligibility_reports_reasons(self, release_engine, make_transaction):
        transaction_id = make_transaction(status=S.FUNDED, proof=False)

        eligibility = release_engine.compute_release_eligibility(transaction_id)

        assert eligibility.eligible is False
        assert "Proof has not been submitted yet" in eligibility.reasons

    def test_eligibility_for_releasable_transaction(self, release_engine, make_transaction):
        eligibility = release_engine.compute_release_eligibility(make_transaction())
        assert eligibility == (True, [])

    def test_eligibility_unknown_transaction(self, release_engine):
        eligibility = release_engine.compute_release_eligibility("ES999999")
        assert eligibility.eligible is False

    @pytest.mark.asyncio
    async def test_system_release_waits_for_review_window(self, release_engine, make_transaction):
        transaction_id = make_transaction(auto_release_due=False)

        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await release_engine.release_funds(transaction_id, actor_id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM)

        assert "Review window has not elapsed yet" in exc_info.value.reasons


class TestDisputeFreeze:

    @pytest.mark.asyncio
    async def test_transaction_dispute_blocks_release(
        self, release_engine, dispute_service, gateway, make_transaction
    ):
        transaction_id = make_transaction()
        dispute_service.open_dispute(transaction_id, BUYER_ID, "Not delivered")

        with pytest.raises(DisputeFreezeError):
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert gateway.transfer_calls == []
        assert get_releases(transaction_id) == []
        assert get_transaction(transaction_id).status == S.DISPUTED.value

    @pytest.mark.asyncio
    async def test_milestone_dispute_blocks_only_that_milestone(
        self, release_engine, dispute_service, make_transaction
    ):
        transaction_id = make_transaction(milestones=["50.00", "50.00"])
        dispute_service.open_dispute(transaction_id, BUYER_ID, "Second half is wrong", milestone_index=1)

        first = await release_engine.release_funds(transaction_id, 0, actor_id=BUYER_ID, role=ActorRole.BUYER)
        assert first.success is True

        with pytest.raises(DisputeFreezeError):
            await release_engine.release_funds(transaction_id, 1, actor_id=BUYER_ID, role=ActorRole.BUYER)

    def test_eligibility_includes_freeze_reason(self, release_engine, dispute_service, make_transaction):
        transaction_id = make_transaction()
        dispute_service.open_dispute(transaction_id, BUYER_ID, "Not delivered")

        eligibility = release_engine.compute_release_eligibility(transaction_id)

        assert eligibility.eligible is False
        assert any("frozen" in reason for reason in eligibility.reasons)


class TestMilestoneRelease:

    @pytest.mark.asyncio
    async def test_scenario_b_first_milestone_resets_proof(self, release_engine, make_transaction):
        """Releasing milestone 0 clears auto-release and returns the transaction to FUNDED"""
        transaction_id = make_transaction(milestones=["40.00", "40.00", "20.00"])

        result = await release_engine.release_funds(transaction_id, 0, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert result.seller_net == Decimal("38.00")
        assert result.all_milestones_released is False
        tx = get_transaction(transaction_id)
        assert tx.auto_release_scheduled is False
        assert tx.auto_release_at is None
        assert tx.proof_submitted_at is None
        assert tx.status == S.FUNDED.value
        assert "PROOF_REQUIRED_AGAIN" in get_timeline_types(transaction_id)

        # Milestone 1 is still accepted from FUNDED
        second = await release_engine.release_funds(transaction_id, 1, actor_id=BUYER_ID, role=ActorRole.BUYER)
        assert second.success is True
        assert get_transaction(transaction_id).status == S.FUNDED.value

    @pytest.mark.asyncio
    async def test_milestones_release_in_order(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(milestones=["40.00", "40.00", "20.00"])

        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await release_engine.release_funds(transaction_id, 2, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert "Milestone 0, 1 must be released first" in exc_info.value.reasons
        assert gateway.transfer_calls == []

    @pytest.mark.asyncio
    async def test_last_milestone_absorbs_rounding(self, release_engine, make_transaction):
        transaction_id = make_transaction(subtotal="100.00", milestones=["33.33", "33.33", "33.34"])

        nets = []
        for index in range(3):
            result = await release_engine.release_funds(
                transaction_id, index, actor_id=BUYER_ID, role=ActorRole.BUYER
            )
            nets.append(result.seller_net)

        assert nets[:2] == [Decimal("31.66"), Decimal("31.66")]
        assert sum(nets) == Decimal("95.00")
        assert get_seller_balance() == Decimal("95.00")
        assert get_transaction(transaction_id).status == S.PAYOUT_SCHEDULED.value

    @pytest.mark.asyncio
    async def test_unknown_milestone(self, release_engine, make_transaction):
        transaction_id = make_transaction(milestones=["50.00", "50.00"])
        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await release_engine.release_funds(transaction_id, 5, actor_id=BUYER_ID, role=ActorRole.BUYER)
        assert "Milestone 5 does not exist" in exc_info.value.reasons

    @pytest.mark.asyncio
    async def test_plan_not_matching_subtotal_blocks_milestones(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(subtotal="100.00", milestones=["40.00", "50.00"])

        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await release_engine.release_funds(transaction_id, 0, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert "Milestone amounts total 90.00 but subtotal is 100.00" in exc_info.value.reasons
        assert gateway.transfer_calls == []

    @pytest.mark.asyncio
    async def test_full_release_after_partial_pays_remainder(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(milestones=["40.00", "60.00"])
        await release_engine.release_funds(transaction_id, 0, actor_id=BUYER_ID, role=ActorRole.BUYER)
        release_engine.submit_proof(transaction_id, SELLER_ID)

        result = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert result.seller_net == Decimal("57.00")
        assert result.amount == Decimal("60.00")
        assert get_seller_balance() == Decimal("95.00")
        assert get_transaction(transaction_id).status == S.PAYOUT_SCHEDULED.value

    @pytest.mark.asyncio
    async def test_scenario_c_release_all_with_insufficient_balance(self, release_engine, gateway, make_transaction):
        """Milestone 1 falls back to a wallet-only credit; the batch still completes"""
        transaction_id = make_transaction(milestones=["40.00", "40.00", "20.00"])
        transfer = AsyncMock(side_effect=["tr_m0", InsufficientBalanceError("balance too low"), "tr_m2"])

        with patch.object(gateway, "create_transfer", transfer):
            result = await release_engine.release_all_milestones(transaction_id, actor_id=BUYER_ID)

        assert result.released_count == 3
        assert result.total_milestones == 3
        assert result.all_milestones_released is True
        by_index = {r.milestone_index: r for r in result.per_milestone_results}
        assert by_index[0].payout_reference == "tr_m0"
        assert by_index[1].payout_reference is None
        assert by_index[1].payout_deferred is True
        assert by_index[2].payout_reference == "tr_m2"

        releases = get_releases(transaction_id)
        assert [r.status for r in releases] == [MilestoneReleaseStatus.RELEASED.value] * 3
        assert releases[1].payout_reference is None
        assert get_seller_balance() == Decimal("95.00")
        assert get_transaction(transaction_id).status == S.PAYOUT_SCHEDULED.value
        assert "PAYOUT_DEFERRED" in get_timeline_types(transaction_id)

    @pytest.mark.asyncio
    async def test_release_all_continues_after_failure(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(milestones=["40.00", "40.00", "20.00"])
        transfer = AsyncMock(side_effect=["tr_m0", OtherGatewayError("bank offline"), "tr_m2"])

        with patch.object(gateway, "create_transfer", transfer):
            result = await release_engine.release_all_milestones(transaction_id, actor_id=BUYER_ID)

        assert result.released_count == 1
        assert result.all_milestones_released is False
        outcomes = [(r.milestone_index, r.success, r.error_type) for r in result.per_milestone_results]
        assert outcomes[0] == (0, True, None)
        assert outcomes[1] == (1, False, "OtherGatewayError")
        # Strict ordering: milestone 2 waits for milestone 1
        assert outcomes[2] == (2, False, "ReleaseNotEligibleError")

        tx = get_transaction(transaction_id)
        assert tx.status == S.FUNDED.value
        assert tx.proof_submitted_at is None

    @pytest.mark.asyncio
    async def test_release_all_requires_milestones(self, release_engine, make_transaction):
        transaction_id = make_transaction()
        with pytest.raises(ReleaseNotEligibleError):
            await release_engine.release_all_milestones(transaction_id, actor_id=BUYER_ID)


class TestGatewayFailures:

    @pytest.mark.asyncio
    async def test_missing_payout_account_defers_payout(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction(payout_account=None)

        result = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert result.payout_deferred is True
        assert result.payout_reference is None
        assert gateway.transfer_calls == []
        assert get_seller_balance() == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_other_failure_leaves_retryable_lock(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction()
        gateway.fail_next(OtherGatewayError("destination account closed"))

        with pytest.raises(OtherGatewayError):
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        release = get_releases(transaction_id)[0]
        assert release.status == MilestoneReleaseStatus.FAILED.value
        assert get_seller_balance() == Decimal("0.00")
        assert get_transaction(transaction_id).status == S.PROOF_SUBMITTED.value
        assert "RELEASE_FAILED" in get_timeline_types(transaction_id)

        retry = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert retry.success is True
        release = get_releases(transaction_id)[0]
        assert release.attempt_count == 2
        assert release.idempotency_key == f"escrow-release-{release.id}"
        assert get_seller_balance() == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction()
        gateway.fail_next(RuntimeError("connection reset"))

        with pytest.raises(OtherGatewayError):
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert get_releases(transaction_id)[0].status == MilestoneReleaseStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_lost_transfer_response_pays_once(self, release_engine, gateway, make_transaction):
        """The gateway moved the money but the caller only saw a connection reset"""
        transaction_id = make_transaction()
        send_transfer = gateway.create_transfer

        async def transfer_then_reset(*args, **kwargs):
            await send_transfer(*args, **kwargs)
            raise OtherGatewayError("connection reset by peer")

        with patch.object(gateway, "create_transfer", side_effect=transfer_then_reset):
            with pytest.raises(OtherGatewayError):
                await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        retry = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        release = get_releases(transaction_id)[0]
        assert retry.success is True
        assert release.attempt_count == 2
        assert gateway.transfer_count == 1
        assert [call["key"] for call in gateway.transfer_calls] == [f"escrow-release-{release.id}"] * 2
        assert get_seller_balance() == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_lock_settled_elsewhere_sends_no_transfer(
        self, release_engine, gateway, lock_manager, make_transaction
    ):
        transaction_id = make_transaction()

        with patch.object(lock_manager, "mark_created", return_value=False):
            with pytest.raises(LockInProgressError):
                await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert gateway.transfer_calls == []
        assert get_seller_balance() == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_timeout_keeps_lock_in_flight(self, release_engine, gateway, make_transaction):
        transaction_id = make_transaction()
        gateway.delay_seconds = 0.5
        release_engine.gateway_timeout = 0.05

        with pytest.raises(ExternalGatewayError) as exc_info:
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert exc_info.value.timed_out is True
        assert get_releases(transaction_id)[0].status == MilestoneReleaseStatus.CREATED.value
        assert get_seller_balance() == Decimal("0.00")

        # Retries back off until reconciliation settles the attempt
        with pytest.raises(LockInProgressError):
            await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_release(self, release_engine, notifier, make_transaction):
        def broken_sender(recipient_id, subject, body):
            raise RuntimeError("smtp down")

        notifier.sender = broken_sender
        transaction_id = make_transaction()

        result = await release_engine.release_funds(transaction_id, actor_id=BUYER_ID, role=ActorRole.BUYER)

        assert result.success is True
        assert notifier.sent == []


class TestProofAndRevision:

    def test_submit_proof_schedules_auto_release(self, release_engine, make_transaction):
        transaction_id = make_transaction(status=S.FUNDED, proof=False)

        tx = release_engine.submit_proof(transaction_id, SELLER_ID)

        assert tx.status == S.PROOF_SUBMITTED.value
        assert tx.auto_release_scheduled is True
        assert (tx.auto_release_at - tx.proof_submitted_at).days == 3

    def test_only_seller_submits_proof(self, release_engine, make_transaction):
        transaction_id = make_transaction(status=S.FUNDED, proof=False)
        with pytest.raises(UnauthorizedActionError):
            release_engine.submit_proof(transaction_id, BUYER_ID)

    def test_proof_rejected_in_disputed_state(self, release_engine, make_transaction):
        transaction_id = make_transaction(status=S.DISPUTED, proof=False)
        with pytest.raises(InvalidTransitionError):
            release_engine.submit_proof(transaction_id, SELLER_ID)

    def test_revision_pauses_auto_release_and_counts(self, release_engine, make_transaction):
        transaction_id = make_transaction(milestones=["50.00", "50.00"])

        tx = release_engine.request_revision(transaction_id, BUYER_ID)

        assert tx.status == S.UNDER_REVIEW.value
        assert tx.auto_release_scheduled is False
        assert get_transaction(transaction_id).milestones[0].revision_count == 1

        # Default limit is one revision per milestone
        release_engine.submit_proof(transaction_id, SELLER_ID)
        with pytest.raises(ReleaseNotEligibleError):
            release_engine.request_revision(transaction_id, BUYER_ID)
