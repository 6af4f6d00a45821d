"""
Release reconciliation job

Resolves release locks left in flight past a threshold, usually because the
gateway call timed out. CREATED rows are settled by asking the gateway whether
a transfer exists for the row's idempotency key: a found transfer completes the
release (wallet credit and status advance included), no transfer marks the row
FAILED so the next attempt can reclaim it. CREATING rows never reached the
gateway and are failed directly.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from config import Config
from models import MilestoneRelease, MilestoneReleaseStatus
from services.audit_logger import TimelineEventType
from services.release_engine import SYSTEM_ACTOR_ID, ReleaseEngine, release_engine
from services.release_lock_manager import ReleaseLockHandle
from utils.fee_calculator import PayoutSplit, PayoutSplitSource

logger = logging.getLogger(__name__)


class ReleaseReconciliationJob:
    """Out-of-band settlement of stuck release attempts"""

    def __init__(self, engine: Optional[ReleaseEngine] = None, threshold_minutes: Optional[int] = None):
        self.engine = engine or release_engine
        self.threshold_minutes = (
            Config.RELEASE_STUCK_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes
        )

    @staticmethod
    def _handle_for(row: MilestoneRelease) -> ReleaseLockHandle:
        return ReleaseLockHandle(
            release_id=row.id,
            transaction_pk=row.transaction_id,
            milestone_index=row.milestone_index,
            attempt=row.attempt_count,
            idempotency_key=row.idempotency_key,
        )

    @staticmethod
    def _split_for(row: MilestoneRelease) -> PayoutSplit:
        return PayoutSplit(
            amount=Decimal(row.milestone_amount),
            seller_fee=Decimal(row.seller_fee),
            seller_net=Decimal(row.seller_net),
            source=PayoutSplitSource(row.split_source),
        )

    async def run(self) -> Dict[str, Any]:
        results = {'checked': 0, 'completed': 0, 'failed': 0, 'errors': 0}
        lock_manager = self.engine.lock_manager

        for row in lock_manager.find_stuck(self.threshold_minutes):
            results['checked'] += 1
            handle = self._handle_for(row)
            try:
                if row.status == MilestoneReleaseStatus.CREATING.value:
                    lock_manager.release_failed(handle, "Reconciliation: transfer was never issued")
                    results['failed'] += 1
                    continue

                transfer_id = await asyncio.wait_for(
                    self.engine.gateway.get_transfer_by_idempotency_key(row.idempotency_key),
                    timeout=self.engine.gateway_timeout,
                )
                if transfer_id:
                    self.engine.finalize_release(handle, self._split_for(row), transfer_id, SYSTEM_ACTOR_ID)
                    self.engine.audit.record_timeline_event(
                        row.transaction_id, TimelineEventType.RELEASE_RECONCILED,
                        f"Release {row.id} reconciled with transfer {transfer_id}", SYSTEM_ACTOR_ID,
                    )
                    results['completed'] += 1
                    logger.info(f"🧾 RELEASE_RECONCILED: release_id={row.id} transfer={transfer_id}")
                else:
                    lock_manager.release_failed(handle, "Reconciliation: no transfer found for idempotency key")
                    results['failed'] += 1
                    logger.warning(f"🧾 RELEASE_RECONCILE_NO_TRANSFER: release_id={row.id} marked retryable")

            except Exception as e:
                results['errors'] += 1
                logger.error(f"❌ RELEASE_RECONCILE_ERROR: release_id={row.id}: {e}")

        if results['checked']:
            logger.info(f"🧾 RELEASE_RECONCILIATION: {results}")
        return results


async def run_release_reconciliation() -> Dict[str, Any]:
    """Scheduler entry point"""
    return await ReleaseReconciliationJob().run()
