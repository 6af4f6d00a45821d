"""
Auto-Release Service

Finds transactions whose review window has elapsed and releases them through
the release engine as the system actor, exactly as a buyer click would.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from database import managed_session
from models import EscrowTransaction
from services.release_engine import SYSTEM_ACTOR_ID, ActorRole, ReleaseEngine, release_engine
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import EscrowStateValidator
from utils.exceptions import (
    DisputeFreezeError, ExternalGatewayError, LockInProgressError, ReleaseNotEligibleError,
)
from utils.milestone_utils import next_unreleased_index

logger = logging.getLogger(__name__)


class AutoReleaseService:
    """Time-based release of transactions past their review window"""

    def __init__(self, engine: Optional[ReleaseEngine] = None, batch_size: Optional[int] = None):
        self.engine = engine or release_engine
        self.batch_size = batch_size or Config.AUTO_RELEASE_BATCH_SIZE

    def find_due_transactions(self) -> List[Tuple[str, Optional[int]]]:
        """(transaction_id, milestone index or None) for every release that is due"""
        now = get_naive_utc_now()
        due = []
        with managed_session() as session:
            transactions = session.query(EscrowTransaction).filter(
                EscrowTransaction.auto_release_scheduled.is_(True),
                EscrowTransaction.auto_release_at.isnot(None),
                EscrowTransaction.auto_release_at <= now,
                EscrowTransaction.status.in_(EscrowStateValidator.AUTO_RELEASABLE),
            ).order_by(EscrowTransaction.auto_release_at.asc()).limit(self.batch_size).all()

            for tx in transactions:
                milestone_index = None
                if tx.allows_partial_release and tx.milestones:
                    released = self.engine.lock_manager.released_indices(session, tx.id)
                    milestone_index = next_unreleased_index((m.milestone_index for m in tx.milestones), released)
                    if milestone_index is None:
                        continue
                due.append((tx.transaction_id, milestone_index))
        return due

    async def process_auto_release(self) -> Dict[str, Any]:
        """Release every due transaction; one failure never stops the batch"""
        summary: Dict[str, Any] = {'checked': 0, 'released': 0, 'skipped': 0, 'failed': 0, 'details': []}

        for transaction_id, milestone_index in self.find_due_transactions():
            summary['checked'] += 1
            try:
                result = await self.engine.release_funds(
                    transaction_id, milestone_index, actor_id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM
                )
                if result.already_released:
                    summary['skipped'] += 1
                    outcome = 'already_released'
                else:
                    summary['released'] += 1
                    outcome = 'released'
                logger.info(f"⏰ AUTO_RELEASED: {transaction_id} milestone={milestone_index} net={result.seller_net}")
            except (DisputeFreezeError, LockInProgressError, ReleaseNotEligibleError) as e:
                summary['skipped'] += 1
                outcome = f"skipped: {e.message}"
                logger.info(f"⏭️ AUTO_RELEASE_SKIPPED: {transaction_id} milestone={milestone_index}: {e.message}")
            except ExternalGatewayError as e:
                summary['failed'] += 1
                outcome = f"failed: {e.message}"
                logger.error(f"❌ AUTO_RELEASE_FAILED: {transaction_id} milestone={milestone_index}: {e.message}")
            except Exception as e:
                summary['failed'] += 1
                outcome = f"error: {e}"
                logger.error(f"❌ AUTO_RELEASE_ERROR: {transaction_id} milestone={milestone_index}: {e}")

            summary['details'].append(
                {'transaction_id': transaction_id, 'milestone_index': milestone_index, 'outcome': outcome}
            )

        if summary['checked']:
            logger.info(
                f"⏰ AUTO_RELEASE_BATCH: checked={summary['checked']} released={summary['released']} "
                f"skipped={summary['skipped']} failed={summary['failed']}"
            )
        return summary


# Global auto-release service instance
auto_release_service = AutoReleaseService()
