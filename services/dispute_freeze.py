"""
Dispute freeze guard.

Mandatory first gate on every release path: an active dispute on the
transaction (or on the milestone being released) blocks money movement.
The check is read-only.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import ACTIVE_DISPUTE_STATUSES, Dispute
from utils.exceptions import DisputeFreezeError

logger = logging.getLogger(__name__)


class FreezeCheckResult(NamedTuple):
    frozen: bool
    reason: Optional[str] = None
    dispute_id: Optional[int] = None


def check_dispute_freeze(
    session: Session,
    transaction_pk: int,
    milestone_id: Optional[int] = None,
) -> FreezeCheckResult:
    """
    Look for active disputes that block a release.

    Without a milestone every active dispute on the transaction freezes it.
    With a milestone, transaction-wide disputes and disputes scoped to that
    milestone freeze it; disputes on other milestones do not.
    """
    query = session.query(Dispute).filter(
        Dispute.transaction_id == transaction_pk,
        Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
    )
    if milestone_id is not None:
        query = query.filter(or_(Dispute.milestone_id.is_(None), Dispute.milestone_id == milestone_id))

    dispute = query.order_by(Dispute.created_at.asc(), Dispute.id.asc()).first()
    if dispute is None:
        return FreezeCheckResult(frozen=False)

    scope = "milestone" if dispute.milestone_id is not None else "transaction"
    reason = f"Funds are frozen: active dispute #{dispute.id} ({dispute.status.lower()}) on this {scope}"
    logger.info(f"🧊 DISPUTE_FREEZE: transaction_pk={transaction_pk} dispute={dispute.id} scope={scope}")
    return FreezeCheckResult(frozen=True, reason=reason, dispute_id=dispute.id)


def ensure_not_frozen(session: Session, transaction_pk: int, milestone_id: Optional[int] = None) -> None:
    """Raise DisputeFreezeError when an active dispute blocks the release"""
    result = check_dispute_freeze(session, transaction_pk, milestone_id)
    if result.frozen:
        raise DisputeFreezeError(result.reason, dispute_id=result.dispute_id)
