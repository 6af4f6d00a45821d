"""Milestone helpers: validation, review windows and release ordering"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Set

from config import Config
from utils.fee_calculator import round_currency


def calculate_auto_release_at(proof_submitted_at: datetime, review_window_days: Optional[int] = None) -> datetime:
    """Deadline after which an unchallenged proof is auto-released"""
    days = Config.DEFAULT_REVIEW_WINDOW_DAYS if review_window_days is None else review_window_days
    return proof_submitted_at + timedelta(days=days)


def can_request_revision(revision_count: int, revision_limit: Optional[int] = None) -> bool:
    limit = Config.DEFAULT_REVISION_LIMIT if revision_limit is None else revision_limit
    return revision_count < limit


def validate_milestones(subtotal: Decimal, amounts: Sequence[Decimal]) -> List[str]:
    """
    Check a milestone plan against its transaction subtotal.

    Returns a list of problems; an empty list means the plan is valid.
    """
    errors = []
    if not amounts:
        errors.append("At least one milestone is required")
        return errors

    for index, amount in enumerate(amounts):
        if Decimal(str(amount)) <= 0:
            errors.append(f"Milestone {index} amount must be positive")

    total = round_currency(sum((Decimal(str(a)) for a in amounts), Decimal("0")))
    if total != round_currency(subtotal):
        errors.append(f"Milestone amounts total {total} but subtotal is {round_currency(subtotal)}")
    return errors


def next_unreleased_index(milestone_indices: Iterable[int], released_indices: Set[int]) -> Optional[int]:
    """Lowest milestone index not yet released, or None when all are released"""
    remaining = sorted(i for i in milestone_indices if i not in released_indices)
    return remaining[0] if remaining else None


def unreleased_predecessors(milestone_index: int, released_indices: Set[int]) -> List[int]:
    """Earlier milestones that must be released first (strict sequential ordering)"""
    return [i for i in range(milestone_index) if i not in released_indices]
