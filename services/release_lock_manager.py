"""
Release Lock Manager Service
At-most-once release attempts using the milestone_releases unique constraint

A release attempt claims its (transaction, milestone index) key by inserting a
CREATING row. A second claimant hits the unique constraint and inspects the
existing row instead of calling the payment gateway again.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Generator, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import SessionLocal
from models import FULL_RELEASE_INDEX, MilestoneRelease, MilestoneReleaseStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.fee_calculator import PayoutSplit

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (MilestoneReleaseStatus.CREATING.value, MilestoneReleaseStatus.CREATED.value)


@dataclass
class ReleaseLockHandle:
    """Outcome of a lock acquisition"""
    release_id: int
    transaction_pk: int
    milestone_index: int
    attempt: int
    idempotency_key: Optional[str]
    already_released: bool = False
    in_progress: bool = False
    payout_reference: Optional[str] = None

    @property
    def acquired(self) -> bool:
        return not (self.already_released or self.in_progress)


def build_idempotency_key(release_id: int) -> str:
    """Gateway idempotency key, derived from the release row rather than the request.

    Stable across reclaimed attempts: a retry after a lost gateway response
    must resolve to the transfer that may already exist.
    """
    return f"escrow-release-{release_id}"


def describe_index(milestone_index: int) -> str:
    return "full" if milestone_index == FULL_RELEASE_INDEX else str(milestone_index)


class ReleaseLockManager:
    """
    Database-backed release lock with explicit lock states

    CREATING  claimed, amounts not yet persisted
    CREATED   amounts persisted, gateway transfer about to be issued
    RELEASED  terminal; at most one per key
    FAILED    retryable; reclaimed by a conditional update
    """

    def __init__(self):
        self.session_factory = SessionLocal

        self.metrics = {
            'locks_acquired': 0,
            'locks_reclaimed': 0,
            'already_released': 0,
            'in_progress_contentions': 0,
            'releases_completed': 0,
            'releases_failed': 0,
        }

    @contextmanager
    def _session_scope(self, session: Optional[Session] = None) -> Generator[Session, None, None]:
        """Use the caller's session (caller commits) or open a managed one"""
        if session is not None:
            yield session
            return

        own_session = self.session_factory()
        try:
            yield own_session
            own_session.commit()
        except Exception as e:
            own_session.rollback()
            logger.error(f"❌ RELEASE_LOCK_SESSION_ERROR: {e}")
            raise
        finally:
            own_session.close()

    def acquire(self, transaction_pk: int, milestone_index: int, released_by: str) -> ReleaseLockHandle:
        """
        Claim the release key for (transaction, milestone index).

        Returns a handle that is either acquired, flagged already_released
        (with the existing release id and payout reference), or flagged
        in_progress when another attempt is mid-flight.
        """
        session = self.session_factory()
        try:
            row = MilestoneRelease(
                transaction_id=transaction_pk,
                milestone_index=milestone_index,
                status=MilestoneReleaseStatus.CREATING.value,
                released_by=released_by,
                attempt_count=1,
            )
            session.add(row)
            session.flush()
            row.idempotency_key = build_idempotency_key(row.id)
            session.commit()

            self.metrics['locks_acquired'] += 1
            logger.info(
                f"🔒 RELEASE_LOCK_ACQUIRED: transaction_pk={transaction_pk} "
                f"milestone={describe_index(milestone_index)} release_id={row.id} by={released_by}"
            )
            return ReleaseLockHandle(
                release_id=row.id,
                transaction_pk=transaction_pk,
                milestone_index=milestone_index,
                attempt=1,
                idempotency_key=row.idempotency_key,
            )

        except IntegrityError:
            # Key already claimed - this is the atomic guarantee in action
            session.rollback()
            return self._inspect_existing(session, transaction_pk, milestone_index, released_by)

        finally:
            session.close()

    def _inspect_existing(
        self, session: Session, transaction_pk: int, milestone_index: int, released_by: str
    ) -> ReleaseLockHandle:
        existing = self._get_row(session, transaction_pk, milestone_index)
        if existing is None:
            raise RuntimeError(
                f"Release key ({transaction_pk}, {milestone_index}) conflicted but no row was found"
            )

        if existing.status == MilestoneReleaseStatus.RELEASED.value:
            self.metrics['already_released'] += 1
            logger.info(
                f"✅ RELEASE_ALREADY_DONE: transaction_pk={transaction_pk} "
                f"milestone={describe_index(milestone_index)} release_id={existing.id}"
            )
            return ReleaseLockHandle(
                release_id=existing.id,
                transaction_pk=transaction_pk,
                milestone_index=milestone_index,
                attempt=existing.attempt_count,
                idempotency_key=existing.idempotency_key,
                already_released=True,
                payout_reference=existing.payout_reference,
            )

        if existing.status == MilestoneReleaseStatus.FAILED.value:
            next_attempt = existing.attempt_count + 1
            reclaimed = session.query(MilestoneRelease).filter(
                MilestoneRelease.id == existing.id,
                MilestoneRelease.status == MilestoneReleaseStatus.FAILED.value,
                MilestoneRelease.attempt_count == existing.attempt_count,
            ).update(
                {
                    'status': MilestoneReleaseStatus.CREATING.value,
                    'attempt_count': next_attempt,
                    'released_by': released_by,
                    'error_message': None,
                    'updated_at': get_naive_utc_now(),
                },
                synchronize_session=False,
            )
            session.commit()

            if reclaimed == 1:
                self.metrics['locks_reclaimed'] += 1
                logger.info(
                    f"🔁 RELEASE_LOCK_RECLAIMED: release_id={existing.id} attempt={next_attempt} by={released_by}"
                )
                return ReleaseLockHandle(
                    release_id=existing.id,
                    transaction_pk=transaction_pk,
                    milestone_index=milestone_index,
                    attempt=next_attempt,
                    idempotency_key=existing.idempotency_key or build_idempotency_key(existing.id),
                )

        # CREATING/CREATED, or a racer reclaimed the FAILED row first
        self.metrics['in_progress_contentions'] += 1
        logger.warning(
            f"⏳ RELEASE_LOCK_IN_PROGRESS: transaction_pk={transaction_pk} "
            f"milestone={describe_index(milestone_index)} release_id={existing.id}"
        )
        return ReleaseLockHandle(
            release_id=existing.id,
            transaction_pk=transaction_pk,
            milestone_index=milestone_index,
            attempt=existing.attempt_count,
            idempotency_key=existing.idempotency_key,
            in_progress=True,
        )

    def mark_created(self, handle: ReleaseLockHandle, split: PayoutSplit, session: Optional[Session] = None) -> bool:
        """Persist computed amounts and move CREATING -> CREATED before the transfer"""
        with self._session_scope(session) as s:
            updated = s.query(MilestoneRelease).filter(
                MilestoneRelease.id == handle.release_id,
                MilestoneRelease.status == MilestoneReleaseStatus.CREATING.value,
            ).update(
                {
                    'status': MilestoneReleaseStatus.CREATED.value,
                    'milestone_amount': split.amount,
                    'seller_fee': split.seller_fee,
                    'seller_net': split.seller_net,
                    'split_source': split.source.value,
                    'updated_at': get_naive_utc_now(),
                },
                synchronize_session=False,
            )
        return updated == 1

    def complete(
        self,
        handle: ReleaseLockHandle,
        payout_reference: Optional[str],
        split: PayoutSplit,
        session: Optional[Session] = None,
    ) -> bool:
        """Move an in-flight row to RELEASED and stamp the payout reference"""
        now = get_naive_utc_now()
        with self._session_scope(session) as s:
            updated = s.query(MilestoneRelease).filter(
                MilestoneRelease.id == handle.release_id,
                MilestoneRelease.status.in_(IN_FLIGHT_STATUSES),
            ).update(
                {
                    'status': MilestoneReleaseStatus.RELEASED.value,
                    'payout_reference': payout_reference,
                    'milestone_amount': split.amount,
                    'seller_fee': split.seller_fee,
                    'seller_net': split.seller_net,
                    'split_source': split.source.value,
                    'released_at': now,
                    'updated_at': now,
                },
                synchronize_session=False,
            )

        if updated == 1:
            self.metrics['releases_completed'] += 1
            logger.info(
                f"💸 RELEASE_LOCK_COMPLETED: release_id={handle.release_id} payout_ref={payout_reference}"
            )
            return True

        logger.error(f"🚨 RELEASE_LOCK_COMPLETE_REJECTED: release_id={handle.release_id} is no longer in flight")
        return False

    def release_failed(
        self, handle: ReleaseLockHandle, error_message: str, session: Optional[Session] = None
    ) -> bool:
        """Move an in-flight row to FAILED so a later attempt can reclaim it"""
        with self._session_scope(session) as s:
            updated = s.query(MilestoneRelease).filter(
                MilestoneRelease.id == handle.release_id,
                MilestoneRelease.status.in_(IN_FLIGHT_STATUSES),
            ).update(
                {
                    'status': MilestoneReleaseStatus.FAILED.value,
                    'error_message': error_message[:2000],
                    'updated_at': get_naive_utc_now(),
                },
                synchronize_session=False,
            )

        if updated == 1:
            self.metrics['releases_failed'] += 1
            logger.warning(f"🔓 RELEASE_LOCK_FAILED: release_id={handle.release_id} error={error_message}")
            return True
        return False

    def get_released(
        self, session: Session, transaction_pk: int, milestone_index: int
    ) -> Optional[MilestoneRelease]:
        row = self._get_row(session, transaction_pk, milestone_index)
        if row is not None and row.status == MilestoneReleaseStatus.RELEASED.value:
            return row
        return None

    def released_rows(self, session: Session, transaction_pk: int) -> List[MilestoneRelease]:
        return session.query(MilestoneRelease).filter(
            MilestoneRelease.transaction_id == transaction_pk,
            MilestoneRelease.status == MilestoneReleaseStatus.RELEASED.value,
        ).order_by(MilestoneRelease.milestone_index.asc()).all()

    def released_indices(self, session: Session, transaction_pk: int) -> Set[int]:
        return {row.milestone_index for row in self.released_rows(session, transaction_pk)}

    def find_stuck(self, older_than_minutes: int) -> List[MilestoneRelease]:
        """In-flight rows not touched for longer than the threshold"""
        cutoff = get_naive_utc_now() - timedelta(minutes=older_than_minutes)
        with self._session_scope() as s:
            return s.query(MilestoneRelease).filter(
                MilestoneRelease.status.in_(IN_FLIGHT_STATUSES),
                MilestoneRelease.updated_at < cutoff,
            ).order_by(MilestoneRelease.updated_at.asc()).all()

    def get_metrics(self) -> Dict[str, int]:
        return dict(self.metrics)

    @staticmethod
    def _get_row(session: Session, transaction_pk: int, milestone_index: int) -> Optional[MilestoneRelease]:
        return session.query(MilestoneRelease).filter(
            MilestoneRelease.transaction_id == transaction_pk,
            MilestoneRelease.milestone_index == milestone_index,
        ).first()


# Global release lock manager instance
release_lock_manager = ReleaseLockManager()
