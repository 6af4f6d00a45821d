"""
Audit and Timeline Logging

Every status transition and release attempt is written as an immutable
TimelineEvent and mirrored as a JSON line on the 'audit' logger. Recording is
best effort: failures are logged and never block the primary operation.
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, Optional

from config import Config
from database import SessionLocal
from models import TimelineEvent
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import StatusChange
from utils.non_critical import run_non_critical

logger = logging.getLogger(__name__)


class TimelineEventType:
    STATUS_CHANGED = "STATUS_CHANGED"
    RELEASE_ATTEMPTED = "RELEASE_ATTEMPTED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
    MILESTONE_AUTO_RELEASED = "MILESTONE_AUTO_RELEASED"
    RELEASE_FAILED = "RELEASE_FAILED"
    PAYOUT_DEFERRED = "PAYOUT_DEFERRED"
    PROOF_SUBMITTED = "PROOF_SUBMITTED"
    PROOF_REQUIRED_AGAIN = "PROOF_REQUIRED_AGAIN"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    BUYER_REFUNDED = "BUYER_REFUNDED"
    RELEASE_RECONCILED = "RELEASE_RECONCILED"


class AuditLogger:
    """Service for transaction timeline and audit logging"""

    def __init__(self, log_file: Optional[str] = None):
        self.session_factory = SessionLocal
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        log_file = log_file or Config.AUDIT_LOG_FILE
        if log_file and not self._has_file_handler(log_file):
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    def _has_file_handler(self, log_file: str) -> bool:
        """The 'audit' logger is process-wide; one handler per file"""
        path = os.path.abspath(log_file)
        return any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == path
            for handler in self.audit_logger.handlers
        )

    def _write_event(
        self,
        transaction_pk: int,
        event_type: str,
        message: str,
        actor_id: Optional[str],
        details: Optional[Dict[str, Any]],
    ) -> None:
        session = self.session_factory()
        try:
            session.add(TimelineEvent(
                transaction_id=transaction_pk,
                event_type=event_type,
                message=message,
                actor_id=actor_id,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        audit_entry = {
            'timestamp': get_naive_utc_now().isoformat(),
            'transaction_pk': transaction_pk,
            'type': event_type,
            'message': message,
            'actor_id': actor_id,
            'details': details or {},
        }
        self.audit_logger.info(json.dumps(audit_entry, default=str))

    def record_timeline_event(
        self,
        transaction_pk: int,
        event_type: str,
        message: str,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Best-effort timeline write"""
        run_non_critical(
            f"timeline {event_type} for transaction_pk={transaction_pk}",
            self._write_event,
            transaction_pk,
            event_type,
            message,
            actor_id,
            details,
        )

    def record_status_changes(self, changes: Iterable[StatusChange]) -> None:
        for change in changes:
            self.record_timeline_event(
                change.transaction_pk,
                TimelineEventType.STATUS_CHANGED,
                f"Status changed from {change.from_status} to {change.to_status}",
                actor_id=change.actor_id,
                details={'from': change.from_status, 'to': change.to_status},
            )


# Global audit logger instance
audit_logger = AuditLogger()
