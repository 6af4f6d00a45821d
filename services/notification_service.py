"""
Release notifications

Email/SMS delivery belongs to an external service; this module formats the
release and dispute messages and hands them to the configured sender. All
calls are non-critical.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from utils.non_critical import non_critical

logger = logging.getLogger(__name__)

Sender = Callable[[str, str, str], None]


def _log_sender(recipient_id: str, subject: str, body: str) -> None:
    logger.info(f"📧 NOTIFICATION_QUEUED: to={recipient_id} subject={subject!r}")


class NotificationService:
    """Formats user-facing messages for release events"""

    def __init__(self, sender: Optional[Sender] = None):
        self.sender = sender or _log_sender
        self.sent: List[Dict[str, str]] = []

    def _send(self, recipient_id: str, subject: str, body: str) -> None:
        self.sender(recipient_id, subject, body)
        self.sent.append({'to': recipient_id, 'subject': subject, 'body': body})

    @non_critical
    async def notify_funds_released(
        self,
        seller_id: str,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        milestone_title: Optional[str] = None,
        payout_deferred: bool = False,
    ) -> None:
        what = f'milestone "{milestone_title}"' if milestone_title else "your transaction"
        body = f"{currency} {amount:.2f} was released for {what} ({transaction_id})."
        if payout_deferred:
            body += " The funds are in your wallet and the bank payout will follow shortly."
        self._send(seller_id, "Funds released", body)

    @non_critical
    async def notify_dispute_resolved(
        self, buyer_id: str, seller_id: str, transaction_id: str, outcome: str
    ) -> None:
        body = f"The dispute on {transaction_id} was resolved: {outcome.replace('_', ' ').lower()}."
        self._send(buyer_id, "Dispute resolved", body)
        self._send(seller_id, "Dispute resolved", body)


# Global notification service instance
notification_service = NotificationService()
