"""
Exception Module
Error taxonomy for escrow release operations
"""

from typing import Iterable, List, Optional


class EscrowReleaseError(Exception):
    """Base class for release subsystem errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransactionNotFoundError(EscrowReleaseError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class InvalidTransitionError(EscrowReleaseError):
    """Attempted status edge is not in the transition table; never retried"""

    def __init__(self, from_status: Optional[str], to_status: str, valid_transitions: Iterable[str]):
        self.from_status = from_status
        self.to_status = to_status
        self.valid_transitions = sorted(valid_transitions)
        valid = ", ".join(self.valid_transitions) or "none (terminal state)"
        super().__init__(f"Invalid transition {from_status} -> {to_status}. Valid transitions: {valid}")


class UnauthorizedActionError(EscrowReleaseError):
    """Actor role is not allowed to perform the action"""


class DisputeFreezeError(EscrowReleaseError):
    """An active dispute blocks money movement"""

    def __init__(self, message: str, dispute_id: Optional[int] = None):
        self.dispute_id = dispute_id
        super().__init__(message)


class LockInProgressError(EscrowReleaseError):
    """Another release attempt for the same key is mid-flight; back off"""

    def __init__(self, transaction_id: str, milestone_index: int):
        self.transaction_id = transaction_id
        self.milestone_index = milestone_index
        super().__init__(
            f"Release for transaction {transaction_id} milestone {milestone_index} is already in progress"
        )


class ResolutionInProgressError(EscrowReleaseError):
    """Another admin is already resolving this dispute"""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Dispute on transaction {transaction_id} is already being resolved")


class ReleaseNotEligibleError(EscrowReleaseError):
    """Release pre-conditions are not met; reasons are user-presentable"""

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__("Release not allowed: " + "; ".join(self.reasons))


class InvalidRefundAmountError(EscrowReleaseError):
    pass


class ExternalGatewayError(EscrowReleaseError):
    """Payment gateway call failed"""

    def __init__(self, message: str, timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class InsufficientBalanceError(ExternalGatewayError):
    """Gateway payout balance too low; release degrades to an internal ledger credit"""


class OtherGatewayError(ExternalGatewayError):
    """Any other transfer failure; the release fails and its lock stays retryable"""
