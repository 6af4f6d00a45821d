"""
Wallet Service - seller wallet ledger operations

Credits are written when funds are released and debits when a buyer is refunded
after funds had been notionally credited. Entries are append-only; a balance is
the sum of credits minus debits and may go negative (seller debt).
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from models import LedgerEntryType, WalletLedgerEntry
from utils.fee_calculator import round_currency

logger = logging.getLogger(__name__)


class WalletService:
    """Ledger writes inside the caller's database session"""

    def __init__(self, db: Session):
        self.db = db

    def credit_seller(
        self,
        transaction_pk: int,
        seller_id: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WalletLedgerEntry:
        """
        Credit the seller's wallet for released funds.

        Args:
            transaction_pk: Escrow transaction primary key
            seller_id: Seller receiving the funds
            amount: Seller net amount (must be positive)
            currency: Currency code
            metadata: Release details stored with the entry

        Returns:
            The ledger entry, flushed but not committed
        """
        return self._add_entry(LedgerEntryType.CREDIT, transaction_pk, seller_id, amount, currency, metadata)

    def debit_seller(
        self,
        transaction_pk: int,
        seller_id: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WalletLedgerEntry:
        """Debit the seller's wallet after a buyer refund"""
        return self._add_entry(LedgerEntryType.DEBIT, transaction_pk, seller_id, amount, currency, metadata)

    def _add_entry(
        self,
        entry_type: LedgerEntryType,
        transaction_pk: int,
        user_id: str,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]],
    ) -> WalletLedgerEntry:
        amount = round_currency(amount)
        if amount <= 0:
            raise ValueError(f"Ledger {entry_type.value.lower()} amount must be positive, got {amount}")

        entry = WalletLedgerEntry(
            transaction_id=transaction_pk,
            user_id=user_id,
            entry_type=entry_type.value,
            amount=amount,
            currency=currency,
            entry_metadata=metadata or {},
        )
        self.db.add(entry)
        self.db.flush()

        icon = "💰" if entry_type == LedgerEntryType.CREDIT else "↩️"
        logger.info(
            f"{icon} WALLET_{entry_type.value}: user={user_id} amount={amount} {currency} "
            f"transaction_pk={transaction_pk}"
        )
        return entry

    def get_balance(self, user_id: str, currency: str) -> Decimal:
        signed = case(
            (WalletLedgerEntry.entry_type == LedgerEntryType.CREDIT.value, WalletLedgerEntry.amount),
            else_=-WalletLedgerEntry.amount,
        )
        total = self.db.query(func.coalesce(func.sum(signed), 0)).filter(
            WalletLedgerEntry.user_id == user_id,
            WalletLedgerEntry.currency == currency,
        ).scalar()
        return round_currency(total)

    def get_entries(self, transaction_pk: int) -> List[WalletLedgerEntry]:
        return self.db.query(WalletLedgerEntry).filter(
            WalletLedgerEntry.transaction_id == transaction_pk
        ).order_by(WalletLedgerEntry.id.asc()).all()
