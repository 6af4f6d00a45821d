"""
Test Fixtures Package
Shared identities and database read helpers
"""

from .escrow_data import (
    ADMIN_ID, BUYER_ID, PAYOUT_ACCOUNT, SELLER_ID,
    get_ledger_entries, get_releases, get_seller_balance, get_timeline_types, get_transaction,
)

__all__ = [
    'ADMIN_ID',
    'BUYER_ID',
    'PAYOUT_ACCOUNT',
    'SELLER_ID',
    'get_ledger_entries',
    'get_releases',
    'get_seller_balance',
    'get_timeline_types',
    'get_transaction',
]
