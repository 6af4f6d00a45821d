"""Fee calculation utilities for escrow transactions"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import NamedTuple, Optional, Union

from config import Config

logger = logging.getLogger(__name__)

Numeric = Union[Decimal, int, str]

# Currency minor unit; every amount that is stored, transferred or displayed is
# quantized to it with ROUND_HALF_UP
USD_PRECISION = Decimal("0.01")
ZERO = Decimal("0.00")


class PayoutSplitSource(Enum):
    """Where a milestone's seller payout split came from"""
    RECORDED = "RECORDED"      # Seller payout recorded by the gateway at payment time
    RECOMPUTED = "RECOMPUTED"  # Re-derived from the configured fee formulas


class PayoutSplit(NamedTuple):
    """Amounts for one release"""
    amount: Decimal
    seller_fee: Decimal
    seller_net: Decimal
    source: PayoutSplitSource


def round_currency(value: Numeric) -> Decimal:
    """Round to the currency minor unit (two places, half up)"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(USD_PRECISION, rounding=ROUND_HALF_UP)


def _rate(percentage: Optional[Decimal], default: Decimal) -> Decimal:
    pct = default if percentage is None else Decimal(str(percentage))
    return pct / Decimal("100")


def buyer_fee(subtotal: Numeric, percentage: Optional[Decimal] = None) -> Decimal:
    """Fee charged to the buyer on top of the subtotal"""
    return round_currency(Decimal(str(subtotal)) * _rate(percentage, Config.BUYER_FEE_PERCENTAGE))


def seller_fee(subtotal: Numeric, percentage: Optional[Decimal] = None) -> Decimal:
    """Platform fee withheld from the seller"""
    return round_currency(Decimal(str(subtotal)) * _rate(percentage, Config.SELLER_FEE_PERCENTAGE))


def seller_net(subtotal: Numeric, percentage: Optional[Decimal] = None) -> Decimal:
    """Amount the seller receives: subtotal minus seller fee"""
    subtotal = round_currency(subtotal)
    return round_currency(subtotal - seller_fee(subtotal, percentage))


def buyer_total(subtotal: Numeric, buyer_fee_amount: Numeric) -> Decimal:
    return round_currency(Decimal(str(subtotal)) + Decimal(str(buyer_fee_amount)))


def proportional_split(
    amount: Numeric,
    subtotal: Numeric,
    recorded_seller_payout: Optional[Numeric] = None,
    percentage: Optional[Decimal] = None,
) -> PayoutSplit:
    """
    Seller fee and net for a slice of the subtotal.

    The split recorded by the gateway when the buyer paid is authoritative when
    present; the slice gets its proportional share of it. Without a recorded
    split the fee formulas are applied to the slice directly.
    """
    amount = round_currency(amount)
    subtotal = round_currency(subtotal)
    if subtotal <= ZERO:
        raise ValueError("subtotal must be positive")

    if recorded_seller_payout is not None:
        share = amount / subtotal
        net = round_currency(Decimal(str(recorded_seller_payout)) * share)
        fee = round_currency(amount - net)
        source = PayoutSplitSource.RECORDED
    else:
        fee = seller_fee(amount, percentage)
        net = round_currency(amount - fee)
        source = PayoutSplitSource.RECOMPUTED

    if net < ZERO:
        logger.warning(f"⚠️ NEGATIVE_SPLIT_CLAMPED: amount={amount} net={net}")
        net = ZERO
    return PayoutSplit(amount=amount, seller_fee=fee, seller_net=net, source=source)
