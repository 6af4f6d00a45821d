"""
Payment gateway adapters

The release engine depends only on the PaymentGateway contract:
create_transfer moves seller net to a payout account, refund returns buyer
funds, and get_transfer_by_idempotency_key lets reconciliation find the
outcome of a transfer whose response was lost.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional

import aiohttp

from config import Config
from utils.exceptions import InsufficientBalanceError, OtherGatewayError

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_CODES = {"insufficient_balance", "balance_insufficient", "insufficient_funds"}


class PaymentGateway(ABC):
    """External fund-transfer service"""

    @abstractmethod
    async def create_transfer(
        self, amount: Decimal, currency: str, payout_account_id: str, idempotency_key: str
    ) -> str:
        """Return the transfer id or raise InsufficientBalanceError / OtherGatewayError"""

    @abstractmethod
    async def refund(
        self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> str:
        """Return the refund id or raise OtherGatewayError"""

    @abstractmethod
    async def get_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[str]:
        """Transfer id previously created under the key, or None"""


class HttpPaymentGateway(PaymentGateway):
    """JSON-over-HTTP gateway client"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = (base_url or Config.PAYMENT_GATEWAY_BASE_URL).rstrip("/")
        self.api_key = api_key or Config.PAYMENT_GATEWAY_API_KEY

    def is_available(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        if not self.is_available():
            raise OtherGatewayError("Payment gateway is not configured")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(method, url, headers=headers, json=data) as response:
                    response_data = await response.json(content_type=None) or {}
                    if response.status in (200, 201):
                        return response_data
                    if response.status == 404:
                        return {}

                    code = str(response_data.get("code", "")).lower()
                    message = response_data.get("message") or f"HTTP {response.status}"
                    if code in INSUFFICIENT_BALANCE_CODES:
                        logger.warning(f"💰 GATEWAY_INSUFFICIENT_BALANCE: {method} {endpoint}: {message}")
                        raise InsufficientBalanceError(message)

                    logger.error(f"❌ GATEWAY_ERROR: {method} {endpoint} status={response.status} {response_data}")
                    raise OtherGatewayError(message)

        except aiohttp.ClientError as e:
            logger.error(f"❌ GATEWAY_CONNECTION_ERROR: {method} {endpoint}: {e}")
            raise OtherGatewayError(f"Gateway connection error: {e}") from e

    async def create_transfer(
        self, amount: Decimal, currency: str, payout_account_id: str, idempotency_key: str
    ) -> str:
        payload = {
            "amount": str(amount),
            "currency": currency,
            "destination": payout_account_id,
        }
        response = await self._make_request("POST", "/transfers", payload, idempotency_key=idempotency_key)
        transfer_id = response.get("id")
        if not transfer_id:
            raise OtherGatewayError("Gateway response did not include a transfer id")
        return transfer_id

    async def refund(
        self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> str:
        payload = {"payment": payment_reference, "amount": str(amount)}
        response = await self._make_request("POST", "/refunds", payload, idempotency_key=idempotency_key)
        refund_id = response.get("id")
        if not refund_id:
            raise OtherGatewayError("Gateway response did not include a refund id")
        return refund_id

    async def get_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[str]:
        response = await self._make_request("GET", f"/transfers/by-idempotency-key/{idempotency_key}")
        return response.get("id")


class InMemoryPaymentGateway(PaymentGateway):
    """
    Local gateway used in development and tests.

    Transfers are keyed by idempotency key, so a replayed request returns the
    original transfer id. Failures and latency can be scripted per call.
    """

    def __init__(self, delay_seconds: float = 0.0):
        self.delay_seconds = delay_seconds
        self.transfers: Dict[str, Dict] = {}
        self.refunds: List[Dict] = []
        self.refund_keys: Dict[str, str] = {}
        self.transfer_calls: List[Dict] = []
        self.failures: List[Exception] = []
        self.insufficient_balance_accounts: set = set()

    def fail_next(self, error: Exception) -> None:
        self.failures.append(error)

    async def create_transfer(
        self, amount: Decimal, currency: str, payout_account_id: str, idempotency_key: str
    ) -> str:
        self.transfer_calls.append(
            {"amount": amount, "currency": currency, "destination": payout_account_id, "key": idempotency_key}
        )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        if self.failures:
            raise self.failures.pop(0)
        if payout_account_id in self.insufficient_balance_accounts:
            raise InsufficientBalanceError("Platform payout balance is insufficient")

        existing = self.transfers.get(idempotency_key)
        if existing:
            return existing["id"]

        transfer_id = f"tr_{uuid.uuid4().hex[:16]}"
        self.transfers[idempotency_key] = {
            "id": transfer_id,
            "amount": amount,
            "currency": currency,
            "destination": payout_account_id,
        }
        return transfer_id

    async def refund(
        self, payment_reference: str, amount: Decimal, idempotency_key: Optional[str] = None
    ) -> str:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.failures:
            raise self.failures.pop(0)

        if idempotency_key and idempotency_key in self.refund_keys:
            return self.refund_keys[idempotency_key]

        refund_id = f"re_{uuid.uuid4().hex[:16]}"
        self.refunds.append(
            {"id": refund_id, "payment": payment_reference, "amount": amount, "key": idempotency_key}
        )
        if idempotency_key:
            self.refund_keys[idempotency_key] = refund_id
        return refund_id

    async def get_transfer_by_idempotency_key(self, idempotency_key: str) -> Optional[str]:
        existing = self.transfers.get(idempotency_key)
        return existing["id"] if existing else None

    @property
    def transfer_count(self) -> int:
        return len(self.transfers)
