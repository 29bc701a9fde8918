"""Fiat on-ramp: payment requests for "buy" and verification for "paid"."""

import time
from typing import Optional
import httpx
from nelo.schemas.core import PaymentRequest
from nelo.services.http_client import HttpCapability
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("payment_service")


class PaymentService(HttpCapability):
    """Payment verifier for bank transfers into the collection account."""

    service_name = "payments"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            base_url or settings.payment_api_url,
            settings.payment_api_key if api_key is None else api_key,
            transport=transport,
        )

    @staticmethod
    def new_reference(user_id: str) -> str:
        digits = "".join(ch for ch in user_id if ch.isalnum())
        return f"nelo_deposit_{digits}_{int(time.time() * 1000)}"

    def create_request(self, user_id: str, amount: int, token: str = "cngn") -> PaymentRequest:
        return PaymentRequest(reference=self.new_reference(user_id), user_id=user_id, amount=amount, token=token)

    async def verify(self, reference: str, amount: int) -> bool:
        """True once the exact amount has been received against the reference."""
        response = await self._make_request("GET", f"/payments/{reference}", params={"amount": str(amount)})
        verified = bool(response.get("verified")) and int(response.get("amount", amount)) == amount
        logger.info(f"Payment {reference} verified={verified}")
        return verified
