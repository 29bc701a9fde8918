"""Custody gateway client: balances and ledger operations held in escrow."""

from enum import Enum
from typing import Dict, Optional, Any
import httpx
from nelo.services.http_client import HttpCapability
from nelo.utils.config import settings
from nelo.utils.exceptions import ExternalCapabilityError
from nelo.utils.logger import get_logger

logger = get_logger("custody_service")


class TxStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"


class CustodyGateway(HttpCapability):
    """Service class for the custodial ledger API."""

    service_name = "custody"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            base_url or settings.custody_api_url,
            settings.custody_api_key if api_key is None else api_key,
            transport=transport,
        )

    @staticmethod
    def _tx_id(response: Dict[str, Any]) -> str:
        tx_id = response.get("tx_id")
        if not tx_id:
            raise ExternalCapabilityError("Custody response missing tx_id", response_data=response)
        return str(tx_id)

    async def create_wallet(self, user_id: str) -> str:
        """Provision a custodial wallet and return its address."""
        response = await self._make_request("POST", "/wallets", data={"user_id": user_id})
        address = response.get("address")
        if not address:
            raise ExternalCapabilityError("Custody response missing address", response_data=response)
        logger.info(f"Provisioned wallet for {user_id}: {address}")
        return str(address)

    async def balance_of(self, address: str, token: str) -> int:
        """Balance in minor units."""
        response = await self._make_request("GET", f"/balances/{address}/{token.lower()}")
        return int(response.get("balance", 0))

    async def deposit(self, signer: str, token: str, amount: int, idempotency_key: Optional[str] = None) -> str:
        logger.info(f"Custody deposit: {amount} {token} for {signer}")
        response = await self._make_request("POST", "/deposits", data={
            "signer": signer,
            "token": token.lower(),
            "amount": str(amount),
            "idempotency_key": idempotency_key,
        }, max_retries=0)
        return self._tx_id(response)

    async def transfer(self, signer: str, recipient: str, amount: int, token: str = "cngn",
                       idempotency_key: Optional[str] = None) -> str:
        logger.info(f"Custody transfer: {amount} {token} {signer} -> {recipient}")
        response = await self._make_request("POST", "/transfers", data={
            "signer": signer,
            "recipient": recipient,
            "token": token.lower(),
            "amount": str(amount),
            "idempotency_key": idempotency_key,
        }, max_retries=0)
        return self._tx_id(response)

    async def withdraw(self, signer: str, token: str, amount: int, destination: Dict[str, Any],
                       idempotency_key: Optional[str] = None) -> str:
        logger.info(f"Custody withdrawal: {amount} {token} for {signer}")
        response = await self._make_request("POST", "/withdrawals", data={
            "signer": signer,
            "token": token.lower(),
            "amount": str(amount),
            "destination": destination,
            "idempotency_key": idempotency_key,
        }, max_retries=0)
        return self._tx_id(response)

    async def transaction_status(self, tx_id: str) -> TxStatus:
        response = await self._make_request("GET", f"/transactions/{tx_id}", max_retries=0)
        status = str(response.get("status", "PENDING")).upper()
        try:
            return TxStatus(status)
        except ValueError:
            raise ExternalCapabilityError(f"Unknown transaction status: {status}", response_data=response)
