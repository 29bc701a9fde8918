"""
Fee Service
Dual-currency fee quoting in integer minor units, backed by a cached network price.
"""

import time
from decimal import Decimal
from typing import Dict, Optional, Any
import httpx
from nelo.schemas.core import FeeQuote, OperationKind, utcnow
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.config import settings
from nelo.utils.exceptions import InsufficientBalance, ValidationError
from nelo.utils.logger import get_logger

logger = get_logger("fee_service")

WEI_PER_NATIVE = 10 ** 18


class NetworkPriceOracle:
    """
    Cached gas price and native-coin exchange rates.

    `refresh()` runs on a schedule; readers only ever see the last good snapshot,
    seeded from configured fallbacks, so quoting never waits on the network.
    """

    def __init__(self, rpc_url: Optional[str] = None, price_api_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rpc_url = rpc_url or settings.rpc_url
        self.price_api_url = price_api_url or settings.price_api_url
        self.transport = transport
        self.gas_price_wei: int = settings.fallback_gas_price_wei
        self.native_prices: Dict[str, Decimal] = {
            token: Decimal(settings.native_rate(token)) for token in settings.SUPPORTED_TOKENS
        }
        self.last_refreshed: Optional[float] = None

    def native_rate(self, token: str) -> int:
        """Token minor units per native coin."""
        price = self.native_prices.get(token.lower())
        if price is None:
            raise ValidationError(f"Unsupported token: {token}")
        return int(price.scaleb(settings.token_decimals(token)))

    async def refresh(self) -> bool:
        """Pull gas price and rates; keep last-known values on failure."""
        refreshed = False
        async with httpx.AsyncClient(transport=self.transport, timeout=10.0) as client:
            try:
                response = await client.post(self.rpc_url, json={
                    "jsonrpc": "2.0", "method": "eth_gasPrice", "params": [], "id": 1,
                })
                response.raise_for_status()
                self.gas_price_wei = int(response.json()["result"], 16)
                refreshed = True
            except (httpx.HTTPError, KeyError, ValueError) as e:
                logger.warning(f"Gas price refresh failed, keeping {self.gas_price_wei} wei: {e}")

            try:
                response = await client.get(self.price_api_url)
                response.raise_for_status()
                prices = response.json()["ethereum"]
                usd = Decimal(str(prices["usd"]))
                ngn = Decimal(str(prices["ngn"])) if "ngn" in prices else usd * settings.usd_to_ngn
                if usd <= 0 or ngn <= 0:
                    raise ValueError(f"non-positive price {prices}")
                self.native_prices.update({"usdc": usd, "cngn": ngn})
                refreshed = True
            except (httpx.HTTPError, KeyError, ValueError, ArithmeticError) as e:
                logger.warning(f"Exchange rate refresh failed, keeping last known rates: {e}")

        if refreshed:
            self.last_refreshed = time.time()
            logger.debug(f"Price snapshot: gas={self.gas_price_wei} wei, rates={self.native_prices}")
        return refreshed


class FeeCalculator:
    """Computes FeeQuote snapshots. Deterministic for an unchanged oracle snapshot."""

    def __init__(self, oracle: NetworkPriceOracle):
        self.oracle = oracle

    def service_fee(self, amount: int, token: str) -> int:
        fee = max(0, amount * settings.service_fee_bps // 10_000)
        if settings.service_fee_cap > 0:
            fee = min(fee, AmountConverter.whole_to_minor(settings.service_fee_cap, token))
        return fee

    def network_fee(self, kind: OperationKind, token: str) -> Dict[str, int]:
        gas_units = settings.GAS_UNITS[kind.value]
        gas_price = self.oracle.gas_price_wei
        native_rate = self.oracle.native_rate(token)

        fee_wei = gas_units * gas_price * settings.gas_price_buffer_percent // 100
        # ceil so the fee charged never undershoots the cost
        fee_quote = -(-(fee_wei * native_rate) // WEI_PER_NATIVE)
        fee_quote = max(fee_quote, AmountConverter.whole_to_minor(settings.min_network_fee, token))

        return {
            "gas_price_wei": gas_price,
            "native_rate": native_rate,
            "network_fee_native": fee_wei,
            "network_fee_quote": fee_quote,
        }

    def quote(self, amount: int, kind: OperationKind, token: str = "cngn",
              balance: Optional[int] = None) -> FeeQuote:
        """
        Quote an operation.

        Args:
            amount: Amount in minor units
            kind: Operation kind, selects gas units
            token: Quote currency
            balance: Available balance; when given, a shortfall raises

        Raises:
            InsufficientBalance: If balance is given and below total cost
            ValidationError: For non-positive amounts or unsupported tokens
        """
        if amount <= 0:
            raise ValidationError(f"Amount must be positive: {amount}")
        if not settings.is_supported_token(token):
            raise ValidationError(f"Unsupported token: {token}")

        token = token.lower()
        service_fee = self.service_fee(amount, token)
        network: Dict[str, Any] = self.network_fee(kind, token)
        total_cost = amount + service_fee + network["network_fee_quote"]

        quote = FeeQuote(
            original_amount=amount,
            service_fee=service_fee,
            total_cost=total_cost,
            net_to_recipient=amount,
            token=token,
            kind=kind,
            quoted_at=utcnow(),
            **network,
        )

        if balance is not None and balance < total_cost:
            logger.info(f"Insufficient balance for {kind.value}: need {total_cost}, have {balance} ({token})")
            raise InsufficientBalance(required=total_cost, available=balance, token=token)

        return quote
