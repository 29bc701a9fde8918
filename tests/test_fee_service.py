"""Fee quoting and the cached price oracle."""

import httpx
import pytest

from nelo.schemas.core import OperationKind
from nelo.services.fee_service import NetworkPriceOracle, FeeCalculator
from nelo.utils.exceptions import InsufficientBalance, ValidationError

CNGN = 10 ** 6


def test_default_snapshot_rates(oracle):
    # 2500 USD x 1600 NGN per ETH, 6 decimals
    assert oracle.native_rate("cngn") == 4_000_000 * CNGN
    assert oracle.native_rate("usdc") == 2500 * CNGN
    assert oracle.gas_price_wei == 1_000_000_000


def test_transfer_quote_breakdown(fees):
    quote = fees.quote(1000 * CNGN, OperationKind.TRANSFER, "cngn")

    assert quote.service_fee == 10 * CNGN
    # 21000 gas x 1 gwei x 120% = 2.52e13 wei at 4e12 minor per ETH
    assert quote.network_fee_native == 25_200_000_000_000
    assert quote.network_fee_quote == 100_800_000
    assert quote.total_cost == quote.original_amount + quote.service_fee + quote.network_fee_quote
    assert quote.net_to_recipient == 1000 * CNGN


def test_service_fee_is_capped(fees):
    quote = fees.quote(500_000 * CNGN, OperationKind.TRANSFER)

    assert quote.service_fee == 1000 * CNGN


def test_network_fee_rounds_up(fees, oracle):
    oracle.gas_price_wei = 1

    quote = fees.quote(100 * CNGN, OperationKind.TRANSFER, "usdc")

    # 25200 wei is far below one minor unit but still charged as one
    assert quote.network_fee_quote == 1


def test_quote_is_deterministic_for_unchanged_snapshot(fees):
    first = fees.quote(250 * CNGN, OperationKind.WITHDRAW)
    second = fees.quote(250 * CNGN, OperationKind.WITHDRAW)

    assert first.model_dump(exclude={"quoted_at"}) == second.model_dump(exclude={"quoted_at"})


def test_quote_is_frozen(fees):
    quote = fees.quote(100 * CNGN, OperationKind.TRANSFER)

    with pytest.raises(Exception):
        quote.total_cost = 0


def test_insufficient_balance_reports_exact_shortfall(fees):
    expected = fees.quote(1000 * CNGN, OperationKind.TRANSFER).total_cost

    with pytest.raises(InsufficientBalance) as exc:
        fees.quote(1000 * CNGN, OperationKind.TRANSFER, balance=expected - 1)

    assert exc.value.required == expected
    assert exc.value.shortfall == 1


def test_exact_balance_is_enough(fees):
    expected = fees.quote(1000 * CNGN, OperationKind.TRANSFER).total_cost

    assert fees.quote(1000 * CNGN, OperationKind.TRANSFER, balance=expected).total_cost == expected


@pytest.mark.parametrize("amount, token", [(0, "cngn"), (-5, "cngn"), (100, "doge")])
def test_rejects_bad_input(fees, amount, token):
    with pytest.raises(ValidationError):
        fees.quote(amount, OperationKind.TRANSFER, token)


async def test_refresh_updates_snapshot():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": hex(2_000_000_000)})
        return httpx.Response(200, json={"ethereum": {"usd": 3000, "ngn": 4_500_000}})

    oracle = NetworkPriceOracle("http://rpc.test", "http://prices.test", transport=httpx.MockTransport(handler))

    assert await oracle.refresh() is True
    assert oracle.gas_price_wei == 2_000_000_000
    assert oracle.native_rate("usdc") == 3000 * CNGN
    assert oracle.native_rate("cngn") == 4_500_000 * CNGN


async def test_refresh_failure_keeps_last_known_values():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    oracle = NetworkPriceOracle("http://rpc.test", "http://prices.test", transport=httpx.MockTransport(handler))
    before = (oracle.gas_price_wei, oracle.native_rate("cngn"))

    assert await oracle.refresh() is False
    assert (oracle.gas_price_wei, oracle.native_rate("cngn")) == before
