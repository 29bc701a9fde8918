"""HTTP capability clients against an httpx mock transport."""

import json

import httpx
import pytest

from nelo.schemas.core import KYCLevel, NamedRecipient, AddressRecipient, UserRecord
from nelo.services.custody_service import CustodyGateway, TxStatus
from nelo.services.kyc_service import KYCService
from nelo.services.name_resolver import NameResolver
from nelo.services.payment_service import PaymentService
from nelo.services.pin_service import PinService
from nelo.services.whatsapp_service import WhatsAppService, split_message
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.exceptions import ExternalCapabilityError, InvalidRecipient, ValidationError

ALICE = "0x" + "b" * 40


def mock(routes):
    """Transport answering (method, path) from a dict; records requests."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


async def test_custody_transfer_sends_idempotency_key():
    transport = mock({("POST", "/transfers"): (200, {"tx_id": "0xabc"})})
    gateway = CustodyGateway("http://custody.test", "key", transport=transport)

    tx_id = await gateway.transfer("0xsigner", ALICE, 1_000_000, "cngn", idempotency_key="op_1")

    assert tx_id == "0xabc"
    body = json.loads(transport.seen[0].content)
    assert body == {
        "signer": "0xsigner", "recipient": ALICE, "token": "cngn",
        "amount": "1000000", "idempotency_key": "op_1",
    }
    assert transport.seen[0].headers["Authorization"] == "Bearer key"


async def test_custody_error_body_raises():
    transport = mock({("POST", "/deposits"): (200, {"error": "insufficient allowance"})})
    gateway = CustodyGateway("http://custody.test", "key", transport=transport)

    with pytest.raises(ExternalCapabilityError) as exc:
        await gateway.deposit("0xsigner", "cngn", 5)

    assert "insufficient allowance" in exc.value.message
    assert exc.value.transient is False


async def test_custody_server_error_is_transient_and_not_retried_for_writes():
    transport = mock({("POST", "/withdrawals"): (502, {"error": "bad gateway"})})
    gateway = CustodyGateway("http://custody.test", "key", transport=transport)

    with pytest.raises(ExternalCapabilityError) as exc:
        await gateway.withdraw("0xsigner", "cngn", 5, {"account_number": "0123456789"})

    assert exc.value.transient is True
    assert exc.value.status_code == 502
    assert len(transport.seen) == 1


async def test_custody_balance_and_status():
    transport = mock({
        ("GET", f"/balances/{ALICE}/usdc"): (200, {"balance": "2500000"}),
        ("GET", "/transactions/0xabc"): (200, {"status": "confirmed"}),
    })
    gateway = CustodyGateway("http://custody.test", "key", transport=transport)

    assert await gateway.balance_of(ALICE, "USDC") == 2_500_000
    assert await gateway.transaction_status("0xabc") == TxStatus.CONFIRMED


async def test_resolver_handles_and_addresses():
    transport = mock({
        ("GET", "/names/alice.base.eth"): (200, {"address": ALICE}),
        ("GET", "/names/ghost.base.eth"): (404, {"error": "not found"}),
    })
    resolver = NameResolver("http://resolver.test", transport=transport)

    assert await resolver.resolve(NamedRecipient(handle="alice.base.eth")) == ALICE
    assert await resolver.resolve(AddressRecipient(address=ALICE)) == ALICE
    with pytest.raises(InvalidRecipient):
        await resolver.resolve(NamedRecipient(handle="ghost.base.eth"))
    with pytest.raises(InvalidRecipient):
        await resolver.resolve(AddressRecipient(address="0x123"))


async def test_kyc_returns_tier():
    transport = mock({("POST", "/verifications"): (200, {"level": "verified"})})
    kyc = KYCService("http://kyc.test", "key", transport=transport)

    tier = await kyc.verify(UserRecord(user_id="u1", whatsapp_number="2348000000000"))

    assert tier == KYCLevel.VERIFIED


async def test_payment_verification_requires_exact_amount():
    transport = mock({
        ("GET", "/payments/ref_ok"): (200, {"verified": True, "amount": 5_000_000_000}),
        ("GET", "/payments/ref_short"): (200, {"verified": True, "amount": 4_000_000_000}),
    })
    payments = PaymentService("http://payments.test", "key", transport=transport)

    assert await payments.verify("ref_ok", 5_000_000_000) is True
    assert await payments.verify("ref_short", 5_000_000_000) is False


def test_payment_reference_format():
    reference = PaymentService.new_reference("+234 801")

    assert reference.startswith("nelo_deposit_234801_")


def test_pin_hash_round_trip_and_weak_pins():
    pin_hash, salt = PinService.hash_pin("2580")

    assert PinService.verify_pin("2580", pin_hash, salt)
    assert not PinService.verify_pin("2581", pin_hash, salt)
    assert not PinService.verify_pin("2580", "", "")
    assert PinService.validate_format("0000")
    assert PinService.validate_format("12a4")
    assert PinService.validate_format("2580") == []


@pytest.mark.parametrize("text, minor", [("1000", 1_000_000_000), ("12.5", 12_500_000), ("0.000001", 1)])
def test_to_minor(text, minor):
    assert AmountConverter.to_minor(text, "cngn") == minor


@pytest.mark.parametrize("text", ["0", "-1", "abc", "0.0000001"])
def test_to_minor_rejects(text):
    with pytest.raises(ValidationError):
        AmountConverter.to_minor(text, "cngn")


def test_format_amount():
    assert AmountConverter.format_amount(1_234_560_000, "cngn") == "₦1,234.56 cNGN"
    assert AmountConverter.format_amount(2_500_000, "usdc") == "$2.50 USDC"
    assert AmountConverter.format_amount(1, "usdc") == "$0.000001 USDC"


def test_split_message_keeps_chunks_under_limit():
    message = "\n".join(["x" * 50] * 10)

    chunks = split_message(message, limit=120)

    assert all(len(chunk) <= 120 for chunk in chunks)
    assert "\n".join(chunks) == message


async def test_whatsapp_send_without_client_fails_softly():
    service = WhatsAppService(client=None)
    service.client = None

    result = await service.send_message("2348000000000", "hi")

    assert result["success"] is False
