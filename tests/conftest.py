"""Shared fixtures: in-process store, scripted custody gateway and a wired engine."""

import os

# Must be set before nelo.utils.config is imported
os.environ["LOG_TO_FILE"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["PIN_HASH_ITERATIONS"] = "1000"

from typing import Dict, List, Tuple

import pytest

from nelo.agents.command_engine import CommandEngine
from nelo.agents.conversation_state import ConversationState
from nelo.schemas.core import KYCLevel, UserRecord, AddressRecipient, NamedRecipient
from nelo.services.custody_service import TxStatus
from nelo.services.fee_service import NetworkPriceOracle, FeeCalculator
from nelo.services.payment_service import PaymentService
from nelo.services.pin_service import PinService
from nelo.utils.exceptions import InvalidRecipient
from nelo.utils.mongodb_manager import MongoDBManager

USER = "2348012345678"
WALLET = "0x" + "a" * 40
ALICE = "0x" + "b" * 40
PIN = "2580"


class FakeGateway:
    """Custody double: balances per (address, token), records every call."""

    def __init__(self):
        self.balances: Dict[Tuple[str, str], int] = {}
        self.calls: List[tuple] = []
        self.statuses: List[object] = []
        self._tx = 0

    def _next_tx(self) -> str:
        self._tx += 1
        return f"tx_{self._tx}"

    async def create_wallet(self, user_id):
        self.calls.append(("create_wallet", user_id))
        return WALLET

    async def balance_of(self, address, token):
        self.calls.append(("balance_of", address, token))
        return self.balances.get((address, token), 0)

    async def deposit(self, signer, token, amount, idempotency_key=None):
        self.calls.append(("deposit", signer, token, amount, idempotency_key))
        return self._next_tx()

    async def transfer(self, signer, recipient, amount, token="cngn", idempotency_key=None):
        self.calls.append(("transfer", signer, recipient, amount, token, idempotency_key))
        return self._next_tx()

    async def withdraw(self, signer, token, amount, destination, idempotency_key=None):
        self.calls.append(("withdraw", signer, token, amount, destination, idempotency_key))
        return self._next_tx()

    async def transaction_status(self, tx_id):
        """Pops scripted outcomes; exceptions are raised, PENDING when the script runs out."""
        self.calls.append(("transaction_status", tx_id))
        outcome = self.statuses.pop(0) if self.statuses else TxStatus.PENDING
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


class FakeKYC:
    def __init__(self, level: KYCLevel = KYCLevel.BASIC):
        self.level = level
        self.calls = 0

    async def verify(self, user):
        self.calls += 1
        return self.level


class FakeResolver:
    def __init__(self, names: Dict[str, str]):
        self.names = names

    async def resolve(self, recipient):
        if isinstance(recipient, AddressRecipient):
            return recipient.address
        if isinstance(recipient, NamedRecipient) and recipient.handle in self.names:
            return self.names[recipient.handle]
        raise InvalidRecipient(getattr(recipient, "handle", str(recipient)))


class FakePayments(PaymentService):
    """Real reference generation; verification answered from a set."""

    def __init__(self):
        super().__init__(base_url="http://payments.test", api_key="test")
        self.received: Dict[str, bool] = {}

    async def verify(self, reference, amount):
        return self.received.get(reference, False)


class FakeSettlement:
    def __init__(self):
        self.enqueued = []

    async def enqueue(self, operation):
        self.enqueued.append(operation)
        return operation.operation_id


@pytest.fixture
def store():
    return MongoDBManager(mongodb_url="")


@pytest.fixture
def sessions():
    return ConversationState(timeout_minutes=30)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def oracle():
    return NetworkPriceOracle(rpc_url="http://rpc.test", price_api_url="http://prices.test")


@pytest.fixture
def fees(oracle):
    return FeeCalculator(oracle)


@pytest.fixture
def kyc():
    return FakeKYC()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def engine(store, sessions, gateway, fees, kyc, payments, settlement):
    return CommandEngine(
        store=store,
        gateway=gateway,
        kyc=kyc,
        resolver=FakeResolver({"alice.base.eth": ALICE}),
        payments=payments,
        fees=fees,
        settlement=settlement,
        sessions=sessions,
    )


@pytest.fixture
def ready_user(store):
    """A verified user with a wallet and a PIN, persisted in the store."""
    pin_hash, salt = PinService.hash_pin(PIN)
    user = UserRecord(
        user_id=USER,
        whatsapp_number=USER,
        wallet_address=WALLET,
        kyc_level=KYCLevel.BASIC,
        pin_hash=pin_hash,
        pin_salt=salt,
    )
    store.local_cache["users"][USER] = user
    return user
