"""
Core Pydantic schemas for the Nelo WhatsApp assistant.
Provides type safety for sessions, intents, fee quotes, settlement and WhatsApp payloads.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Literal, Union, Annotated
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# Conversation Schemas
class FlowState(str, Enum):
    NONE = "NONE"
    KYC_PENDING = "KYC_PENDING"
    PIN_PENDING = "PIN_PENDING"
    READY = "READY"
    AWAITING_PIN = "AWAITING_PIN"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    AWAITING_CARD_SELECTION = "AWAITING_CARD_SELECTION"


# Side-states layered on READY; input is redirected instead of parsed as a command
SIDE_STATES = {
    FlowState.AWAITING_PIN,
    FlowState.AWAITING_CONFIRMATION,
    FlowState.AWAITING_CARD_SELECTION,
}


class Session(BaseModel):
    """Per-user conversation state with inactivity expiry."""
    user_id: str = Field(..., description="WhatsApp user ID")
    current_flow: FlowState = Field(default=FlowState.NONE)
    flow_data: Dict[str, Any] = Field(default_factory=dict)
    last_activity: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class Command(str, Enum):
    HELP = "HELP"
    BALANCE = "BALANCE"
    LIST_CARDS = "LIST_CARDS"
    SUBMIT_KYC = "SUBMIT_KYC"
    SETUP_PIN = "SETUP_PIN"
    CREATE_CARD = "CREATE_CARD"
    DEPOSIT_INFO = "DEPOSIT_INFO"
    MY_BANKS = "MY_BANKS"
    HISTORY = "HISTORY"
    CANCEL = "CANCEL"
    BUY = "BUY"
    CONFIRM_PAYMENT = "CONFIRM_PAYMENT"
    SEND = "SEND"
    CASH_OUT = "CASH_OUT"
    ADD_BANK = "ADD_BANK"
    INVALID = "INVALID"


class NamedRecipient(BaseModel):
    """Human-readable handle that needs name resolution."""
    kind: Literal["named"] = "named"
    handle: str


class AddressRecipient(BaseModel):
    """Raw hex ledger address, used as-is."""
    kind: Literal["address"] = "address"
    address: str


Recipient = Annotated[Union[NamedRecipient, AddressRecipient], Field(discriminator="kind")]


class Intent(BaseModel):
    """Structured command parsed from free text. Never persisted."""
    command: Command
    args: Dict[str, Any] = Field(default_factory=dict)


# Settlement Schemas
class OperationKind(str, Enum):
    TRANSFER = "TRANSFER"
    DEPOSIT = "DEPOSIT"
    CARD_CREATE = "CARD_CREATE"
    WITHDRAW = "WITHDRAW"


class OperationState(str, Enum):
    QUEUED = "QUEUED"
    MONITORING = "MONITORING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES = {OperationState.COMPLETED, OperationState.FAILED}


class FeeQuote(BaseModel):
    """Fee breakdown in integer minor units. Immutable once produced."""
    model_config = {"frozen": True}

    original_amount: int
    service_fee: int
    network_fee_native: int = Field(..., description="Network fee in wei")
    network_fee_quote: int = Field(..., description="Network fee in token minor units")
    total_cost: int
    net_to_recipient: int
    token: str
    kind: OperationKind
    gas_price_wei: int
    native_rate: int = Field(..., description="Token minor units per native coin")
    quoted_at: datetime = Field(default_factory=utcnow)


class PendingOperation(BaseModel):
    """Operation handed off to the settlement subsystem."""
    operation_id: str = Field(default_factory=lambda: new_id("op"))
    kind: OperationKind
    user_id: str
    amount: int
    token: str = "cngn"
    recipient: Optional[str] = None
    state: OperationState = OperationState.QUEUED
    attempt_count: int = 0
    tx_hash: Optional[str] = None
    fee_quote: Optional[FeeQuote] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    DEAD = "DEAD"


class SettlementJob(BaseModel):
    """Durable job record driving one PendingOperation."""
    operation_id: str
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
    next_run_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None


class NotificationKind(str, Enum):
    TRANSACTION_COMPLETE = "TRANSACTION_COMPLETE"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    BROADCAST = "BROADCAST"
    ENGAGEMENT = "ENGAGEMENT"


class NotificationJob(BaseModel):
    user_id: str
    message: str
    kind: NotificationKind
    attempts: int = 0


# User Schemas
class KYCLevel(str, Enum):
    NONE = "NONE"
    BASIC = "BASIC"
    VERIFIED = "VERIFIED"
    PREMIUM = "PREMIUM"


class BankAccount(BaseModel):
    bank_name: str
    account_number: str = Field(..., pattern=r"^\d{10}$")
    account_name: str


class CardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"


class VirtualCard(BaseModel):
    card_id: str = Field(default_factory=lambda: new_id("card"))
    last4: str
    status: CardStatus = CardStatus.ACTIVE
    balance: int = 0
    token: str = "cngn"
    operation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class UserRecord(BaseModel):
    """Persisted user profile."""
    user_id: str
    whatsapp_number: str
    wallet_address: Optional[str] = None
    kyc_level: KYCLevel = KYCLevel.NONE
    pin_hash: Optional[str] = None
    pin_salt: Optional[str] = None
    bank_accounts: List[BankAccount] = Field(default_factory=list)
    cards: List[VirtualCard] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    @property
    def active_cards(self) -> List[VirtualCard]:
        return [card for card in self.cards if card.status == CardStatus.ACTIVE]


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"


class PaymentRequest(BaseModel):
    """Fiat on-ramp request created by "buy"."""
    reference: str
    user_id: str
    amount: int
    token: str = "cngn"
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


# WhatsApp Webhook Schemas
class WhatsAppText(BaseModel):
    body: str


class WhatsAppInboundMessage(BaseModel):
    """Single inbound message inside a webhook change."""
    model_config = {"populate_by_name": True, "extra": "allow"}

    from_: str = Field(..., alias="from", description="Sender's phone number")
    id: str = Field(..., description="WhatsApp message ID")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None


class WhatsAppChangeValue(BaseModel):
    model_config = {"extra": "allow"}

    messages: List[WhatsAppInboundMessage] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = {"extra": "allow"}

    field: str = "messages"
    value: WhatsAppChangeValue


class WhatsAppEntry(BaseModel):
    model_config = {"extra": "allow"}

    id: Optional[str] = None
    changes: List[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    """WhatsApp webhook envelope."""
    object: str = "whatsapp_business_account"
    entry: List[WhatsAppEntry]

    def text_messages(self) -> List[WhatsAppInboundMessage]:
        return [
            message
            for entry in self.entry
            for change in entry.changes
            for message in change.value.messages
            if message.text is not None
        ]


# Admin Schemas
class BroadcastRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)
    limit: int = Field(default=50, ge=1, le=1000)


class StandardResponse(BaseModel):
    status: bool
    message: str
    data: Optional[Any] = None
