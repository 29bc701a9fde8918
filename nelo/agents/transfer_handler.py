#!/usr/bin/env python3
"""
Transfer Handler - Quotes funds-moving actions and executes them on PIN confirmation
"""

from typing import Dict, Any
from nelo.agents.conversation_state import ConversationState
from nelo.agents.message_processor import normalize
from nelo.agents.response_builder import ResponseBuilder
from nelo.schemas.core import (
    UserRecord, Session, FlowState, OperationKind, OperationState, PendingOperation, FeeQuote,
    NamedRecipient, new_id,
)
from nelo.services.pin_service import PinService
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.config import settings
from nelo.utils.exceptions import InvalidPIN, InsufficientBalance, ValidationError
from nelo.utils.logger import get_logger

logger = get_logger("transfer_handler")


class TransferHandler:
    """Send, cash out and PIN-confirmed execution of any pending action."""

    def __init__(self, store, sessions: ConversationState, fees, gateway, resolver, settlement):
        self.store = store
        self.sessions = sessions
        self.fees = fees
        self.gateway = gateway
        self.resolver = resolver
        self.settlement = settlement

    def stage(self, user: UserRecord, flow: FlowState, pending: Dict[str, Any]) -> None:
        """Store the action and its frozen quote, then wait for the PIN."""
        pending.setdefault("operation_id", new_id("op"))
        self.sessions.transition(user.user_id, flow, {"pending": pending, "pin_attempts": 0})

    async def prepare_send(self, user: UserRecord, args: Dict[str, Any]) -> str:
        token = args["token"]
        amount = AmountConverter.to_minor(args["amount"], token)
        recipient = args["recipient"]

        address = await self.resolver.resolve(recipient)
        if user.wallet_address and address.lower() == user.wallet_address.lower():
            raise ValidationError("Self transfer", user_message="❌ You can't send money to yourself.")

        balance = await self.gateway.balance_of(user.wallet_address, token)
        quote = self.fees.quote(amount, OperationKind.TRANSFER, token, balance=balance)

        label = recipient.handle if isinstance(recipient, NamedRecipient) else f"{address[:6]}...{address[-4:]}"
        self.stage(user, FlowState.AWAITING_CONFIRMATION, {
            "kind": OperationKind.TRANSFER.value,
            "amount": amount,
            "token": token,
            "recipient": address,
            "recipient_label": label,
            "fee_quote": quote,
        })
        logger.info(f"Transfer staged for {user.user_id}: {amount} {token} -> {label}")
        return ResponseBuilder.confirm_send(quote, label)

    async def prepare_cash_out(self, user: UserRecord, args: Dict[str, Any]) -> str:
        token = "cngn"
        amount = AmountConverter.to_minor(args["amount"], token)
        if amount < AmountConverter.whole_to_minor(settings.min_cash_out_amount, token):
            return ResponseBuilder.min_cash_out()
        if not user.bank_accounts:
            return ResponseBuilder.NO_BANK

        bank = user.bank_accounts[0]
        balance = await self.gateway.balance_of(user.wallet_address, token)
        quote = self.fees.quote(amount, OperationKind.WITHDRAW, token, balance=balance)

        self.stage(user, FlowState.AWAITING_PIN, {
            "kind": OperationKind.WITHDRAW.value,
            "amount": amount,
            "token": token,
            "destination": bank.model_dump(),
            "recipient_label": f"{bank.bank_name} ****{bank.account_number[-4:]}",
            "fee_quote": quote,
        })
        return ResponseBuilder.confirm_cash_out(quote, bank)

    async def handle_pin_input(self, user: UserRecord, session: Session, text: str) -> str:
        """
        Interpret the message as the PIN for the pending action.

        Raises:
            InvalidPIN: On a wrong PIN while attempts remain
        """
        pending = session.flow_data.get("pending")
        if not pending:
            self.sessions.transition(user.user_id, FlowState.READY)
            return ResponseBuilder.help(user)

        if PinService.verify_pin(normalize(text), user.pin_hash or "", user.pin_salt or ""):
            return await self.execute(user, pending)

        attempts = session.flow_data.get("pin_attempts", 0) + 1
        if attempts >= settings.max_pin_attempts:
            logger.warning(f"🚫 PIN attempts exhausted for {user.user_id}, discarding {pending['kind']}")
            self.sessions.transition(user.user_id, FlowState.READY)
            return ResponseBuilder.PIN_LOCKED_OUT

        self.sessions.update(user.user_id, flow_data={**session.flow_data, "pin_attempts": attempts})
        raise InvalidPIN(settings.max_pin_attempts - attempts)

    async def execute(self, user: UserRecord, pending: Dict[str, Any]) -> str:
        """
        Dispatch the staged action with its frozen quote and hand it to settlement.

        The operation is persisted before custody is called. Once custody has
        accepted the transaction the session never returns to the confirmation
        step, even if the hand-off fails.
        """
        kind = OperationKind(pending["kind"])
        quote: FeeQuote = pending["fee_quote"]
        operation_id = pending["operation_id"]
        token = pending["token"]
        signer = user.wallet_address

        # balance may have moved since the quote; the quote itself is not recomputed
        balance = await self.gateway.balance_of(signer, token)
        if balance < quote.total_cost:
            raise InsufficientBalance(required=quote.total_cost, available=balance, token=token)

        operation = PendingOperation(
            operation_id=operation_id,
            kind=kind,
            user_id=user.user_id,
            amount=quote.original_amount,
            token=token,
            recipient=pending.get("recipient"),
            fee_quote=quote,
            metadata={"signer": signer, "recipient_label": pending.get("recipient_label")},
        )
        await self.store.save_operation(operation)

        try:
            operation.tx_hash = await self._dispatch(kind, signer, token, quote, pending)
        except Exception:
            await self.store.transition_operation(
                operation_id, {OperationState.QUEUED}, {"state": OperationState.FAILED, "failure_reason": "dispatch"}
            )
            raise

        self.sessions.transition(user.user_id, FlowState.READY)
        logger.info(f"💸 {kind.value} {operation_id} dispatched for {user.user_id}: tx {operation.tx_hash}")
        await hand_off(self.settlement, operation)
        return ResponseBuilder.PROCESSING

    async def _dispatch(self, kind: OperationKind, signer: str, token: str, quote: FeeQuote,
                        pending: Dict[str, Any]) -> str:
        operation_id = pending["operation_id"]
        if kind == OperationKind.TRANSFER:
            return await self.gateway.transfer(
                signer, pending["recipient"], quote.net_to_recipient, token, idempotency_key=operation_id
            )
        if kind == OperationKind.WITHDRAW:
            return await self.gateway.withdraw(
                signer, token, quote.net_to_recipient, pending["destination"], idempotency_key=operation_id
            )
        if kind == OperationKind.CARD_CREATE:
            return await self.gateway.deposit(signer, token, quote.original_amount, idempotency_key=operation_id)
        raise ValidationError(f"Unsupported pending action: {kind.value}")


async def hand_off(settlement, operation: PendingOperation) -> None:
    """
    Enqueue an operation whose transaction custody already accepted.

    A failure here is logged with the tx id rather than raised: the funds have
    moved, so the caller must not offer a retry.
    """
    try:
        await settlement.enqueue(operation)
    except Exception as e:
        logger.bind(operation_id=operation.operation_id, tx_hash=operation.tx_hash).exception(
            f"❌ Settlement hand-off failed, needs reconciliation: {e}"
        )
