#!/usr/bin/env python3
"""
Funding Handler Module
Fiat on-ramp: "buy" issues payment instructions, "paid" verifies and mints.
"""

from decimal import Decimal
from typing import Dict, Any
from nelo.agents.response_builder import ResponseBuilder
from nelo.agents.transfer_handler import hand_off
from nelo.schemas.core import UserRecord, OperationKind, OperationState, PendingOperation
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("funding_handler")


class FundingHandler:
    """Handles buy/paid against the payment verifier and custody deposit."""

    def __init__(self, store, payments, gateway, settlement):
        self.store = store
        self.payments = payments
        self.gateway = gateway
        self.settlement = settlement

    async def buy(self, user: UserRecord, args: Dict[str, Any]) -> str:
        token = args["token"]
        whole = Decimal(args["amount"])
        if not settings.min_buy_amount <= whole <= settings.max_buy_amount:
            return ResponseBuilder.buy_limits()

        amount = AmountConverter.to_minor(args["amount"], token)
        request = self.payments.create_request(user.user_id, amount, token)
        await self.store.save_payment_request(request)
        logger.info(f"💰 Payment request {request.reference} for {user.user_id}: {amount} {token}")
        return ResponseBuilder.buy_instructions(amount, token, request.reference)

    async def confirm_payment(self, user: UserRecord, args: Dict[str, Any]) -> str:
        token = args["token"]
        amount = AmountConverter.to_minor(args["amount"], token)

        request = await self.store.find_pending_payment(user.user_id, amount, token)
        if request is None:
            return ResponseBuilder.no_pending_payment(amount, token)

        if not await self.payments.verify(request.reference, amount):
            return ResponseBuilder.payment_not_received()

        if not await self.store.mark_payment_verified(request.reference):
            return ResponseBuilder.no_pending_payment(amount, token)

        operation = PendingOperation(
            kind=OperationKind.DEPOSIT,
            user_id=user.user_id,
            amount=amount,
            token=token,
            recipient=user.wallet_address,
            metadata={"signer": user.wallet_address, "reference": request.reference},
        )
        try:
            await self.store.save_operation(operation)
            operation.tx_hash = await self.gateway.deposit(
                user.wallet_address, token, amount, idempotency_key=request.reference
            )
        except Exception:
            await self.store.revert_payment(request.reference)
            await self.store.transition_operation(
                operation.operation_id, {OperationState.QUEUED},
                {"state": OperationState.FAILED, "failure_reason": "dispatch"},
            )
            raise

        logger.info(f"✅ Payment {request.reference} verified, minting {amount} {token}: tx {operation.tx_hash}")
        await hand_off(self.settlement, operation)
        return ResponseBuilder.payment_confirmed(amount, token)
