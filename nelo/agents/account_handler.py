#!/usr/bin/env python3
"""
Account Handler Module
KYC submission, PIN setup, balances, deposit details and saved bank accounts.
"""

from typing import Dict, Any
from nelo.agents.conversation_state import ConversationState
from nelo.agents.message_processor import normalize
from nelo.agents.response_builder import ResponseBuilder
from nelo.schemas.core import UserRecord, Session, FlowState, KYCLevel, BankAccount
from nelo.services.pin_service import PinService
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("account_handler")


class AccountHandler:
    """Handles onboarding and account information requests."""

    def __init__(self, store, sessions: ConversationState, gateway, kyc):
        self.store = store
        self.sessions = sessions
        self.gateway = gateway
        self.kyc = kyc

    async def submit_kyc(self, user: UserRecord) -> str:
        if user.kyc_level != KYCLevel.NONE:
            return ResponseBuilder.kyc_done(user.kyc_level, user.has_pin)

        self.sessions.transition(user.user_id, FlowState.KYC_PENDING)
        tier = await self.kyc.verify(user)
        if tier == KYCLevel.NONE:
            logger.info(f"KYC not passed for {user.user_id}")
            return ResponseBuilder.kyc_failed()

        wallet = user.wallet_address or await self.gateway.create_wallet(user.user_id)
        await self.store.update_user(user.user_id, {"kyc_level": tier, "wallet_address": wallet})
        self.sessions.transition(user.user_id, FlowState.READY if user.has_pin else FlowState.PIN_PENDING)
        logger.info(f"✅ KYC {tier.value} for {user.user_id}")
        return ResponseBuilder.kyc_done(tier, user.has_pin)

    async def start_pin_setup(self, user: UserRecord) -> str:
        if user.kyc_level == KYCLevel.NONE:
            self.sessions.transition(user.user_id, FlowState.KYC_PENDING)
            return ResponseBuilder.KYC_REQUIRED
        if user.has_pin:
            return "🔒 Your PIN is already set. Type *help* for the menu."

        self.sessions.transition(user.user_id, FlowState.PIN_PENDING, {"pin_setup": "enter"})
        return ResponseBuilder.PIN_PROMPT

    async def handle_pin_setup_input(self, user: UserRecord, session: Session, text: str) -> str:
        """Two-step entry: choose then confirm. The candidate is kept only as a hash."""
        pin = normalize(text)
        step = session.flow_data.get("pin_setup")

        if step == "confirm":
            if PinService.verify_pin(pin, session.flow_data["pin_hash"], session.flow_data["pin_salt"]):
                await self.store.update_user(user.user_id, {
                    "pin_hash": session.flow_data["pin_hash"],
                    "pin_salt": session.flow_data["pin_salt"],
                })
                self.sessions.transition(user.user_id, FlowState.READY)
                logger.info(f"🔒 PIN set for {user.user_id}")
                return ResponseBuilder.pin_set()
            self.sessions.update(user.user_id, flow_data={"pin_setup": "enter"})
            return ResponseBuilder.PIN_MISMATCH

        errors = PinService.validate_format(pin)
        if errors:
            return ResponseBuilder.pin_weak(errors)

        pin_hash, salt = PinService.hash_pin(pin)
        self.sessions.update(user.user_id, flow_data={"pin_setup": "confirm", "pin_hash": pin_hash, "pin_salt": salt})
        return ResponseBuilder.PIN_CONFIRM_PROMPT

    async def balance(self, user: UserRecord) -> str:
        balances: Dict[str, int] = {}
        for token in settings.SUPPORTED_TOKENS:
            balances[token] = await self.gateway.balance_of(user.wallet_address, token) if user.wallet_address else 0
        return ResponseBuilder.balance(balances, len(user.active_cards))

    async def deposit_info(self, user: UserRecord) -> str:
        if not user.wallet_address:
            self.sessions.transition(user.user_id, FlowState.KYC_PENDING)
            return ResponseBuilder.KYC_REQUIRED
        return ResponseBuilder.deposit_info(user.wallet_address)

    async def add_bank(self, user: UserRecord, args: Dict[str, Any]) -> str:
        bank = BankAccount(**args)
        accounts = [b for b in user.bank_accounts if b.account_number != bank.account_number]
        accounts.insert(0, bank)
        await self.store.update_user(user.user_id, {"bank_accounts": accounts})
        logger.info(f"🏦 Saved bank account for {user.user_id}: {bank.bank_name} ****{bank.account_number[-4:]}")
        return ResponseBuilder.bank_added(bank)

    async def my_banks(self, user: UserRecord) -> str:
        return ResponseBuilder.banks(user.bank_accounts)

    async def history(self, user: UserRecord) -> str:
        operations = await self.store.list_user_operations(user.user_id, settings.history_limit)
        return ResponseBuilder.history(operations)
