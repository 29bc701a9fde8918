#!/usr/bin/env python3
"""
Command Engine
Main coordinator: parses each message, drives the per-user state machine and
delegates to specialized handler modules.
"""

from typing import Optional
from nelo.agents.account_handler import AccountHandler
from nelo.agents.card_handler import CardHandler
from nelo.agents.conversation_state import ConversationState
from nelo.agents.funding_handler import FundingHandler
from nelo.agents.message_processor import MessageProcessor
from nelo.agents.response_builder import ResponseBuilder
from nelo.agents.transfer_handler import TransferHandler
from nelo.schemas.core import UserRecord, Session, FlowState, Command, Intent, KYCLevel, SIDE_STATES, utcnow
from nelo.utils.exceptions import (
    InvalidPIN, InsufficientBalance, ValidationError, PermissionDenied, ExternalCapabilityError,
)
from nelo.utils.logger import get_logger

logger = get_logger("command_engine")

# Commands that move funds and therefore sit behind the KYC and PIN gates
FUNDS_COMMANDS = {
    Command.SEND,
    Command.CASH_OUT,
    Command.CREATE_CARD,
    Command.BUY,
    Command.CONFIRM_PAYMENT,
}


class CommandEngine:
    """
    Command Engine - one entry point per inbound message.

    Delegates to focused handlers:
    - AccountHandler: KYC, PIN setup, balances, bank accounts
    - TransferHandler: send, cash out and PIN-confirmed execution
    - CardHandler: virtual card creation and selection
    - FundingHandler: fiat buy/paid on-ramp
    """

    def __init__(self, store, gateway, kyc, resolver, payments, fees, settlement,
                 sessions: Optional[ConversationState] = None, parser: Optional[MessageProcessor] = None):
        self.store = store
        self.sessions = sessions or ConversationState()
        self.parser = parser or MessageProcessor()

        self.accounts = AccountHandler(store, self.sessions, gateway, kyc)
        self.transfers = TransferHandler(store, self.sessions, fees, gateway, resolver, settlement)
        self.cards = CardHandler(self.sessions, fees, gateway, self.transfers)
        self.funding = FundingHandler(store, payments, gateway, settlement)

        logger.info("✅ Command Engine initialized with specialized handlers")

    async def process_message(self, user_id: str, text: str, whatsapp_number: Optional[str] = None) -> str:
        """
        Handle one inbound message and return the reply.

        Messages from the same user are processed one at a time. Any failure
        restores the session to its state before the message.
        """
        async with self.sessions.lock(user_id):
            session = self.sessions.get_or_create(user_id)
            snapshot = session.model_copy(deep=True)
            intent: Optional[Intent] = None

            log = logger.bind(user_id=user_id)
            try:
                user, is_new = await self._load_user(user_id, whatsapp_number)
                session = self._settle_base_flow(user, session)
                snapshot = session.model_copy(deep=True)
                log = log.bind(flow=session.current_flow.value)

                if session.current_flow in SIDE_STATES or self._in_pin_setup(session):
                    intent = self.parser.parse(text)
                    if intent.command == Command.CANCEL:
                        return self._cancel(user, session)
                    reply = await self._handle_side_state(user, session, text)
                    if reply is not None:
                        return reply
                    session = self.sessions.get_or_create(user_id)

                intent = self.parser.parse(text)
                log = log.bind(command=intent.command.value)
                log.info(f"📨 {intent.command.value} from {user_id}")

                if is_new and intent.command in (Command.HELP, Command.INVALID):
                    return ResponseBuilder.WELCOME
                return await self._route(user, session, intent)

            except InvalidPIN as e:
                log.info(f"Wrong PIN for {user_id}, {e.attempts_left} attempts left")
                return e.user_message
            except InsufficientBalance as e:
                self.sessions.replace(snapshot)
                log.info(f"💸 {e.message}")
                return ResponseBuilder.insufficient_balance(e)
            except (ValidationError, PermissionDenied) as e:
                self.sessions.replace(snapshot)
                log.info(f"Rejected: {e.message}")
                return e.user_message
            except ExternalCapabilityError as e:
                self.sessions.replace(snapshot)
                log.bind(status_code=e.status_code, transient=e.transient).error(f"❌ Capability failure: {e.message}")
                return e.user_message
            except Exception as e:
                self.sessions.replace(snapshot)
                log.exception(f"❌ Unexpected error processing message: {e}")
                return ResponseBuilder.GENERIC_ERROR

    async def _load_user(self, user_id: str, whatsapp_number: Optional[str]):
        user = await self.store.get_user(user_id)
        if user is None:
            user = await self.store.save_user(UserRecord(user_id=user_id, whatsapp_number=whatsapp_number or user_id))
            logger.info(f"👤 New user {user_id}")
            return user, True

        user = await self.store.update_user(user_id, {"last_active": utcnow()}) or user
        return user, False

    @staticmethod
    def _in_pin_setup(session: Session) -> bool:
        return session.current_flow == FlowState.PIN_PENDING and "pin_setup" in session.flow_data

    @staticmethod
    def base_flow(user: UserRecord, current: FlowState = FlowState.NONE) -> FlowState:
        if user.kyc_level == KYCLevel.NONE:
            return FlowState.KYC_PENDING if current == FlowState.KYC_PENDING else FlowState.NONE
        if not user.has_pin:
            return FlowState.PIN_PENDING
        return FlowState.READY

    def _settle_base_flow(self, user: UserRecord, session: Session) -> Session:
        """Re-derive the base state from the user record unless a multi-turn step is open."""
        if session.current_flow in SIDE_STATES or self._in_pin_setup(session):
            return session
        flow = self.base_flow(user, session.current_flow)
        if flow != session.current_flow:
            return self.sessions.transition(user.user_id, flow) or session
        return session

    async def _handle_side_state(self, user: UserRecord, session: Session, text: str) -> Optional[str]:
        """Redirect input while a side-state is open. None means parse it as a command."""
        if session.current_flow in (FlowState.AWAITING_PIN, FlowState.AWAITING_CONFIRMATION):
            return await self.transfers.handle_pin_input(user, session, text)

        if session.current_flow == FlowState.AWAITING_CARD_SELECTION:
            choice = MessageProcessor.is_numeric_choice(text)
            if choice is not None:
                return await self.cards.handle_selection(user, session, choice)
            self.sessions.transition(user.user_id, FlowState.READY)
            return None

        return await self.accounts.handle_pin_setup_input(user, session, text)

    def _cancel(self, user: UserRecord, session: Session) -> str:
        if session.current_flow in SIDE_STATES or self._in_pin_setup(session):
            self.sessions.transition(user.user_id, self.base_flow(user))
            logger.info(f"🔄 {user.user_id} cancelled {session.current_flow.value}")
            return ResponseBuilder.CANCELLED
        return ResponseBuilder.NOTHING_TO_CANCEL

    def _gate(self, user: UserRecord) -> Optional[str]:
        """KYC first, then PIN. Returns the prompt when the gate blocks."""
        if user.kyc_level == KYCLevel.NONE:
            self.sessions.transition(user.user_id, FlowState.KYC_PENDING)
            return ResponseBuilder.KYC_REQUIRED
        if not user.has_pin:
            self.sessions.transition(user.user_id, FlowState.PIN_PENDING)
            return ResponseBuilder.PIN_REQUIRED
        return None

    async def _route(self, user: UserRecord, session: Session, intent: Intent) -> str:
        command = intent.command
        args = intent.args

        if command in FUNDS_COMMANDS:
            blocked = self._gate(user)
            if blocked:
                return blocked

        if command == Command.HELP:
            return ResponseBuilder.help(user)
        elif command == Command.CANCEL:
            return self._cancel(user, session)
        elif command == Command.SUBMIT_KYC:
            return await self.accounts.submit_kyc(user)
        elif command == Command.SETUP_PIN:
            return await self.accounts.start_pin_setup(user)
        elif command == Command.BALANCE:
            return await self.accounts.balance(user)
        elif command == Command.DEPOSIT_INFO:
            return await self.accounts.deposit_info(user)
        elif command == Command.ADD_BANK:
            return await self.accounts.add_bank(user, args)
        elif command == Command.HISTORY:
            return await self.accounts.history(user)
        elif command == Command.MY_BANKS:
            return await self.accounts.my_banks(user)
        elif command == Command.LIST_CARDS:
            return await self.cards.list_cards(user)
        elif command == Command.CREATE_CARD:
            return await self.cards.prepare_create_card(user)
        elif command == Command.SEND:
            return await self.transfers.prepare_send(user, args)
        elif command == Command.CASH_OUT:
            return await self.transfers.prepare_cash_out(user, args)
        elif command == Command.BUY:
            return await self.funding.buy(user, args)
        elif command == Command.CONFIRM_PAYMENT:
            return await self.funding.confirm_payment(user, args)

        return ResponseBuilder.invalid(args.get("reason", "unknown"), args.get("usage"), args.get("recipient"))
