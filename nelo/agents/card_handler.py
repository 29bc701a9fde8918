#!/usr/bin/env python3
"""
Card Handler Module
Virtual card creation and listing with numbered selection.
"""

from nelo.agents.conversation_state import ConversationState
from nelo.agents.response_builder import ResponseBuilder
from nelo.agents.transfer_handler import TransferHandler
from nelo.schemas.core import UserRecord, Session, FlowState, OperationKind
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.config import settings
from nelo.utils.logger import get_logger

logger = get_logger("card_handler")


class CardHandler:
    """Handles card creation quotes and the card selection side-state."""

    def __init__(self, sessions: ConversationState, fees, gateway, transfers: TransferHandler):
        self.sessions = sessions
        self.fees = fees
        self.gateway = gateway
        self.transfers = transfers

    async def prepare_create_card(self, user: UserRecord) -> str:
        token = "cngn"
        amount = AmountConverter.whole_to_minor(settings.card_creation_amount, token)
        balance = await self.gateway.balance_of(user.wallet_address, token)
        quote = self.fees.quote(amount, OperationKind.CARD_CREATE, token, balance=balance)

        self.transfers.stage(user, FlowState.AWAITING_PIN, {
            "kind": OperationKind.CARD_CREATE.value,
            "amount": amount,
            "token": token,
            "recipient_label": "new virtual card",
            "fee_quote": quote,
        })
        return ResponseBuilder.confirm_card(quote)

    async def list_cards(self, user: UserRecord) -> str:
        cards = user.active_cards
        if not cards:
            return ResponseBuilder.no_cards()
        if len(cards) == 1:
            return ResponseBuilder.card_details(cards[0])

        self.sessions.transition(user.user_id, FlowState.AWAITING_CARD_SELECTION, {
            "card_ids": [card.card_id for card in cards],
        })
        return ResponseBuilder.card_selection(cards)

    async def handle_selection(self, user: UserRecord, session: Session, choice: int) -> str:
        """1-based pick; out-of-range re-prompts and keeps the selection open."""
        card_ids = session.flow_data.get("card_ids", [])
        if not 1 <= choice <= len(card_ids):
            self.sessions.update(user.user_id)
            return ResponseBuilder.card_out_of_range(len(card_ids))

        card_id = card_ids[choice - 1]
        card = next((c for c in user.cards if c.card_id == card_id), None)
        self.sessions.transition(user.user_id, FlowState.READY)
        if card is None:
            return ResponseBuilder.no_cards()
        return ResponseBuilder.card_details(card)
