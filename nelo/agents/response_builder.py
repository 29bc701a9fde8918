"""Response builder for replies and settlement notifications."""

from typing import List, Optional
from nelo.schemas.core import (
    FeeQuote, PendingOperation, OperationKind, OperationState, VirtualCard, BankAccount, UserRecord, KYCLevel,
)
from nelo.utils.amount_converter import AmountConverter
from nelo.utils.config import settings
from nelo.utils.exceptions import InsufficientBalance

fmt = AmountConverter.format_amount

KIND_LABELS = {
    OperationKind.TRANSFER: "Transfer",
    OperationKind.DEPOSIT: "Deposit",
    OperationKind.CARD_CREATE: "Card creation",
    OperationKind.WITHDRAW: "Cash out",
}

STATE_ICONS = {
    OperationState.COMPLETED: "✅",
    OperationState.FAILED: "❌",
}

USAGE = {
    "BUY": 'buy 5000 (or "buy 20 usdc")',
    "CONFIRM_PAYMENT": "paid 5000",
    "SEND": "send 1000 to alice.base.eth",
    "CASH_OUT": "cash out 5000",
    "ADD_BANK": "add bank GTBank, account 0123456789, John Doe",
}


class ResponseBuilder:
    """Formats every user-facing message in one place."""

    WELCOME = (
        "🎉 *Welcome to Nelo!*\n\n"
        "Your cNGN wallet on WhatsApp 🇳🇬\n\n"
        "*Quick setup (2 mins):*\n"
        '1. "submit kyc" - Verify identity\n'
        '2. "setup pin" - Secure account\n'
        '3. "create card" - Get a virtual card'
    )

    KYC_REQUIRED = '🔒 *KYC Required*\n\nVerify your identity before moving funds.\n\nType "submit kyc" to start.'
    PIN_REQUIRED = '🔐 *Transaction PIN Required*\n\nSet a PIN before moving funds.\n\nType "setup pin" to continue.'
    PIN_PROMPT = "🔐 Choose a 4-digit transaction PIN.\n\nAvoid sequences like 1234 or repeats like 0000."
    PIN_CONFIRM_PROMPT = "🔁 Enter the same PIN again to confirm."
    PIN_MISMATCH = "❌ PINs didn't match. Choose a 4-digit PIN again."
    CANCELLED = "👍 Cancelled. What would you like to do next?"
    NOTHING_TO_CANCEL = "Nothing to cancel. Type *help* to see what I can do."
    PROCESSING = "⏳ *Processing...*\n\nI'll message you as soon as it's confirmed."
    PIN_LOCKED_OUT = "🚫 Too many wrong PIN attempts. The transaction was cancelled for your safety."
    GENERIC_ERROR = '❌ Something went wrong. Try again or type "help".'
    NO_BANK = '🏦 Add a bank account first:\n"add bank GTBank, account 0123456789, John Doe"'

    @staticmethod
    def help(user: Optional[UserRecord]) -> str:
        if user is None or user.kyc_level == KYCLevel.NONE:
            return (
                "*Getting Started:*\n"
                '• "submit kyc" - Verify identity\n'
                '• "help" - Show this menu'
            )
        if not user.has_pin:
            return (
                "*Next Steps:*\n"
                '• "setup pin" - Secure account\n'
                '• "balance" - Check funds'
            )
        return (
            "*Main Menu:*\n"
            '• "balance" - Check funds\n'
            '• "deposit" - Wallet address\n'
            '• "buy 10000" - Add cNGN\n'
            '• "send 1000 to alice.base.eth" - Send money\n'
            '• "create card" / "my cards" - Virtual cards\n'
            '• "add bank ..." / "cash out 5000" - Withdraw to bank\n'
            '• "history" - Recent activity\n'
            '• "cancel" - Stop the current action'
        )

    @staticmethod
    def invalid(reason: str, usage: Optional[str] = None, recipient: Optional[str] = None) -> str:
        if reason == "usage" and usage in USAGE:
            return f'🤔 Almost! Try it like this:\n"{USAGE[usage]}"'
        if reason == "recipient":
            return (
                f"❌ *{recipient}* isn't a valid recipient.\n\n"
                f"Use a name like alice.{settings.handle_suffix} or a 0x wallet address."
            )
        return '🤔 I didn\'t understand that. Type "help" to see what I can do.'

    @staticmethod
    def kyc_done(tier: KYCLevel, has_pin: bool) -> str:
        next_step = "You're all set! Type *help* for the menu." if has_pin else 'Next: type "setup pin" 🔒'
        return f"✅ *KYC Complete!* (level: {tier.value})\n\n{next_step}"

    @staticmethod
    def kyc_failed() -> str:
        return "❌ We couldn't verify your identity yet. Please try \"submit kyc\" again later."

    @staticmethod
    def pin_set() -> str:
        return '🔒 *Account Secured!*\n\nReady for your card? Type "create card" 💳'

    @staticmethod
    def fee_breakdown(quote: FeeQuote) -> str:
        token = quote.token
        return (
            f"Amount: {fmt(quote.original_amount, token)}\n"
            f"Service fee: {fmt(quote.service_fee, token)}\n"
            f"Network fee: {fmt(quote.network_fee_quote, token)}\n"
            f"*Total: {fmt(quote.total_cost, token)}*"
        )

    @classmethod
    def confirm_send(cls, quote: FeeQuote, recipient_label: str) -> str:
        return (
            f"💸 *Confirm Transfer*\n\n"
            f"To: {recipient_label}\n"
            f"{cls.fee_breakdown(quote)}\n\n"
            "Reply with your 4-digit PIN to confirm, or *cancel*."
        )

    @classmethod
    def confirm_cash_out(cls, quote: FeeQuote, bank: BankAccount) -> str:
        return (
            f"🏦 *Confirm Cash Out*\n\n"
            f"To: {bank.bank_name} {bank.account_number} ({bank.account_name})\n"
            f"{cls.fee_breakdown(quote)}\n\n"
            "Reply with your 4-digit PIN to confirm, or *cancel*."
        )

    @classmethod
    def confirm_card(cls, quote: FeeQuote) -> str:
        return (
            f"💳 *Create Virtual Card*\n\n"
            f"Opening balance: {fmt(quote.original_amount, quote.token)}\n"
            f"{cls.fee_breakdown(quote)}\n\n"
            "Reply with your 4-digit PIN to confirm, or *cancel*."
        )

    @staticmethod
    def insufficient_balance(error: InsufficientBalance) -> str:
        return (
            "❌ *Insufficient balance*\n\n"
            f"Needed: {fmt(error.required, error.token)}\n"
            f"Available: {fmt(error.available, error.token)}\n"
            f"Short by: {fmt(error.shortfall, error.token)}\n\n"
            'Top up with "buy <amount>".'
        )

    @staticmethod
    def balance(balances: dict, card_count: int) -> str:
        lines = ["💰 *Your Balance*", ""]
        for token, amount in balances.items():
            lines.append(f"{settings.get_token_info(token)['code']}: {fmt(amount, token)}")
        lines.append(f"Cards: {card_count}")
        lines.append("")
        lines.append('Actions: "my cards" | "buy 10000" | "send"')
        return "\n".join(lines)

    @staticmethod
    def deposit_info(address: str) -> str:
        return (
            "📥 *Deposit*\n\n"
            f"Send cNGN or USDC on Base to:\n{address}\n\n"
            'Or buy with a bank transfer: "buy 10000"'
        )

    @staticmethod
    def buy_instructions(amount: int, token: str, reference: str) -> str:
        whole = AmountConverter.from_minor(amount, token)
        return (
            f"💰 *Buy {fmt(amount, token)}*\n\n"
            f"Transfer exactly {fmt(amount, token)} to:\n"
            f"🏦 {settings.payment_bank_name}\n"
            f"🔢 {settings.payment_account_number}\n"
            f"👤 {settings.payment_account_name}\n"
            f"📋 Ref: {reference}\n\n"
            f'After transfer, reply: "paid {whole.normalize():f}"'
        )

    @staticmethod
    def buy_limits() -> str:
        return f"❌ You can buy between {settings.min_buy_amount:,} and {settings.max_buy_amount:,} per request."

    @staticmethod
    def no_pending_payment(amount: int, token: str) -> str:
        return f"❌ I couldn't find a pending purchase of {fmt(amount, token)}. Start with \"buy <amount>\"."

    @staticmethod
    def payment_not_received() -> str:
        return "⏳ We haven't received that payment yet. Give it a minute and reply \"paid <amount>\" again."

    @staticmethod
    def bank_added(bank: BankAccount) -> str:
        return f"✅ Saved {bank.bank_name} {bank.account_number} ({bank.account_name}).\n\nCash out with \"cash out 5000\"."

    @staticmethod
    def banks(accounts: List[BankAccount]) -> str:
        if not accounts:
            return ResponseBuilder.NO_BANK
        lines = ["🏦 *Your Bank Accounts*", ""]
        for i, bank in enumerate(accounts, 1):
            lines.append(f"{i}. {bank.bank_name} {bank.account_number} ({bank.account_name})")
        return "\n".join(lines)

    @staticmethod
    def history(operations: List[PendingOperation]) -> str:
        if not operations:
            return '📭 No transactions yet. Type "buy 10000" to add funds.'
        lines = ["📜 *Recent Activity*", ""]
        for operation in operations:
            icon = STATE_ICONS.get(operation.state, "⏳")
            line = f"{icon} {KIND_LABELS[operation.kind]} {fmt(operation.amount, operation.token)}"
            if operation.kind == OperationKind.TRANSFER:
                line += f" to {operation.metadata.get('recipient_label') or operation.recipient}"
            lines.append(f"{line} ({operation.created_at:%d %b %H:%M})")
        return "\n".join(lines)

    @staticmethod
    def min_cash_out() -> str:
        return f"❌ The minimum cash out is ₦{settings.min_cash_out_amount:,}."

    @staticmethod
    def no_cards() -> str:
        return '💳 You have no cards yet. Type "create card" to get one.'

    @staticmethod
    def card_details(card: VirtualCard) -> str:
        return (
            "💳 *Card Details*\n\n"
            f"Card: ****{card.last4}\n"
            f"Status: {card.status.value}\n"
            f"Balance: {fmt(card.balance, card.token)}\n\n"
            "⚠️ Keep card details private"
        )

    @staticmethod
    def card_selection(cards: List[VirtualCard]) -> str:
        lines = ["💳 *Select Card*", ""]
        for i, card in enumerate(cards, 1):
            lines.append(f"{i}. ****{card.last4} ({fmt(card.balance, card.token)})")
        lines.append("")
        lines.append(f"Reply with a number (1-{len(cards)})")
        return "\n".join(lines)

    @staticmethod
    def card_out_of_range(count: int) -> str:
        return f"❌ Pick a number between 1 and {count}, or *cancel*."

    @staticmethod
    def pin_weak(errors: List[str]) -> str:
        return "❌ " + "\n".join(errors) + "\n\nChoose a different 4-digit PIN."

    @staticmethod
    def payment_confirmed(amount: int, token: str) -> str:
        return f"✅ *Payment Confirmed!*\n\nMinting {fmt(amount, token)} into your wallet. I'll confirm once it lands."

    # Settlement notifications
    @staticmethod
    def settlement_success(operation: PendingOperation) -> str:
        link = f"{settings.explorer_tx_url}{operation.tx_hash}" if operation.tx_hash else ""
        amount = fmt(operation.amount, operation.token)
        messages = {
            OperationKind.CARD_CREATE: f"✅ *Virtual Card Created!*\n\nYour card is ready with {amount}.",
            OperationKind.DEPOSIT: f"✅ *Deposit Successful!*\n\n{amount} has been added to your wallet.",
            OperationKind.TRANSFER: f"✅ *Transfer Complete!*\n\n{amount} sent to {operation.metadata.get('recipient_label', operation.recipient)}.",
            OperationKind.WITHDRAW: f"✅ *Cash Out Complete!*\n\n{amount} is on its way to your bank.",
        }
        message = messages[operation.kind]
        return f"{message}\n\n🔗 View transaction: {link}" if link else message

    @staticmethod
    def settlement_failure(operation: PendingOperation, reason: str) -> str:
        label = KIND_LABELS[operation.kind]
        if reason == "timeout":
            detail = "It wasn't confirmed in time."
        elif reason == "reverted":
            detail = "The network rejected it."
        else:
            detail = "We hit a problem processing it."
        return (
            f"❌ *{label} Failed*\n\n"
            f"{fmt(operation.amount, operation.token)}: {detail}\n\n"
            'Check your balance with "balance" and try again, or type "help".'
        )

    @staticmethod
    def engagement(user: UserRecord) -> str:
        if user.kyc_level == KYCLevel.NONE:
            return '👋 Still there? Finish setup in 2 minutes: type "submit kyc".'
        if not user.has_pin:
            return '👋 You\'re one step away! Type "setup pin" to secure your account.'
        return '👋 We miss you! Type "balance" to check your funds or "buy 10000" to top up.'
