"""Error taxonomy shared by the command engine, services and workers."""

from typing import Optional, Dict, Any


class NeloError(Exception):
    """Base error carrying a message safe to show to the user."""

    user_message = "❌ Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        self.message = message
        if user_message:
            self.user_message = user_message
        super().__init__(self.message)


class ValidationError(NeloError):
    """Malformed or unsupported command."""

    user_message = "🤔 I didn't understand that. Type *help* to see what I can do."


class InvalidRecipient(ValidationError):
    """Recipient handle could not be resolved or address is malformed."""

    def __init__(self, recipient: str):
        super().__init__(
            f"Invalid recipient: {recipient}",
            user_message=(
                f"❌ I couldn't find *{recipient}*.\n\n"
                "Send to a registered name (e.g. alice.base.eth) or a wallet address (0x...)."
            ),
        )
        self.recipient = recipient


class PermissionDenied(NeloError):
    """KYC or PIN gate not satisfied."""

    user_message = "🔒 You can't do that yet."


class InvalidPIN(PermissionDenied):
    """Wrong transaction PIN."""

    def __init__(self, attempts_left: int):
        super().__init__(
            f"Invalid PIN, {attempts_left} attempts left",
            user_message=f"❌ Wrong PIN. {attempts_left} attempt(s) left. Reply with your 4-digit PIN or *cancel*.",
        )
        self.attempts_left = attempts_left


class InsufficientBalance(NeloError):
    """Balance does not cover amount plus fees."""

    def __init__(self, required: int, available: int, token: str = "cngn"):
        self.required = required
        self.available = available
        self.shortfall = required - available
        self.token = token
        super().__init__(f"Insufficient balance: need {required}, have {available} ({token})")


class ExternalCapabilityError(NeloError):
    """A custody, KYC, payment or resolver call failed."""

    user_message = "⚠️ We couldn't complete that right now. Nothing was charged, please try again shortly."

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_data: Optional[Dict[str, Any]] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data
        self.transient = transient


class SettlementTimeout(NeloError, TimeoutError):
    """Settlement monitoring exceeded its deadline."""

    def __init__(self, operation_id: str, timeout: float):
        super().__init__(f"Settlement {operation_id} not confirmed within {timeout}s")
        self.operation_id = operation_id
        self.timeout = timeout
