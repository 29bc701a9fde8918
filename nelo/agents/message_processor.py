#!/usr/bin/env python3
"""
Message Processor Module
Maps free text to a structured Intent using a fixed, ordered pattern table.
Pure: no I/O, no session access.
"""

import re
from typing import Dict, List, Optional, Any, Tuple, Pattern, Callable
from nelo.schemas.core import Command, Intent, NamedRecipient, AddressRecipient
from nelo.utils.config import settings

AMOUNT = r"(?P<amount>\d+(?:\.\d{1,6})?)"
TOKEN = r"(?:\s+(?P<token>cngn|usdc))?"
ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Exact phrases, matched after normalization
LITERAL_COMMANDS: List[Tuple[Command, List[str]]] = [
    (Command.HELP, ["help", "menu", "commands", "hi", "hello", "start"]),
    (Command.BALANCE, ["balance", "check balance", "my balance"]),
    (Command.LIST_CARDS, ["my cards", "list cards", "cards", "view card"]),
    (Command.SUBMIT_KYC, ["submit kyc", "kyc", "verify id"]),
    (Command.SETUP_PIN, ["setup pin", "set pin", "create pin"]),
    (Command.CREATE_CARD, ["create card", "new card"]),
    (Command.DEPOSIT_INFO, ["deposit", "fund wallet"]),
    (Command.MY_BANKS, ["my banks", "bank accounts"]),
    (Command.HISTORY, ["history", "show history", "transactions", "my transactions", "recent", "activity"]),
    (Command.CANCEL, ["cancel", "stop", "abort"]),
]

# Evaluated in priority order
PARAMETRIZED_COMMANDS: List[Tuple[Command, str]] = [
    (Command.BUY, rf"^buy\s+{AMOUNT}{TOKEN}$"),
    (Command.CONFIRM_PAYMENT, rf"^paid\s+{AMOUNT}{TOKEN}$"),
    (Command.SEND, rf"^(?:send|transfer|pay)\s+{AMOUNT}{TOKEN}\s+to\s+(?P<recipient>\S+)$"),
    (Command.CASH_OUT, rf"^(?:cash\s?out|withdraw)\s+{AMOUNT}(?:\s+cngn)?$"),
    (
        Command.ADD_BANK,
        r"^add\s+bank\s+(?P<bank>[a-z][a-z&.' -]*?)\s*,?\s*(?:account\s+)?(?P<account>\d{10})\s*,?\s*(?P<name>[a-z][a-z.' -]*)$",
    ),
]

USAGE_PREFIXES: List[Tuple[Command, Pattern]] = [
    (Command.BUY, re.compile(r"^buy\b")),
    (Command.CONFIRM_PAYMENT, re.compile(r"^paid\b")),
    (Command.SEND, re.compile(r"^(?:send|transfer|pay)\b")),
    (Command.CASH_OUT, re.compile(r"^(?:cash\s?out|withdraw)\b")),
    (Command.ADD_BANK, re.compile(r"^add\s+bank\b")),
]


def normalize(text: str) -> str:
    """Trim and collapse internal whitespace; case is preserved."""
    return re.sub(r"\s+", " ", text or "").strip()


class MessageProcessor:
    """Intent parser backed by a declarative pattern table."""

    def __init__(self, handle_suffix: Optional[str] = None):
        suffix = (handle_suffix or settings.handle_suffix).lower().strip(".")
        self.handle_pattern = re.compile(rf"^[a-z0-9][a-z0-9-]*(?:\.[a-z0-9-]+)*\.{re.escape(suffix)}$")
        self.literals: Dict[str, Command] = {
            phrase: command for command, phrases in LITERAL_COMMANDS for phrase in phrases
        }
        self.patterns: List[Tuple[Command, Pattern]] = [
            (command, re.compile(pattern, re.IGNORECASE)) for command, pattern in PARAMETRIZED_COMMANDS
        ]
        self.extractors: Dict[Command, Callable[[Command, re.Match], Intent]] = {
            Command.BUY: self._amount_args,
            Command.CONFIRM_PAYMENT: self._amount_args,
            Command.CASH_OUT: self._amount_args,
            Command.SEND: self._send_args,
            Command.ADD_BANK: self._bank_args,
        }

    def parse(self, text: str) -> Intent:
        """Classify text. Unmatched input yields Command.INVALID, never an exception."""
        cleaned = normalize(text)
        lowered = cleaned.lower()

        literal = self.literals.get(lowered)
        if literal is not None:
            return Intent(command=literal)

        for command, pattern in self.patterns:
            match = pattern.match(cleaned)
            if match:
                return self.extractors[command](command, match)

        for command, prefix in USAGE_PREFIXES:
            if prefix.match(lowered):
                return Intent(command=Command.INVALID, args={"reason": "usage", "usage": command.value})

        return Intent(command=Command.INVALID, args={"reason": "unknown"})

    def classify_recipient(self, raw: str) -> Optional[Any]:
        """Tag a recipient as a handle or a raw address; None if neither."""
        if ADDRESS_PATTERN.match(raw):
            return AddressRecipient(address=raw)
        if self.handle_pattern.match(raw.lower()):
            return NamedRecipient(handle=raw.lower())
        return None

    def _amount_args(self, command: Command, match: re.Match) -> Intent:
        token = (match.groupdict().get("token") or "cngn").lower()
        return Intent(command=command, args={"amount": match.group("amount"), "token": token})

    def _send_args(self, command: Command, match: re.Match) -> Intent:
        raw = match.group("recipient")
        recipient = self.classify_recipient(raw)
        if recipient is None:
            return Intent(command=Command.INVALID, args={"reason": "recipient", "recipient": raw})
        return Intent(command=command, args={
            "amount": match.group("amount"),
            "token": (match.group("token") or "cngn").lower(),
            "recipient": recipient,
        })

    def _bank_args(self, command: Command, match: re.Match) -> Intent:
        return Intent(command=command, args={
            "bank_name": match.group("bank").strip().title(),
            "account_number": match.group("account"),
            "account_name": match.group("name").strip().title(),
        })

    @staticmethod
    def is_numeric_choice(text: str) -> Optional[int]:
        cleaned = normalize(text)
        return int(cleaned) if cleaned.isdigit() else None
