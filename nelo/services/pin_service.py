"""Transaction PIN validation and hashing."""

import hashlib
import hmac
import re
import secrets
from typing import List, Tuple
from nelo.utils.config import settings

WEAK_PINS = {
    "0000", "1111", "2222", "3333", "4444", "5555", "6666", "7777", "8888", "9999",
    "1234", "4321", "0123", "9876",
}


class PinService:
    """Stateless PIN helpers; hashes are stored on the user record."""

    @staticmethod
    def validate_format(pin: str) -> List[str]:
        """Return a list of problems; empty when the PIN is acceptable."""
        errors = []
        if not re.fullmatch(r"\d{4}", pin or ""):
            errors.append("PIN must be exactly 4 digits")
        elif pin in WEAK_PINS:
            errors.append("PIN is too weak. Avoid sequential or repeated numbers")
        return errors

    @staticmethod
    def hash_pin(pin: str, salt: str = "") -> Tuple[str, str]:
        salt = salt or secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", pin.encode(), bytes.fromhex(salt), settings.pin_hash_iterations)
        return digest.hex(), salt

    @classmethod
    def verify_pin(cls, pin: str, pin_hash: str, salt: str) -> bool:
        if not pin_hash or not salt:
            return False
        candidate, _ = cls.hash_pin(pin, salt)
        return hmac.compare_digest(candidate, pin_hash)
