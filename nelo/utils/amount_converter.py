#!/usr/bin/env python3
"""
Amount Converter Utility
Centralized conversion between whole token amounts and integer minor units.
All fee and balance arithmetic happens on the integer side.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union
from nelo.utils.config import settings
from nelo.utils.exceptions import ValidationError


class AmountConverter:
    """
    Centralized amount conversion utility.
    Keeps token decimals in one place instead of scattering 10**6 around.
    """

    @classmethod
    def to_minor(cls, amount: Union[str, int, Decimal], token: str = "cngn") -> int:
        """
        Convert a whole token amount to minor units.

        Args:
            amount: Amount as typed by the user ("1000", "12.5")
            token: Token key (cngn, usdc)

        Returns:
            Amount in minor units

        Raises:
            ValidationError: If the amount is not a positive number or has too many decimals
        """
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {amount}")

        if not value.is_finite() or value <= 0:
            raise ValidationError(f"Amount must be positive: {amount}")

        decimals = settings.token_decimals(token)
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValidationError(f"Too many decimal places for {token}: {amount}")

        return int(scaled)

    @classmethod
    def from_minor(cls, amount: int, token: str = "cngn") -> Decimal:
        """Convert minor units back to a whole token Decimal."""
        return Decimal(amount).scaleb(-settings.token_decimals(token))

    @classmethod
    def whole_to_minor(cls, amount: int, token: str = "cngn") -> int:
        """Scale an integer whole-unit setting (caps, floors) to minor units."""
        return amount * 10 ** settings.token_decimals(token)

    @classmethod
    def format_amount(cls, amount: int, token: str = "cngn") -> str:
        """
        Format a minor-unit amount for display.

        Args:
            amount: Amount in minor units
            token: Token key

        Returns:
            Formatted amount string, e.g. "₦1,000.00 cNGN"
        """
        info = settings.get_token_info(token)
        exact = cls.from_minor(amount, token)
        value = exact.quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        if value == 0 and exact > 0:
            # sub-cent network fees
            return f"{info['symbol']}{exact.normalize():f} {info['code']}"
        return f"{info['symbol']}{value:,.2f} {info['code']}"
