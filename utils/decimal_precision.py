#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage for balances, fees and locked amounts
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 50


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    LOCK_PRECISION = Decimal("0.01")  # funds_locks.amount_locked is NUMERIC(18, 2)

    @classmethod
    def to_decimal(cls, value: Union[str, int, Decimal], context: str = "monetary") -> Decimal:
        """Convert to Decimal, raising ValueError instead of defaulting to zero.

        Floats are rejected: balances and fees must never pass through binary
        floating point.
        """
        if isinstance(value, Decimal):
            decimal_value = value
        elif isinstance(value, bool) or isinstance(value, float) or value is None:
            raise ValueError(f"{context}: expected a decimal string, got {type(value).__name__}")
        else:
            try:
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                raise ValueError(f"{context}: {value!r} is not a valid decimal") from e

        if not decimal_value.is_finite():
            raise ValueError(f"{context}: {value!r} is not a finite decimal")
        return decimal_value

    @classmethod
    def parse_balance(cls, value: str) -> Optional[Decimal]:
        """Parse an oracle balance string; None for sentinels and junk"""
        try:
            return cls.to_decimal(value, "balance")
        except ValueError:
            return None

    @classmethod
    def is_sufficient(cls, available: Union[str, Decimal], required: Union[str, Decimal]) -> bool:
        """available >= required, inclusive on ties"""
        return cls.to_decimal(available, "available") >= cls.to_decimal(required, "required")

    @classmethod
    def quantize_lock(cls, amount: Union[str, int, Decimal]) -> Decimal:
        """Quantize to the precision stored on funds locks"""
        return cls.to_decimal(amount, "lock_amount").quantize(cls.LOCK_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_base_units(cls, amount: Union[str, Decimal], decimals: int) -> int:
        """Token amount to integer base units (e.g. 50 USDC -> 50000000)"""
        scaled = cls.to_decimal(amount, "transfer_amount").scaleb(decimals)
        base_units = scaled.to_integral_value(rounding=ROUND_DOWN)
        if base_units != scaled:
            logger.warning(f"⚠️ AMOUNT_TRUNCATED: {amount} exceeds {decimals} decimals, truncated to {base_units}")
        return int(base_units)

    @classmethod
    def from_base_units(cls, raw: Union[int, str], decimals: int) -> Decimal:
        """Integer base units to a token amount"""
        return Decimal(int(raw)).scaleb(-decimals)

    @classmethod
    def format_amount(cls, amount: Decimal) -> str:
        """Plain decimal string without exponent or trailing zeros"""
        if amount == amount.to_integral_value():
            return str(amount.quantize(Decimal(1)))
        return format(amount.normalize(), "f")
