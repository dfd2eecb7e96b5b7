"""
Currency and Money Module

ISO 4217 currency codes and an immutable Decimal-backed Money type used for
every amount in the lending engine. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from functools import total_ordering
from typing import Any, Union
from enum import Enum

# High precision for intermediate interest calculations
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with ledger precision"""
    RWF = ("RWF", 2)  # Rwandan Franc, ledger keeps two decimals
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 2)  # Ugandan Shilling, ledger keeps two decimals
    TZS = ("TZS", 2)  # Tanzanian Shilling
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


@total_ordering
@dataclass(frozen=True, eq=False)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Amounts are quantized ROUND_HALF_UP to the currency precision on creation.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        """Zero amount in the given currency"""
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {operation} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Union[Decimal, int]) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def is_zero(self) -> bool:
        return not self.amount

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def floor_zero(self) -> 'Money':
        """Clamp negative amounts to zero"""
        if self.is_negative():
            return Money.zero(self.currency)
        return self

    def to_string(self) -> str:
        """Display form, e.g. RWF 1,200,000.00"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def round_amount(value: Decimal, places: int = 2) -> Decimal:
    """Round a raw Decimal ROUND_HALF_UP to the given number of places"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def money_from_storage(value: Any, currency: Currency) -> Money:
    """Rebuild Money from a stored decimal string"""
    if value is None or value == "":
        return Money.zero(currency)
    return Money(Decimal(str(value)), currency)
