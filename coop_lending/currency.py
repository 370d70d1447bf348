"""
Money Module

Integer minor-unit money for the lending core. Amounts are held as a count of
the currency's smallest unit (centavos for PHP) and NEVER as float. Decimal is
used only for rates and for conversion at the presentation boundary.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union

# Rates are raised to powers of up to a few hundred periods
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    PHP = ("PHP", 2)  # Philippine Peso, centavos
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by ISO code"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money value in integer minor units.

    Arithmetic between two Money values requires the same currency. Rates are
    applied through apply_rate(), which always states its rounding.
    """
    minor: int
    currency: Currency

    def __post_init__(self):
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise TypeError(f"Money requires an integer minor-unit amount, got {type(self.minor).__name__}")

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(0, currency)

    @classmethod
    def from_major(cls, value: Union[Decimal, str, int], currency: Currency) -> 'Money':
        """
        Convert a major-unit amount (e.g. pesos) to minor units.

        Only for the presentation boundary; the core itself never holds major units.
        """
        if isinstance(value, float):
            raise TypeError("Use Decimal or str for major-unit amounts, not float")
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to a money amount")
        scaled = (amount * (Decimal(10) ** currency.precision)).quantize(
            Decimal('1'), rounding=ROUND_HALF_UP
        )
        return cls(int(scaled), currency)

    def to_major(self) -> Decimal:
        """Major-unit Decimal for display and export"""
        return Decimal(self.minor).scaleb(-self.currency.precision)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.minor - other.minor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.minor, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.minor), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor < other.minor

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor <= other.minor

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor > other.minor

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor >= other.minor

    def apply_rate(self, rate: Decimal, rounding: str = ROUND_HALF_UP) -> 'Money':
        """Multiply by a Decimal rate and round to a whole minor unit"""
        if not isinstance(rate, Decimal):
            rate = Decimal(str(rate))
        product = (Decimal(self.minor) * rate).quantize(Decimal('1'), rounding=rounding)
        return Money(int(product), self.currency)

    def is_zero(self) -> bool:
        return self.minor == 0

    def is_positive(self) -> bool:
        return self.minor > 0

    def is_negative(self) -> bool:
        return self.minor < 0

    def to_string(self) -> str:
        """Format for logs and audit metadata"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.to_major():,.0f}"
        return f"{self.currency.code} {self.to_major():,.{self.currency.precision}f}"


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, returning zero in `currency` for an empty iterable"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
