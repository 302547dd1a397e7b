"""
Monetary Amounts

Money is held as an integer count of minor units plus an ISO 4217
currency code. Floats are rejected at every entry point and arithmetic
between different currencies raises CurrencyMismatch.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Union

from reconciliation.errors import InvalidAmount, CurrencyMismatch


# ISO 4217 exponents that differ from the default of 2
_CURRENCY_EXPONENTS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0,
    "KMF": 0, "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "UYI": 0,
    "VND": 0, "VUV": 0, "XAF": 0, "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
}

DEFAULT_EXPONENT = 2


def currency_exponent(currency: str) -> int:
    """Number of decimal places used by a currency."""
    return _CURRENCY_EXPONENTS.get(currency, DEFAULT_EXPONENT)


def normalise_currency(currency: str) -> str:
    if not isinstance(currency, str):
        raise InvalidAmount(f"Currency code must be a string, got {type(currency).__name__}")
    code = currency.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidAmount(f"Invalid ISO currency code: {currency!r}")
    return code


@dataclass(frozen=True, order=False)
class MonetaryAmount:
    """
    Exact amount of money in one currency.

    ``minor_units`` is the integer count of the smallest unit
    (cents for EUR, yen for JPY, fils for KWD).
    """
    minor_units: int
    currency: str

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmount(
                f"Minor units must be an integer, got {type(self.minor_units).__name__}"
            )
        object.__setattr__(self, "currency", normalise_currency(self.currency))

    # ==================== Construction ====================

    @classmethod
    def zero(cls, currency: str) -> "MonetaryAmount":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: Union[Decimal, int, str], currency: str) -> "MonetaryAmount":
        """
        Build an amount from a major-unit decimal value.

        Raises InvalidAmount for floats, unparsable strings and values
        carrying more precision than the currency supports.
        """
        currency = normalise_currency(currency)
        if isinstance(value, float) or isinstance(value, bool):
            raise InvalidAmount(
                "Floating-point amounts are not accepted; pass a decimal string",
                {"value": repr(value)}
            )
        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Invalid amount: {value!r}", {"value": str(value)})

        if not amount.is_finite():
            raise InvalidAmount(f"Invalid amount: {value!r}", {"value": str(value)})

        exponent = currency_exponent(currency)
        scaled = amount.scaleb(exponent)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"{amount} has more than {exponent} decimal places for {currency}",
                {"value": str(amount), "currency": currency}
            )
        return cls(int(scaled), currency)

    # ==================== Conversion ====================

    def to_decimal(self) -> Decimal:
        exponent = currency_exponent(self.currency)
        return Decimal(self.minor_units).scaleb(-exponent)

    def to_string(self) -> str:
        """Fixed-point string with exactly the currency's decimal places."""
        exponent = currency_exponent(self.currency)
        quantum = Decimal(1).scaleb(-exponent)
        return str(self.to_decimal().quantize(quantum))

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.to_string(), "currency": self.currency}

    # ==================== Arithmetic ====================

    def _check_currency(self, other: "MonetaryAmount") -> None:
        if not isinstance(other, MonetaryAmount):
            raise TypeError(f"Cannot combine MonetaryAmount with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"Cannot combine {self.currency} with {other.currency}",
                {"left": self.currency, "right": other.currency}
            )

    def __add__(self, other: "MonetaryAmount") -> "MonetaryAmount":
        self._check_currency(other)
        return MonetaryAmount(self.minor_units + other.minor_units, self.currency)

    def __sub__(self, other: "MonetaryAmount") -> "MonetaryAmount":
        self._check_currency(other)
        return MonetaryAmount(self.minor_units - other.minor_units, self.currency)

    def __neg__(self) -> "MonetaryAmount":
        return MonetaryAmount(-self.minor_units, self.currency)

    def __abs__(self) -> "MonetaryAmount":
        return MonetaryAmount(abs(self.minor_units), self.currency)

    def __lt__(self, other: "MonetaryAmount") -> bool:
        self._check_currency(other)
        return self.minor_units < other.minor_units

    def __le__(self, other: "MonetaryAmount") -> bool:
        self._check_currency(other)
        return self.minor_units <= other.minor_units

    def __gt__(self, other: "MonetaryAmount") -> bool:
        self._check_currency(other)
        return self.minor_units > other.minor_units

    def __ge__(self, other: "MonetaryAmount") -> bool:
        self._check_currency(other)
        return self.minor_units >= other.minor_units

    # ==================== Predicates ====================

    @property
    def is_zero(self) -> bool:
        return self.minor_units == 0

    @property
    def is_positive(self) -> bool:
        return self.minor_units > 0

    @property
    def is_negative(self) -> bool:
        return self.minor_units < 0

    def __str__(self) -> str:
        return f"{self.to_string()} {self.currency}"


def sum_amounts(amounts, currency: str) -> MonetaryAmount:
    """Sum amounts of one currency, starting from zero."""
    total = MonetaryAmount.zero(currency)
    for amount in amounts:
        total = total + amount
    return total
