from __future__ import annotations

from decimal import Decimal, InvalidOperation

# ISO 4217 minor-unit exponents for the currencies the processors settle in.
CURRENCY_EXPONENTS: dict[str, int] = {
    "AED": 2,
    "AUD": 2,
    "BHD": 3,
    "BIF": 0,
    "BWP": 2,
    "CAD": 2,
    "CHF": 2,
    "CLP": 0,
    "CNY": 2,
    "DJF": 0,
    "EGP": 2,
    "ETB": 2,
    "EUR": 2,
    "GBP": 2,
    "GHS": 2,
    "GNF": 0,
    "INR": 2,
    "IQD": 3,
    "JOD": 3,
    "JPY": 0,
    "KES": 2,
    "KMF": 0,
    "KRW": 0,
    "KWD": 3,
    "LYD": 3,
    "MAD": 2,
    "MUR": 2,
    "MWK": 2,
    "MZN": 2,
    "NGN": 2,
    "OMR": 3,
    "PYG": 0,
    "RWF": 0,
    "SAR": 2,
    "SLE": 2,
    "TND": 3,
    "TZS": 2,
    "UGX": 0,
    "USD": 2,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
    "ZAR": 2,
    "ZMW": 2,
}

SUPPORTED_CURRENCIES = frozenset(CURRENCY_EXPONENTS)


def normalize_currency(code: str | None) -> str | None:
    """Upper-cased ISO code, or None when the code is not supported."""
    value = (code or "").strip().upper()
    if value not in CURRENCY_EXPONENTS:
        return None
    return value


def currency_exponent(code: str) -> int:
    try:
        return CURRENCY_EXPONENTS[code.upper()]
    except KeyError as err:
        raise ValueError(f"Unsupported currency '{code}'") from err


def minor_to_major(amount_minor: int, currency: str) -> Decimal:
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise TypeError("amount_minor must be an int")
    return Decimal(amount_minor).scaleb(-currency_exponent(currency))


def format_major(amount_minor: int, currency: str) -> str:
    exponent = currency_exponent(currency)
    value = minor_to_major(amount_minor, currency)
    return f"{value:.{exponent}f}"


def major_to_minor(amount: Decimal | str | int | float, currency: str) -> int:
    """Convert a processor's major-unit amount to minor units.

    Floats are routed through ``str`` so ``49.99`` becomes ``4999`` rather than
    ``4998``. Amounts with more precision than the currency allows are rejected.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as err:
        raise ValueError(f"Invalid amount '{amount}'") from err
    scaled = value.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount '{amount}' has more precision than {currency} allows")
    return int(scaled)


def whole_minor_units(amount: Decimal | str | int | float) -> int:
    """Read an amount a processor already reports in minor units."""
    if isinstance(amount, bool):
        raise ValueError(f"Invalid amount '{amount}'")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as err:
        raise ValueError(f"Invalid amount '{amount}'") from err
    if not value.is_finite() or value != value.to_integral_value():
        raise ValueError(f"Amount '{amount}' is not a whole number of minor units")
    return int(value)
