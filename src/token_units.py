"""
Fixed-point token amount helpers.

Token amounts are plain ints in the smallest unit (18 implied decimals).
Decimal is used only at the edges, for parsing and display.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from errors import InvalidAmountError

TOKEN_DECIMALS = 18
ONE_TOKEN = 10**TOKEN_DECIMALS
TOKEN_SYMBOL = "TIP"

_SCALE = Decimal(ONE_TOKEN)


def parse_token_amount(value: str | int | float | Decimal) -> int:
    """
    Convert a decimal token value ("1.5", 2, Decimal("0.001")) to base units.

    Raises:
        InvalidAmountError: If the value is negative, malformed, or has more
            than 18 fractional digits
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid token amount: {value!r}")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Invalid token amount: {value!r}") from e

    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid token amount: {value!r}")
    if amount < 0:
        raise InvalidAmountError("Token amount cannot be negative", details={"value": str(value)})

    units = amount * _SCALE
    if units != units.to_integral_value():
        raise InvalidAmountError(
            f"Token amount has more than {TOKEN_DECIMALS} decimal places",
            details={"value": str(value)},
        )
    return int(units)


def parse_base_units(value: str | int) -> int:
    """Parse an integer amount given in base units (as sent over the wire)."""
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        amount = value
    else:
        text = str(value).strip()
        if not text.lstrip("-").isdigit():
            raise InvalidAmountError(f"Invalid amount: {value!r}")
        amount = int(text)
    if amount < 0:
        raise InvalidAmountError("Amount cannot be negative", details={"value": str(value)})
    return amount


def format_token_amount(amount: int) -> str:
    """
    Render base units as an exact decimal token string.

    Trailing zeros are trimmed but one fractional digit is kept:
    10**18 -> "1.0", 48 * 10**15 -> "0.048", 0 -> "0.0".
    """
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), ONE_TOKEN)
    frac_str = str(frac).rjust(TOKEN_DECIMALS, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_str}"


def format_display_amount(
    amount: int,
    decimals: int = 4,
    include_symbol: bool = True,
    compact: bool = False,
) -> str:
    """
    Render an amount for humans, e.g. "1.25 TIP" or "12.5K TIP".

    Args:
        amount: Amount in base units
        decimals: Fractional digits before trimming
        include_symbol: Append the token symbol
        compact: Use K/M notation for values of 1,000 and above
    """
    value = Decimal(amount) / _SCALE

    if compact and value >= 1_000_000:
        text = _quantize(value / 1_000_000, 2) + "M"
    elif compact and value >= 1_000:
        text = _quantize(value / 1_000, 2) + "K"
    else:
        text = _quantize(value, decimals)

    return f"{text} {TOKEN_SYMBOL}" if include_symbol else text


def _quantize(value: Decimal, places: int) -> str:
    text = format(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
