"""
Odds Normalizer.

Converts prices between the three bookmaker representations, always going
through decimal odds as the intermediate:

    american  +150 / -200   ->  2.50 / 1.50
    fractional 3/2 / 1/2    ->  2.50 / 1.50

All arithmetic runs in a fixed-precision decimal context so stake amounts
computed downstream are not skewed by binary floating point error.
"""

from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
from fractions import Fraction
from typing import Union

from src.engine.errors import InvalidOdds
from src.models.schemas import OddsFormat

OddsValue = Union[Decimal, int, float, str, Fraction, tuple]

# Decimal context used for every conversion
PRICE_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)

# Largest denominator used when approximating decimal odds as a fraction
MAX_FRACTION_DENOMINATOR = 100

ONE = Decimal(1)
TWO = Decimal(2)
HUNDRED = Decimal(100)


def _to_number(value, odds_format: OddsFormat) -> Decimal:
    """Coerce a scalar odds value into a finite Decimal."""
    if isinstance(value, bool):
        raise InvalidOdds(value, odds_format.value, "not a number")
    try:
        if isinstance(value, Decimal):
            number = value
        elif isinstance(value, int):
            number = Decimal(value)
        elif isinstance(value, float):
            # repr keeps the shortest round-tripping form (2.2, not 2.2000000000000001776)
            number = Decimal(repr(value))
        elif isinstance(value, Fraction):
            with localcontext(PRICE_CONTEXT):
                number = Decimal(value.numerator) / Decimal(value.denominator)
        elif isinstance(value, str):
            number = Decimal(value.strip().lstrip("+"))
        else:
            raise InvalidOdds(value, odds_format.value, f"unsupported type {type(value).__name__}")
    except InvalidOperation:
        raise InvalidOdds(value, odds_format.value, "not a number") from None
    if not number.is_finite():
        raise InvalidOdds(value, odds_format.value, "not finite")
    return number


def _parse_fraction(value) -> tuple[Decimal, Decimal]:
    """Split a fractional price into (numerator, denominator)."""
    fmt = OddsFormat.FRACTIONAL
    if isinstance(value, Fraction):
        num, den = Decimal(value.numerator), Decimal(value.denominator)
    elif isinstance(value, (tuple, list)):
        if len(value) != 2:
            raise InvalidOdds(value, fmt.value, "expected (numerator, denominator)")
        num, den = _to_number(value[0], fmt), _to_number(value[1], fmt)
    elif isinstance(value, str) and "/" in value:
        raw_num, _, raw_den = value.partition("/")
        num, den = _to_number(raw_num, fmt), _to_number(raw_den, fmt)
    else:
        # A bare number is read as "n/1"
        num, den = _to_number(value, fmt), ONE

    if den <= 0:
        raise InvalidOdds(value, fmt.value, "denominator must be positive")
    if num <= 0:
        raise InvalidOdds(value, fmt.value, "numerator must be positive")
    return num, den


def american_to_decimal(american: OddsValue) -> Decimal:
    """Convert American odds (+150 / -200) to decimal odds."""
    value = _to_number(american, OddsFormat.AMERICAN)
    if value == 0:
        raise InvalidOdds(american, OddsFormat.AMERICAN.value, "american odds cannot be 0")
    # Magnitudes below 100 are unusual quoting but still map above 1
    with localcontext(PRICE_CONTEXT):
        if value > 0:
            return value / HUNDRED + ONE
        return HUNDRED / abs(value) + ONE


def fractional_to_decimal(fractional: OddsValue) -> Decimal:
    """Convert fractional odds (3/2) to decimal odds."""
    num, den = _parse_fraction(fractional)
    with localcontext(PRICE_CONTEXT):
        return num / den + ONE


def validate_decimal(decimal_odds: OddsValue) -> Decimal:
    """Return decimal odds as a Decimal, rejecting prices at or below 1."""
    value = _to_number(decimal_odds, OddsFormat.DECIMAL)
    if value <= ONE:
        raise InvalidOdds(decimal_odds, OddsFormat.DECIMAL.value, "decimal odds must exceed 1")
    return value


def decimal_to_american(decimal_odds: OddsValue) -> Decimal:
    """Convert decimal odds to American odds."""
    value = validate_decimal(decimal_odds)
    with localcontext(PRICE_CONTEXT):
        if value >= TWO:
            return (value - ONE) * HUNDRED
        return -HUNDRED / (value - ONE)


def decimal_to_fractional(decimal_odds: OddsValue) -> Fraction:
    """
    Convert decimal odds to the closest fraction with a denominator of at
    most MAX_FRACTION_DENOMINATOR.
    """
    value = validate_decimal(decimal_odds)
    profit = Fraction(value - ONE)
    approx = profit.limit_denominator(MAX_FRACTION_DENOMINATOR)
    if approx <= 0:
        # Prices a hair above 1.00 would otherwise collapse to 0/1
        approx = Fraction(1, MAX_FRACTION_DENOMINATOR)
    return approx


def to_decimal(value: OddsValue, odds_format: OddsFormat) -> Decimal:
    """Normalize any supported representation to decimal odds."""
    odds_format = OddsFormat(odds_format)
    if odds_format is OddsFormat.DECIMAL:
        return validate_decimal(value)
    if odds_format is OddsFormat.AMERICAN:
        return american_to_decimal(value)
    return fractional_to_decimal(value)


def convert(value: OddsValue, from_format: OddsFormat, to_format: OddsFormat) -> Union[Decimal, Fraction]:
    """
    Convert odds between formats.

    Returns a Decimal for american/decimal targets and a Fraction for
    fractional targets. Raises InvalidOdds for american 0, decimal <= 1 or a
    non-positive fractional denominator.
    """
    decimal_odds = to_decimal(value, from_format)
    to_format = OddsFormat(to_format)
    if to_format is OddsFormat.DECIMAL:
        return decimal_odds
    if to_format is OddsFormat.AMERICAN:
        return decimal_to_american(decimal_odds)
    return decimal_to_fractional(decimal_odds)


def implied_probability(decimal_odds: OddsValue) -> Decimal:
    """Implied probability (1 / decimal price), including the bookmaker margin."""
    value = validate_decimal(decimal_odds)
    with localcontext(PRICE_CONTEXT):
        return ONE / value


def format_odds(value: OddsValue, odds_format: OddsFormat) -> str:
    """Human readable rendering, e.g. '+120', '-200', '2.20', '6/5'."""
    odds_format = OddsFormat(odds_format)
    if odds_format is OddsFormat.FRACTIONAL:
        num, den = _parse_fraction(value)
        frac = Fraction(num) / Fraction(den)
        return f"{frac.numerator}/{frac.denominator}"
    if odds_format is OddsFormat.AMERICAN:
        american = _to_number(value, odds_format)
        return f"{american:+.0f}"
    return f"{validate_decimal(value):.2f}"
