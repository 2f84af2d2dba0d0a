"""Duration parsing utilities.

Parses ISO 8601 duration strings used in product definitions and engine
settings and converts them to milliseconds for ledger arithmetic.
"""

import re

# Milliseconds in common time units
MILLIS_PER_SECOND = 1000
MILLIS_PER_MINUTE = 60 * MILLIS_PER_SECOND
MILLIS_PER_HOUR = 60 * MILLIS_PER_MINUTE
MILLIS_PER_DAY = 24 * MILLIS_PER_HOUR
MILLIS_PER_WEEK = 7 * MILLIS_PER_DAY
MILLIS_PER_MONTH = 30 * MILLIS_PER_DAY  # Standard approximation for billing
MILLIS_PER_YEAR = 365 * MILLIS_PER_DAY  # Standard approximation for billing

_DATE_UNITS = {
    "D": MILLIS_PER_DAY,
    "W": MILLIS_PER_WEEK,
    "M": MILLIS_PER_MONTH,
    "Y": MILLIS_PER_YEAR,
}

_TIME_UNITS = {
    "H": MILLIS_PER_HOUR,
    "M": MILLIS_PER_MINUTE,
    "S": MILLIS_PER_SECOND,
}


def parse_duration(period: str) -> int:
    """Parse ISO 8601 duration string to milliseconds.

    Supports a single date component or a single time component:
    - P[n]D, P[n]W, P[n]M, P[n]Y - billing periods (months are 30 days,
      years are 365 days)
    - PT[n]H, PT[n]M, PT[n]S - short windows such as payment deadlines

    Args:
        period: ISO 8601 duration string (e.g., "P1M", "P1Y", "PT10M")

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the period string is invalid or unsupported

    Examples:
        >>> parse_duration("P30D")
        2592000000

        >>> parse_duration("PT10M")
        600000
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise ValueError(f"Invalid period format: '{period}'. Must start with 'P'")

    duration_str = period[1:]

    if not duration_str:
        raise ValueError(f"Invalid period format: '{period}'. No duration specified")

    if duration_str.startswith("T"):
        pattern = r'^T(\d+)?([HMS])$'
        units = _TIME_UNITS
    else:
        pattern = r'^(\d+)?([DWMY])$'
        units = _DATE_UNITS

    match = re.match(pattern, duration_str)

    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y, PT[n]H, PT[n]M, PT[n]S"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1

    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")

    return number * units[unit]


def validate_duration(period: str) -> bool:
    """Validate that a string is a supported duration.

    Examples:
        >>> validate_duration("P1M")
        True

        >>> validate_duration("monthly")
        False
    """
    try:
        parse_duration(period)
        return True
    except (ValueError, TypeError):
        return False
