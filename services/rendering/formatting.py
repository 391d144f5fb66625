"""Display formatting for invoice values."""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "CAD": "C$",
    "AUD": "A$",
    "JMD": "J$",
}

CENTS = Decimal("0.01")


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def currency_symbol(currency: str) -> str:
    """Symbol for a currency code, or ``"{code} "`` when unknown."""
    code = (currency or "").upper()
    return CURRENCY_SYMBOLS.get(code, f"{code} ")


def format_currency(amount: Decimal, currency: str = "USD") -> str:
    """Format an amount with two decimals, thousands separators and symbol.

    Examples:
        >>> format_currency(Decimal("1234.5"), "USD")
        '$1,234.50'
        >>> format_currency(Decimal("10"), "CHF")
        'CHF 10.00'
    """
    return f"{currency_symbol(currency)}{round_money(Decimal(amount)):,.2f}"


def format_hours(hours: Decimal) -> str:
    """Hours with one decimal place, or two when needed (7.25)."""
    text = f"{Decimal(hours).quantize(CENTS, rounding=ROUND_HALF_UP):.2f}"
    return text[:-1] if text.endswith("0") else text


def mask_account_number(account_number: str) -> str:
    """Hide all but the last four characters of an account number.

    Numbers of four characters or fewer are returned unchanged.
    """
    if len(account_number) <= 4:
        return account_number
    return "*" * (len(account_number) - 4) + account_number[-4:]


def format_long_date(value: date) -> str:
    """e.g. October 19, 2026"""
    return f"{value:%B} {value.day}, {value.year}"


def format_timestamp(value: datetime) -> str:
    """e.g. October 19, 2026 at 3:05 PM UTC"""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    zone = value.tzname() or ""
    return f"{format_long_date(value.date())} at {hour}:{value.minute:02d} {suffix} {zone}".rstrip()


def format_work_period(work_period: str | None) -> str:
    """Turn ``YYYY-MM`` into ``Month YYYY``; unparseable input is returned as-is."""
    if not work_period:
        return ""
    try:
        parsed = datetime.strptime(work_period, "%Y-%m")
    except ValueError:
        return work_period
    return f"{parsed:%B %Y}"
