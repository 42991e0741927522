"""Utility functions for money rounding, summaries, dates, and filtering."""
import datetime as dt
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from models import Transaction

TRANSACTION_TYPES = ("income", "expense")
SOURCES = ("manual", "voice", "photo", "wechat", "alipay", "qr")


def to_decimal(value: Any) -> Decimal:
    """Convert ints/floats/strings/Decimals to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _round_money(dec: Decimal) -> float:
    """Round a Decimal to 2 decimal places with HALF_UP (normal money rounding)."""
    return float(dec.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def round_money(value: Any) -> float:
    return _round_money(to_decimal(value))


def round_percent(value: Any) -> int:
    """Round a percentage to the nearest integer, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_summary(
    incomes_or_transactions: Iterable[Any],
    expenses: Optional[Iterable[Any]] = None,
) -> dict[str, float]:
    """
    Income/expense totals and balance.

    Two supported calling styles:

        compute_summary(income_amounts, expense_amounts)

    where both arguments are iterables of numbers, or

        compute_summary(transactions)

    where transactions is an iterable of Transaction objects (or dicts) with
    .type ("income"/"expense") and .amount.
    """

    income_total_dec = Decimal("0")
    expense_total_dec = Decimal("0")

    if expenses is not None:
        for amt in incomes_or_transactions:
            income_total_dec += to_decimal(amt)
        for amt in expenses:
            expense_total_dec += to_decimal(amt)

    else:
        for t in incomes_or_transactions:
            if isinstance(t, dict):
                t_type, t_amount = t.get("type"), t.get("amount")
            else:
                t_type, t_amount = getattr(t, "type", None), getattr(t, "amount", None)

            if t_amount is None or t_type is None:
                continue  # ignore broken records instead of crashing

            if t_type == "income":
                income_total_dec += to_decimal(t_amount)
            elif t_type == "expense":
                expense_total_dec += to_decimal(t_amount)

    return {
        "income_total": _round_money(income_total_dec),
        "expense_total": _round_money(expense_total_dec),
        "balance": _round_money(income_total_dec - expense_total_dec),
    }


def to_local_naive(value: dt.datetime) -> dt.datetime:
    """Drop tzinfo after converting aware datetimes to local time."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def as_datetime(value: Any) -> dt.datetime:
    """Coerce a date or datetime to a naive local datetime."""
    if isinstance(value, dt.datetime):
        return to_local_naive(value)
    if isinstance(value, dt.date):
        return dt.datetime(value.year, value.month, value.day)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def normalize_iso_date(value: Any) -> dt.date:
    """Normalize a value to a date or raise a ValueError."""
    if isinstance(value, dt.datetime):
        return value.date()

    if isinstance(value, dt.date):
        return value

    if isinstance(value, str):
        try:
            return dt.date.fromisoformat(value)
        except ValueError:
            raise ValueError("Invalid date format. Expected YYYY-MM-DD.")

    raise ValueError("Invalid date format. Expected YYYY-MM-DD.")


def normalize_iso_datetime(value: Any) -> dt.datetime:
    """Normalize an ISO-8601 string/date/datetime to a naive local datetime."""
    if isinstance(value, (dt.date, dt.datetime)):
        return as_datetime(value)

    if isinstance(value, str):
        try:
            return to_local_naive(dt.datetime.fromisoformat(value.strip()))
        except ValueError:
            raise ValueError("Invalid date format. Expected ISO-8601.")

    raise ValueError("Invalid date format. Expected ISO-8601.")


def normalize_tags(tags: Optional[Iterable[Any]]) -> list[str]:
    """Strip, drop blanks and duplicates, keep first-seen order."""
    result: list[str] = []
    for tag in tags or []:
        text = str(tag).strip()
        if text and text not in result:
            result.append(text)
    return result


def filter_transactions(
    transactions: Iterable[Transaction],
    date_from: Optional[dt.date] = None,
    date_to: Optional[dt.date] = None,
    query: Optional[str] = None,
    tx_type: Optional[str] = None,
    category_id: Optional[str] = None,
    source: Optional[str] = None,
) -> list[Transaction]:
    """Filter transactions by date range (inclusive days), text, type, category and source."""
    q = (query or "").strip().lower()
    date_from = normalize_iso_date(date_from) if date_from else None
    date_to = normalize_iso_date(date_to) if date_to else None
    results: list[Transaction] = []

    for t in transactions:

        if tx_type and t.type != tx_type:
            continue

        if category_id and t.category_id != category_id:
            continue

        if source and (t.source or "manual") != source:
            continue

        day = as_datetime(t.date).date()
        if date_from and day < date_from:
            continue
        if date_to and day > date_to:
            continue

        if q:
            haystack = " ".join(
                [t.description or "", t.merchant or "", " ".join(t.tags or [])]
            ).lower()
            if q not in haystack:
                continue

        results.append(t)

    return results
