"""Aggregation over transaction lists.

Pure functions: they take already-validated transactions (anything with
`type`, `amount`, `category_id`, `date` and `source` attributes) and never
raise for data-shape problems. Sums stay Decimal here; rounding happens when
a report is built.
"""
import calendar
import datetime as dt
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from categories import CategoryRegistry
from utils import as_datetime, round_money, round_percent, to_decimal

WINDOW_KINDS = ("day", "week", "month", "quarter", "year")
DEFAULT_WINDOW = "month"

# Fixed approximation, not the calendar length of the window.
DAYS_IN_WINDOW = {"day": 1, "week": 7, "month": 30, "quarter": 90, "year": 365}

SOURCE_NAMES = {
    "manual": "Manual entry",
    "voice": "Voice entry",
    "wechat": "WeChat Pay",
    "alipay": "Alipay",
    "photo": "Receipt photo",
    "qr": "QR scan",
}


def normalize_window(kind: str) -> str:
    """Return a known window kind; unknown values fall back to 'month'."""
    if not isinstance(kind, str):
        raise TypeError(f"window kind must be a str, got {type(kind).__name__}")
    kind = kind.strip().lower()
    return kind if kind in WINDOW_KINDS else DEFAULT_WINDOW


def start_of_day(value: dt.datetime) -> dt.datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def first_of_month(value: dt.datetime) -> dt.datetime:
    return start_of_day(value).replace(day=1)


def add_months(value: dt.datetime, months: int) -> dt.datetime:
    """Shift the first-of-month `value` by a number of calendar months."""
    index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=index // 12, month=index % 12 + 1)


def months_before(value: dt.datetime, months: int) -> dt.datetime:
    """Same time of day `months` calendar months earlier, day clamped to the month's end."""
    index = value.year * 12 + (value.month - 1) - months
    year, month = index // 12, index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def quarter_of(value: dt.datetime) -> int:
    return (value.month - 1) // 3 + 1


def first_of_quarter(value: dt.datetime) -> dt.datetime:
    return first_of_month(value).replace(month=(quarter_of(value) - 1) * 3 + 1)


def quarter_bounds(now: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    """Half-open bounds of the calendar quarter containing `now`."""
    start = first_of_quarter(as_datetime(now))
    return start, add_months(start, 3)


def quarter_label(value: dt.datetime) -> str:
    return f"{value.year}-Q{quarter_of(value)}"


def window_bounds(kind: str, now: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    kind = normalize_window(kind)
    now = as_datetime(now)
    if kind == "day":
        start = start_of_day(now)
    elif kind == "week":
        start = now - dt.timedelta(days=7)
    elif kind == "quarter":
        start = first_of_quarter(now)
    elif kind == "year":
        start = start_of_day(now).replace(month=1, day=1)
    else:
        start = first_of_month(now)
    return start, now


def previous_window_bounds(kind: str, now: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    """The period right before the current window, as a half-open range."""
    kind = normalize_window(kind)
    now = as_datetime(now)
    if kind == "day":
        end = start_of_day(now)
        return end - dt.timedelta(days=1), end
    if kind == "week":
        return now - dt.timedelta(days=14), now - dt.timedelta(days=7)
    if kind == "quarter":
        end = first_of_quarter(now)
        return add_months(end, -3), end
    if kind == "year":
        end = start_of_day(now).replace(month=1, day=1)
        return end.replace(year=end.year - 1), end
    end = first_of_month(now)
    return add_months(end, -1), end


def filter_by_window(transactions: Iterable, kind: str, now: dt.datetime) -> list:
    """Transactions dated inside [start, now], in their original order."""
    start, end = window_bounds(kind, now)
    return [t for t in transactions if start <= as_datetime(t.date) <= end]


def transactions_between(transactions: Iterable, start: dt.datetime, end: dt.datetime) -> list:
    """Transactions dated inside [start, end)."""
    return [t for t in transactions if start <= as_datetime(t.date) < end]


def days_in_window(kind: str) -> int:
    if not isinstance(kind, str):
        raise TypeError(f"window kind must be a str, got {type(kind).__name__}")
    return DAYS_IN_WINDOW.get(kind.strip().lower(), DAYS_IN_WINDOW[DEFAULT_WINDOW])


def sum_by_type(transactions: Iterable, tx_type: str) -> Decimal:
    total = Decimal("0")
    for t in transactions:
        if t.type == tx_type:
            total += to_decimal(t.amount)
    return total


def expenses_only(transactions: Iterable) -> list:
    return [t for t in transactions if t.type == "expense"]


def group_by_category(transactions: Iterable, registry: CategoryRegistry) -> list[dict]:
    """Expense totals per category, largest first.

    Unknown category ids are counted under `other`. Percentages are of the
    total expense and are rounded individually, so they may not add up to
    exactly 100.
    """
    groups: dict[str, dict] = {}
    total = Decimal("0")
    for t in expenses_only(transactions):
        category = registry.resolve(t.category_id)
        amount = to_decimal(t.amount)
        entry = groups.get(category.id)
        if entry is None:
            entry = groups[category.id] = {
                "id": category.id,
                "name": category.name,
                "amount": Decimal("0"),
                "count": 0,
            }
        entry["amount"] += amount
        entry["count"] += 1
        total += amount

    # sorted() is stable, so ties keep first-encounter order.
    ordered = sorted(groups.values(), key=lambda e: e["amount"], reverse=True)
    return [
        {
            "id": e["id"],
            "name": e["name"],
            "amount": round_money(e["amount"]),
            "count": e["count"],
            "percentage": round_percent(e["amount"] / total * 100) if total > 0 else 0,
        }
        for e in ordered
    ]


def group_by_source(transactions: Iterable) -> list[dict]:
    """Income/expense totals per provenance tag, in first-seen order."""
    groups: dict[str, dict] = {}
    for t in transactions:
        source = t.source or "manual"
        entry = groups.get(source)
        if entry is None:
            entry = groups[source] = {
                "source": source,
                "name": SOURCE_NAMES.get(source, source),
                "income": Decimal("0"),
                "expense": Decimal("0"),
                "count": 0,
            }
        if t.type == "income":
            entry["income"] += to_decimal(t.amount)
        else:
            entry["expense"] += to_decimal(t.amount)
        entry["count"] += 1

    return [
        {**e, "income": round_money(e["income"]), "expense": round_money(e["expense"])}
        for e in groups.values()
    ]


def expense_source_stats(transactions: Iterable) -> list[dict]:
    """Expense total, count and average per source, largest total first."""
    groups: dict[str, list] = {}
    for t in expenses_only(transactions):
        groups.setdefault(t.source or "manual", []).append(to_decimal(t.amount))

    ordered = sorted(groups.items(), key=lambda item: sum(item[1], Decimal("0")), reverse=True)
    return [
        {
            "source": source,
            "name": SOURCE_NAMES.get(source, source),
            "total": round_money(sum(amounts, Decimal("0"))),
            "count": len(amounts),
            "average": round_money(sum(amounts, Decimal("0")) / len(amounts)),
        }
        for source, amounts in ordered
    ]


# Upper hour bound (exclusive) of each part of the day.
TIME_OF_DAY = (("night", 6), ("morning", 12), ("afternoon", 18), ("evening", 24))


def time_of_day(value: dt.datetime) -> str:
    hour = as_datetime(value).hour
    return next(name for name, end in TIME_OF_DAY if hour < end)


def spending_time_patterns(transactions: Iterable) -> list[dict]:
    """Expense totals bucketed by weekday/weekend and part of the day.

    Only buckets with spending are returned, weekdays first, then in
    TIME_OF_DAY order.
    """
    buckets: dict[tuple[bool, str], dict] = {}
    for t in expenses_only(transactions):
        when = as_datetime(t.date)
        key = (when.weekday() >= 5, time_of_day(when))
        entry = buckets.setdefault(key, {"total": Decimal("0"), "count": 0})
        entry["total"] += to_decimal(t.amount)
        entry["count"] += 1

    order = [name for name, _ in TIME_OF_DAY]
    return [
        {
            "is_weekend": weekend,
            "time_of_day": part,
            "total": round_money(buckets[(weekend, part)]["total"]),
            "count": buckets[(weekend, part)]["count"],
        }
        for weekend, part in sorted(buckets, key=lambda k: (k[0], order.index(k[1])))
    ]


def trend_periods(kind: str, now: dt.datetime) -> list[tuple[str, dt.datetime, dt.datetime]]:
    """Label and half-open bounds of each period in a trend series."""
    kind = normalize_window(kind)
    now = as_datetime(now)
    periods = []
    if kind == "year":
        for back in range(2, -1, -1):
            start = start_of_day(now).replace(year=now.year - back, month=1, day=1)
            periods.append((f"{start.year}", start, start.replace(year=start.year + 1)))
        return periods

    if kind == "quarter":
        current = first_of_quarter(now)
        for back in range(3, -1, -1):
            start = add_months(current, -3 * back)
            periods.append((quarter_label(start), start, add_months(start, 3)))
        return periods

    current = first_of_month(now)
    for back in range(5, -1, -1):
        start = add_months(current, -back)
        periods.append((start.strftime("%Y-%m"), start, add_months(start, 1)))
    return periods


def amount_stats(amounts: Sequence[Decimal]) -> Optional[tuple[float, float]]:
    """Mean and population standard deviation, or None for an empty list."""
    if not amounts:
        return None
    values = [float(a) for a in amounts]
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, variance ** 0.5
