"""Report generation: overview, category breakdown, trends, health score,
anomalies and recommendations, composed into one report per window."""
import datetime as dt
import logging
from decimal import Decimal
from typing import Iterable, Optional

from analytics import (
    add_months,
    amount_stats,
    days_in_window,
    expense_source_stats,
    expenses_only,
    filter_by_window,
    group_by_category,
    group_by_source,
    months_before,
    normalize_window,
    previous_window_bounds,
    quarter_bounds,
    quarter_label,
    spending_time_patterns,
    sum_by_type,
    transactions_between,
    trend_periods,
)
from categories import CategoryRegistry
from utils import as_datetime, round_money, round_percent, to_decimal

logger = logging.getLogger(__name__)

PERIOD_NAMES = {
    "day": "Today",
    "week": "This week",
    "month": "This month",
    "quarter": "This quarter",
    "year": "This year",
}

SAVINGS_TARGET_PERCENT = 20
DAILY_EXPENSE_LIMIT = 200
CATEGORY_CONCENTRATION_PERCENT = 50


def calculate_growth(current: Decimal, previous: Decimal) -> int:
    """Percent change; 0 when there is no baseline to compare with."""
    if previous == 0:
        return 0
    return round_percent((current - previous) / previous * 100)


def generate_overview(transactions: Iterable, window_kind: str, previous: Optional[Iterable] = None) -> dict:
    """Totals for transactions already filtered to the window.

    `previous` holds the transactions of the prior period. Without it the
    growth fields are 0, which means "no baseline" rather than "no change".
    """
    transactions = list(transactions)
    income = sum_by_type(transactions, "income")
    expense = sum_by_type(transactions, "expense")
    balance = income - expense
    savings_rate = round_money(balance / income * 100) if income > 0 else 0.0

    if previous is not None:
        previous = list(previous)
        income_growth = calculate_growth(income, sum_by_type(previous, "income"))
        expense_growth = calculate_growth(expense, sum_by_type(previous, "expense"))
    else:
        income_growth = expense_growth = 0

    return {
        "income": round_money(income),
        "expense": round_money(expense),
        "balance": round_money(balance),
        "savings_rate": savings_rate,
        "transaction_count": len(transactions),
        "avg_daily_expense": round_money(expense / days_in_window(window_kind)),
        "income_growth": income_growth,
        "expense_growth": expense_growth,
    }


def generate_category_analysis(transactions: Iterable, registry: CategoryRegistry) -> dict:
    transactions = list(transactions)
    categories = group_by_category(transactions, registry)
    return {
        "categories": categories,
        "total_expense": round_money(sum_by_type(transactions, "expense")),
        "top_category": categories[0] if categories else None,
    }


def generate_source_analysis(transactions: Iterable) -> list[dict]:
    return group_by_source(transactions)


def generate_trend_analysis(transactions: Iterable, window_kind: str, now: dt.datetime) -> list[dict]:
    """Income, expense and balance for each period of the trend series."""
    transactions = list(transactions)
    trend = []
    for label, start, end in trend_periods(window_kind, now):
        in_period = transactions_between(transactions, start, end)
        income = sum_by_type(in_period, "income")
        expense = sum_by_type(in_period, "expense")
        trend.append(
            {
                "period": label,
                "income": round_money(income),
                "expense": round_money(expense),
                "balance": round_money(income - expense),
            }
        )
    return trend


def _stability_score(expense_growth: float) -> int:
    growth = abs(expense_growth)
    if growth <= 10:
        return 30
    if growth <= 20:
        return 20
    if growth <= 30:
        return 10
    return 0


def _category_score(category_analysis: dict) -> int:
    categories = category_analysis["categories"]
    if not categories:
        return 30
    top = categories[0]["percentage"]
    if top <= 30:
        return 30
    if top <= 50:
        return 20
    if top <= 70:
        return 10
    return 0


def calculate_health_score(overview: dict, category_analysis: dict) -> int:
    """Score in [0, 100]: savings (up to 40) + stability (30) + spread (30)."""
    savings = min(to_decimal(overview["savings_rate"]) * 2, Decimal("40"))
    score = savings + _stability_score(overview["expense_growth"]) + _category_score(category_analysis)
    return max(0, min(100, round_percent(score)))


def detect_anomalies(transactions: Iterable) -> list[dict]:
    """Expenses more than two population standard deviations above the mean."""
    expenses = expenses_only(transactions)
    stats = amount_stats([to_decimal(t.amount) for t in expenses])
    if stats is None:
        return []
    mean, stddev = stats
    threshold = mean + 2 * stddev

    anomalies = []
    for t in expenses:
        amount = float(t.amount)
        if amount > threshold:
            deviation = round_percent((amount - mean) / mean * 100) if mean else 0
            anomalies.append(
                {
                    "id": t.id,
                    "amount": round_money(t.amount),
                    "description": t.description,
                    "date": as_datetime(t.date).isoformat(),
                    "deviation": deviation,
                }
            )
    return anomalies


def generate_recommendations(overview: dict, category_analysis: dict) -> list[dict]:
    """Independent rules, emitted in a fixed order."""
    recommendations = []

    if overview["savings_rate"] < SAVINGS_TARGET_PERCENT:
        recommendations.append(
            {
                "type": "savings",
                "title": "Raise your savings rate",
                "message": (
                    f"Savings rate is {overview['savings_rate']}%; "
                    f"aim for at least {SAVINGS_TARGET_PERCENT}%."
                ),
                "priority": "high",
            }
        )

    if overview["avg_daily_expense"] > DAILY_EXPENSE_LIMIT:
        recommendations.append(
            {
                "type": "expense",
                "title": "Keep daily spending in check",
                "message": (
                    f"Average daily spending is ¥{overview['avg_daily_expense']}; "
                    "look for non-essential purchases to cut."
                ),
                "priority": "medium",
            }
        )

    top = category_analysis.get("top_category")
    if top and top["percentage"] > CATEGORY_CONCENTRATION_PERCENT:
        recommendations.append(
            {
                "type": "category",
                "title": "Spread spending across categories",
                "message": f"{top['name']} takes {top['percentage']}% of spending.",
                "priority": "medium",
            }
        )

    return recommendations


def generate_bill_summary(overview: dict, health_score: int) -> str:
    rate = overview["savings_rate"]
    if health_score >= 80:
        return f"Excellent! Your finances are in great shape with a {rate}% savings rate."
    if health_score >= 60:
        return f"Good. Your finances are mostly healthy with a {rate}% savings rate."
    if health_score >= 40:
        return f"Fair. Review where the money goes; a {rate}% savings rate has room to grow."
    return f"Needs work. A {rate}% savings rate is low; time to rebalance spending."


def generate_smart_bill(
    transactions: Iterable,
    window_kind: str,
    registry: CategoryRegistry,
    previous: Optional[Iterable] = None,
) -> dict:
    transactions = list(transactions)
    overview = generate_overview(transactions, window_kind, previous)
    category_analysis = generate_category_analysis(transactions, registry)
    health_score = calculate_health_score(overview, category_analysis)
    return {
        "period": PERIOD_NAMES.get(window_kind, PERIOD_NAMES["month"]),
        "overview": overview,
        "top_categories": category_analysis["categories"][:3],
        "health_score": health_score,
        "anomalies": detect_anomalies(transactions),
        "recommendations": generate_recommendations(overview, category_analysis),
        "summary": generate_bill_summary(overview, health_score),
    }


def _income_expense(transactions: Iterable) -> tuple[Decimal, Decimal]:
    transactions = list(transactions)
    return sum_by_type(transactions, "income"), sum_by_type(transactions, "expense")


def _change_percent(current: Decimal, previous: Decimal) -> float:
    return round_money((current - previous) / previous * 100) if previous > 0 else 0.0


def generate_quarterly_summary(transactions: Iterable, now: dt.datetime) -> dict:
    """Income, expense and profit of the calendar quarter containing `now`."""
    start, end = quarter_bounds(now)
    income, expense = _income_expense(transactions_between(transactions, start, end))
    return {
        "quarter": quarter_label(start),
        "start": start.isoformat(),
        "end": end.isoformat(),
        "income": round_money(income),
        "expense": round_money(expense),
        "profit": round_money(income - expense),
    }


def _period_totals(transactions: list) -> dict:
    income, expense = _income_expense(transactions)
    return {
        "income": round_money(income),
        "expense": round_money(expense),
        "net_income": round_money(income - expense),
        "transaction_count": len(transactions),
    }


def monthly_report(transactions: Iterable, year: int, month: int, registry: CategoryRegistry) -> dict:
    """One calendar month against the month before it."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    transactions = list(transactions)
    start = dt.datetime(year, month, 1)
    end = add_months(start, 1)
    current = transactions_between(transactions, start, end)
    previous = transactions_between(transactions, add_months(start, -1), start)

    income, expense = _income_expense(current)
    prev_income, prev_expense = _income_expense(previous)
    return {
        "period": {"year": year, "month": month, "start": start.isoformat(), "end": end.isoformat()},
        "current_month": _period_totals(current),
        "previous_month": _period_totals(previous),
        "changes": {
            "income": _change_percent(income, prev_income),
            "expense": _change_percent(expense, prev_expense),
            "net_income": round_money((income - expense) - (prev_income - prev_expense)),
        },
        "category_stats": group_by_category(current, registry),
    }


def spending_habits(transactions: Iterable, now: dt.datetime, months: int = 6) -> dict:
    """Where and when money was spent over the last `months` months."""
    if months < 1:
        raise ValueError(f"months must be at least 1, got {months}")
    now = as_datetime(now)
    start = months_before(now, months)
    recent = [t for t in transactions if start <= as_datetime(t.date) <= now]
    return {
        "period": {"months": months, "start": start.isoformat(), "end": now.isoformat()},
        "sources": expense_source_stats(recent),
        "time_patterns": spending_time_patterns(recent),
    }


def build_report(all_transactions: Iterable, window_kind: str, now: dt.datetime, registry: CategoryRegistry) -> dict:
    """Full report for one window, derived from a single list of transactions."""
    kind = normalize_window(window_kind)
    now = as_datetime(now)
    snapshot = list(all_transactions)
    current = filter_by_window(snapshot, kind, now)
    start, end = previous_window_bounds(kind, now)
    previous = transactions_between(snapshot, start, end)

    return {
        "window": kind,
        "generated_at": now.isoformat(),
        "overview": generate_overview(current, kind, previous),
        "category_analysis": generate_category_analysis(current, registry),
        "source_analysis": generate_source_analysis(current),
        "trend_analysis": generate_trend_analysis(snapshot, kind, now),
        "quarterly": generate_quarterly_summary(snapshot, now),
        "smart_bill": generate_smart_bill(current, kind, registry, previous),
    }


class ReportGenerator:
    """Builds reports from an injected store, registry and clock."""

    def __init__(self, store, registry: CategoryRegistry, clock):
        self.store = store
        self.registry = registry
        self.clock = clock

    def generate_report(self, window_kind: str = "month") -> dict:
        # One read per call, so the whole report sees the same data.
        snapshot = self.store.get_all()
        report = build_report(snapshot, window_kind, self.clock.now(), self.registry)
        logger.debug(
            "Report for window=%s over %d transactions", report["window"], len(snapshot)
        )
        return report

    def health_score(self, window_kind: str = "month") -> dict:
        bill = self.generate_report(window_kind)["smart_bill"]
        return {
            "health_score": bill["health_score"],
            "summary": bill["summary"],
            "recommendations": bill["recommendations"],
        }

    def monthly_report(self, year: Optional[int] = None, month: Optional[int] = None) -> dict:
        """Defaults to the current month."""
        now = self.clock.now()
        return monthly_report(self.store.get_all(), year or now.year, month or now.month, self.registry)

    def spending_habits(self, months: int = 6) -> dict:
        return spending_habits(self.store.get_all(), self.clock.now(), months)
