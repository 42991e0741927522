"""Budget evaluation and alerting.

Each budget scope (the monthly total, or one category) is in one of four
states, recomputed from scratch on every check. Alerts for a scope are
rate-limited: at most one per cooldown window, whatever the state does in
between.
"""
import calendar
import datetime as dt
import enum
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, Optional

from analytics import add_months, expenses_only, first_of_month, transactions_between
from categories import CategoryRegistry
from utils import as_datetime, round_money, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 80
DEFAULT_COOLDOWN_SECONDS = 60 * 60
TOTAL_SCOPE = "total"


class BudgetState(str, enum.Enum):
    UNSET = "unset"
    UNDER_THRESHOLD = "under_threshold"
    NEAR_LIMIT = "near_limit"
    OVER_BUDGET = "over_budget"


@dataclass
class BudgetConfig:
    """Read-only snapshot of the budget settings used for one evaluation.

    Category sub-budgets are not checked against `monthly`.
    """
    monthly: Decimal = Decimal("0")
    categories: dict[str, Decimal] = field(default_factory=dict)
    alert_threshold_percent: int = DEFAULT_ALERT_THRESHOLD
    auto_adjust: bool = True


@dataclass(frozen=True)
class BudgetAlert:
    scope: str
    level: str  # 'warning' or 'error'
    message: str
    percent_used: float
    amount_spent: float
    category_id: Optional[str] = None
    fired_at: Optional[dt.datetime] = None
    user_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "level": self.level,
            "message": self.message,
            "percent_used": self.percent_used,
            "amount_spent": self.amount_spent,
            "category_id": self.category_id,
            "fired_at": self.fired_at.isoformat() if self.fired_at else None,
        }


def category_scope(category_id: str) -> str:
    return f"category:{category_id}"


def classify_usage(spent, budget, threshold: int = DEFAULT_ALERT_THRESHOLD) -> tuple[BudgetState, float]:
    """State and usage percent of one budget scope."""
    budget = to_decimal(budget)
    if budget <= 0:
        return BudgetState.UNSET, 0.0
    percent = to_decimal(spent) / budget * 100
    if percent >= 100:
        state = BudgetState.OVER_BUDGET
    elif percent >= threshold:
        state = BudgetState.NEAR_LIMIT
    else:
        state = BudgetState.UNDER_THRESHOLD
    return state, float(percent)


def month_bounds(now: dt.datetime) -> tuple[dt.datetime, dt.datetime]:
    start = first_of_month(as_datetime(now))
    return start, add_months(start, 1)


def month_expenses(transactions: Iterable, now: dt.datetime) -> list:
    """Expense transactions of the calendar month containing `now`."""
    start, end = month_bounds(now)
    return transactions_between(expenses_only(transactions), start, end)


def _spent(transactions: Iterable) -> Decimal:
    return sum((to_decimal(t.amount) for t in transactions), Decimal("0"))


def _category_spent(expenses: Iterable, category_id: str, registry: CategoryRegistry) -> Decimal:
    return _spent(t for t in expenses if registry.resolve(t.category_id).id == category_id)


def days_left_in_month(now: dt.datetime) -> int:
    last_day = calendar.monthrange(now.year, now.month)[1]
    return last_day - now.day


def compare_with_previous_month(transactions: Iterable, now: dt.datetime) -> dict:
    """Whole-month expense of this month against last month."""
    transactions = list(transactions)
    start, end = month_bounds(now)
    current = _spent(transactions_between(expenses_only(transactions), start, end))
    previous = _spent(transactions_between(expenses_only(transactions), add_months(start, -1), start))
    difference = current - previous
    if difference > 0:
        trend = "increasing"
    elif difference < 0:
        trend = "decreasing"
    else:
        trend = "stable"
    return {
        "trend": trend,
        "difference": round_money(difference),
        "percentage_change": round_money(difference / previous * 100) if previous > 0 else 0.0,
    }


def budget_recommendations(spent, budget, threshold: int = DEFAULT_ALERT_THRESHOLD,
                           trend: Optional[dict] = None, days_remaining: int = 0) -> list[dict]:
    spent, budget = to_decimal(spent), to_decimal(budget)
    usage = spent / budget * 100 if budget > 0 else Decimal("0")
    recommendations = []

    if usage > 100:
        recommendations.append(
            {
                "type": "over_budget",
                "title": "Over budget",
                "message": f"Spent ¥{spent - budget:.2f} more than budgeted this month.",
                "priority": "high",
            }
        )
    elif usage > threshold:
        recommendations.append(
            {
                "type": "near_limit",
                "title": "Budget nearly used up",
                "message": f"{usage:.1f}% of the budget used with {days_remaining} days left.",
                "priority": "medium",
            }
        )

    if trend and trend.get("trend") == "increasing" and usage > 60:
        recommendations.append(
            {
                "type": "trend_warning",
                "title": "Spending is rising",
                "message": "Spending is up compared with last month.",
                "priority": "medium",
            }
        )

    return recommendations


def _scope_report(spent: Decimal, budget: Decimal, threshold: int) -> dict:
    state, usage = classify_usage(spent, budget, threshold)
    return {
        "budget": round_money(budget),
        "spent": round_money(spent),
        "remaining": round_money(budget - spent),
        "usage": round(usage, 2),
        "is_over_budget": state is BudgetState.OVER_BUDGET,
        "state": state.value,
    }


def budget_report(transactions: Iterable, config: BudgetConfig, registry: CategoryRegistry, now: dt.datetime) -> dict:
    """Usage of the monthly and per-category budgets for the current month."""
    now = as_datetime(now)
    transactions = list(transactions)
    expenses = month_expenses(transactions, now)
    total_spent = _spent(expenses)
    threshold = config.alert_threshold_percent

    categories = {}
    for category_id, amount in config.categories.items():
        category = registry.get(category_id)
        if category is None:
            continue
        report = _scope_report(_category_spent(expenses, category_id, registry), to_decimal(amount), threshold)
        report["name"] = category.name
        categories[category_id] = report

    days_remaining = days_left_in_month(now)
    budget = to_decimal(config.monthly)
    return {
        "total": _scope_report(total_spent, budget, threshold),
        "categories": categories,
        "daily_average": {
            "spent": round_money(total_spent / now.day),
            "remaining_daily": round_money((budget - total_spent) / (days_remaining or 1)),
        },
        "recommendations": budget_recommendations(
            total_spent,
            budget,
            threshold,
            compare_with_previous_month(transactions, now),
            days_remaining,
        ),
    }


def allocate_category_budgets(monthly, transactions: Iterable, registry: CategoryRegistry,
                              now: dt.datetime) -> dict[str, Decimal]:
    """Split the monthly budget over expense categories.

    Shares follow the last three calendar months of spending; with no
    history the budget is split evenly.
    """
    monthly = to_decimal(monthly)
    expense_categories = registry.expense_categories()
    if monthly <= 0 or not expense_categories:
        return {}

    start, end = month_bounds(now)
    history = transactions_between(expenses_only(transactions), add_months(start, -2), end)
    spending = {c.id: _category_spent(history, c.id, registry) for c in expense_categories}
    total = sum(spending.values(), Decimal("0"))

    allocation = {}
    for category in expense_categories:
        if total == 0:
            share = monthly / len(expense_categories)
        else:
            share = monthly * spending[category.id] / total
        allocation[category.id] = to_decimal(round_money(share))
    return allocation


class BudgetEvaluator:
    """Checks budgets and emits rate-limited alerts to a sink.

    Cooldowns are tracked per (owner, scope), so one user's alert never
    silences another's.
    """

    def __init__(self, clock, sink: Optional[Callable[[BudgetAlert], None]] = None,
                 cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS, history_size: int = 50):
        self.clock = clock
        self.sink = sink
        self.cooldown = dt.timedelta(seconds=cooldown_seconds)
        self._last_fired: dict[tuple[Optional[int], str], dt.datetime] = {}
        self._history: deque[BudgetAlert] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def recent_alerts(self, user_id: Optional[int] = None) -> list[BudgetAlert]:
        """Alert history, oldest first; only `user_id`'s alerts when given."""
        with self._lock:
            alerts = list(self._history)
        if user_id is None:
            return alerts
        return [a for a in alerts if a.user_id == user_id]

    def reset(self) -> None:
        with self._lock:
            self._last_fired.clear()
            self._history.clear()

    def evaluate(self, transactions: Iterable, config: BudgetConfig, registry: CategoryRegistry,
                 now: Optional[dt.datetime] = None, user_id: Optional[int] = None) -> list[BudgetAlert]:
        """Check the total and every category budget; return the alerts fired."""
        now = as_datetime(now or self.clock.now())
        expenses = month_expenses(transactions, now)
        threshold = config.alert_threshold_percent
        fired = []

        alert = self._check_scope(TOTAL_SCOPE, _spent(expenses), config.monthly, threshold, now,
                                  user_id=user_id)
        if alert:
            fired.append(alert)

        for category_id, amount in config.categories.items():
            category = registry.get(category_id)
            if category is None:
                logger.debug("Skipping budget for unknown category %r", category_id)
                continue
            alert = self._check_scope(
                category_scope(category_id),
                _category_spent(expenses, category_id, registry),
                amount,
                threshold,
                now,
                category=category,
                user_id=user_id,
            )
            if alert:
                fired.append(alert)

        return fired

    def _check_scope(self, scope: str, spent: Decimal, budget, threshold: int,
                     now: dt.datetime, category=None, user_id: Optional[int] = None) -> Optional[BudgetAlert]:
        budget = to_decimal(budget)
        state, percent = classify_usage(spent, budget, threshold)
        if state not in (BudgetState.NEAR_LIMIT, BudgetState.OVER_BUDGET):
            return None

        key = (user_id, scope)
        with self._lock:
            last = self._last_fired.get(key)
            if last is not None and now - last < self.cooldown:
                return None
            self._last_fired[key] = now

        label = f"{category.name} budget" if category else "Monthly budget"
        if state is BudgetState.OVER_BUDGET:
            level = "error"
            message = f"{label} exceeded! Spent ¥{spent:.2f}, ¥{spent - budget:.2f} over."
        else:
            level = "warning"
            message = f"{label} {percent:.1f}% used. Spent ¥{spent:.2f}, ¥{budget - spent:.2f} left."

        alert = BudgetAlert(
            scope=scope,
            level=level,
            message=message,
            percent_used=round(percent, 2),
            amount_spent=round_money(spent),
            category_id=category.id if category else None,
            fired_at=now,
            user_id=user_id,
        )
        with self._lock:
            self._history.append(alert)
        logger.warning("Budget alert [%s] user=%s %s", scope, user_id, message)
        if self.sink is not None:
            self.sink(alert)
        return alert


@dataclass(frozen=True)
class BudgetSnapshot:
    """What one owner's budget check reads."""
    transactions: tuple
    config: BudgetConfig
    registry: CategoryRegistry
    user_id: Optional[int] = None


class BudgetMonitor:
    """Runs budget checks on a ticker and on demand.

    `snapshot_loader` returns one BudgetSnapshot per owner to check.
    """

    def __init__(self, evaluator: BudgetEvaluator, snapshot_loader: Callable[[], Iterable[BudgetSnapshot]],
                 ticker=None):
        self.evaluator = evaluator
        self.snapshot_loader = snapshot_loader
        self.ticker = ticker

    def check(self) -> list[BudgetAlert]:
        fired = []
        for snapshot in self.snapshot_loader():
            fired.extend(
                self.evaluator.evaluate(
                    snapshot.transactions,
                    snapshot.config,
                    snapshot.registry,
                    user_id=snapshot.user_id,
                )
            )
        return fired

    def start(self) -> None:
        if self.ticker is not None:
            self.ticker.start(self.check)
            logger.info("Budget monitor started")

    def stop(self) -> None:
        if self.ticker is not None:
            self.ticker.stop()
            logger.info("Budget monitor stopped")
