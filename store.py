"""Transaction and budget persistence.

Two transaction stores share the same read contract (`get_all()` returns a
point-in-time snapshot): an in-memory one with change callbacks, and one
backed by a SQLModel session. Rows in the database belong to a user; the
SQL helpers take the owner's id and only ever see that user's rows.
"""
import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlmodel import Session, select

from budget import BudgetConfig, DEFAULT_ALERT_THRESHOLD
from clock import SystemClock
from models import BudgetChange, BudgetSettings, CategoryBudget, Transaction
from utils import SOURCES, TRANSACTION_TYPES, normalize_iso_datetime, normalize_tags, to_decimal

logger = logging.getLogger(__name__)

BUDGET_HISTORY_LIMIT = 100


class InMemoryTransactionStore:
    """Thread-safe list of transactions with change notifications."""

    def __init__(self, transactions=(), clock=None):
        self._lock = threading.RLock()
        self._items: list[Transaction] = []
        self._listeners: list[Callable[[str, Transaction], None]] = []
        self.clock = clock or SystemClock()
        for t in transactions:
            self.add(t)

    def _validate(self, t: Transaction) -> None:
        """Check a row and coerce its fields in place; raises ValueError.

        Table models skip pydantic validation, so dates may arrive as ISO
        strings and amounts as text.
        """
        if t.type not in TRANSACTION_TYPES:
            raise ValueError(f"Invalid transaction type: {t.type!r}")

        if t.amount is None:
            raise ValueError("Transaction amount is required")
        try:
            amount = to_decimal(t.amount)
        except (InvalidOperation, TypeError):
            raise ValueError(f"Invalid transaction amount: {t.amount!r}")
        if not amount.is_finite() or amount <= 0:
            raise ValueError("Transaction amount must be greater than 0")
        t.amount = amount

        if (t.source or "manual") not in SOURCES:
            raise ValueError(f"Invalid transaction source: {t.source!r}")

        t.date = self.clock.now() if t.date is None else normalize_iso_datetime(t.date)
        t.tags = normalize_tags(t.tags)

    def on_change(self, callback: Callable[[str, Transaction], None]) -> None:
        """Register callback(action, transaction); action is add/update/delete."""
        self._listeners.append(callback)

    def _notify(self, action: str, t: Transaction) -> None:
        for callback in list(self._listeners):
            callback(action, t)

    def get_all(self) -> tuple:
        with self._lock:
            return tuple(self._items)

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return next((t for t in self._items if t.id == transaction_id), None)

    def add(self, t: Transaction) -> Transaction:
        self._validate(t)
        with self._lock:
            if any(existing.id == t.id for existing in self._items):
                raise ValueError(f"Duplicate transaction id: {t.id}")
            self._items.append(t)
        self._notify("add", t)
        return t

    def update(self, transaction_id: str, **changes) -> Transaction:
        if "id" in changes:
            raise ValueError("Transaction id is immutable")
        with self._lock:
            index = next((i for i, t in enumerate(self._items) if t.id == transaction_id), None)
            if index is None:
                raise KeyError(transaction_id)
            data = self._items[index].model_dump()
            data.update(changes)
            updated = Transaction(**data)
            self._validate(updated)
            self._items[index] = updated
        self._notify("update", updated)
        return updated

    def delete(self, transaction_id: str) -> Transaction:
        with self._lock:
            index = next((i for i, t in enumerate(self._items) if t.id == transaction_id), None)
            if index is None:
                raise KeyError(transaction_id)
            removed = self._items.pop(index)
        self._notify("delete", removed)
        return removed


class SQLTransactionStore:
    """Read side of the transaction table for one session and one owner."""

    def __init__(self, session: Session, user_id: Optional[int] = None):
        self.session = session
        self.user_id = user_id

    def get_all(self) -> list[Transaction]:
        # Single SELECT, so callers see one consistent snapshot.
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        return list(self.session.exec(stmt.order_by(Transaction.date)).all())


def _settings_row(session: Session, user_id: Optional[int]) -> BudgetSettings:
    row = session.exec(
        select(BudgetSettings)
        .where(BudgetSettings.user_id == user_id)
        .order_by(BudgetSettings.id)
    ).first()
    if row is None:
        row = BudgetSettings(
            user_id=user_id,
            monthly=Decimal("0"),
            alert_threshold_percent=DEFAULT_ALERT_THRESHOLD,
        )
        session.add(row)
        session.commit()
        session.refresh(row)
    return row


def _category_budgets(session: Session, user_id: Optional[int]) -> list[CategoryBudget]:
    stmt = (
        select(CategoryBudget)
        .where(CategoryBudget.user_id == user_id)
        .order_by(CategoryBudget.category_id)
    )
    return list(session.exec(stmt).all())


def load_budget_config(session: Session, user_id: Optional[int] = None) -> BudgetConfig:
    row = _settings_row(session, user_id)
    categories = {cb.category_id: to_decimal(cb.amount) for cb in _category_budgets(session, user_id)}
    return BudgetConfig(
        monthly=to_decimal(row.monthly),
        categories=categories,
        alert_threshold_percent=row.alert_threshold_percent,
        auto_adjust=row.auto_adjust,
    )


def save_budget_config(session: Session, config: BudgetConfig, user_id: Optional[int] = None) -> BudgetConfig:
    """Replace the owner's stored budget settings with `config`."""
    row = _settings_row(session, user_id)
    row.monthly = config.monthly
    row.alert_threshold_percent = config.alert_threshold_percent
    row.auto_adjust = config.auto_adjust
    session.add(row)

    existing = {cb.category_id: cb for cb in _category_budgets(session, user_id)}
    for category_id, cb in existing.items():
        if category_id not in config.categories:
            session.delete(cb)
    for category_id, amount in config.categories.items():
        cb = existing.get(category_id) or CategoryBudget(user_id=user_id, category_id=category_id)
        cb.amount = amount
        session.add(cb)

    session.commit()
    return load_budget_config(session, user_id)


def record_budget_change(session: Session, kind: str, amount, user_id: Optional[int] = None) -> None:
    """Append a history entry, keeping only the owner's latest BUDGET_HISTORY_LIMIT."""
    session.add(BudgetChange(user_id=user_id, kind=kind, amount=to_decimal(amount)))
    session.commit()

    stale = session.exec(
        select(BudgetChange)
        .where(BudgetChange.user_id == user_id)
        .order_by(BudgetChange.id.desc())
        .offset(BUDGET_HISTORY_LIMIT)
    ).all()
    for row in stale:
        session.delete(row)
    if stale:
        session.commit()
        logger.debug("Pruned %d budget history rows", len(stale))


def budget_history(session: Session, user_id: Optional[int] = None) -> list[BudgetChange]:
    stmt = (
        select(BudgetChange)
        .where(BudgetChange.user_id == user_id)
        .order_by(BudgetChange.id.desc())
    )
    return list(session.exec(stmt).all())
