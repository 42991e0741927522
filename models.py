from typing import Optional
from decimal import Decimal
from datetime import datetime
from uuid import uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint

# These classes describe what data will be stored in the database.
# Each class = one table.
# Each variable inside becomes a column in that table.
# Datetimes are naive local time, so their columns are declared without a timezone.


def new_id() -> str:
    return uuid4().hex


class Category(SQLModel, table=True):
    """Table for the category registry.
    Seeded at start-up from categories.DEFAULT_CATEGORIES; ids are short
    string keys like 'food' or 'other'.
    """
    id: str = Field(primary_key=True, max_length=32)
    name: str = Field(min_length=1, max_length=50)
    color: str = "#a0aec0"
    icon: str = ""
    type: str = "expense"  # 'expense' or 'income'


class Transaction(SQLModel, table=True):
    """Main table that stores all transactions.
    It records both income and expenses.
    - 'user_id' = the owner; every API query is filtered by it
    - 'type' = either 'income' or 'expense'
    - 'source' = where the record came from (manual, voice, photo, wechat, alipay, qr)
    - 'category_id' falls back to 'other' when unknown
    """
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    type: str = Field(index=True)
    amount: Decimal = Field(gt=0)  # always positive; 'type' carries the sign
    category_id: str = Field(default="other", index=True)
    description: Optional[str] = None
    merchant: Optional[str] = None
    date: datetime = Field(default_factory=datetime.now, index=True, sa_type=DateTime(timezone=False))
    source: str = "manual"
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.now, sa_type=DateTime(timezone=False))


class BudgetSettings(SQLModel, table=True):
    """One row per user with the monthly budget and alert settings."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    monthly: Decimal = Field(default=Decimal("0"), ge=0)
    alert_threshold_percent: int = Field(default=80, ge=0, le=100)
    auto_adjust: bool = True


class CategoryBudget(SQLModel, table=True):
    """Per-category monthly sub-budget of one user."""
    __table_args__ = (UniqueConstraint("user_id", "category_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    category_id: str
    amount: Decimal = Field(default=Decimal("0"), ge=0)


class BudgetChange(SQLModel, table=True):
    """History of budget edits (only the latest entries per user are kept)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    kind: str  # 'monthly' or 'category:<id>'
    amount: Decimal
    created_at: datetime = Field(default_factory=datetime.now, sa_type=DateTime(timezone=False))


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    hashed_password: str
    created_at: datetime = Field(default_factory=datetime.utcnow, sa_type=DateTime(timezone=False))
