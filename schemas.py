"""Pydantic/SQLModel schemas for API payloads and validation."""
from typing import Literal, Optional
from datetime import datetime
from decimal import Decimal

from sqlmodel import SQLModel, Field
from pydantic import field_validator, BaseModel

from utils import normalize_iso_datetime, normalize_tags

DESCRIPTION_MAX_LEN = 200
MERCHANT_MAX_LEN = 100
TAG_MAX_LEN = 20

TransactionType = Literal["income", "expense"]
Source = Literal["manual", "voice", "photo", "wechat", "alipay", "qr"]


class CategoryRead(BaseModel):
    """Response model for a category."""
    id: str
    name: str
    color: str
    icon: str
    type: str

    class Config:
        from_attributes = True


class TextDateTagsMixin:
    """Shared validators for free text, date normalization and tags."""
    @field_validator("description", "merchant", mode="before", check_fields=False)
    @classmethod
    def strip_text(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("date", mode="before", check_fields=False)
    @classmethod
    def normalize_date(cls, v):
        if v is None:
            return None
        return normalize_iso_datetime(v)

    @field_validator("tags", mode="before", check_fields=False)
    @classmethod
    def clean_tags(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split(",")
        tags = normalize_tags(v)
        if any(len(tag) > TAG_MAX_LEN for tag in tags):
            raise ValueError(f"Tags must be at most {TAG_MAX_LEN} characters.")
        return tags


class TransactionCreate(TextDateTagsMixin, SQLModel):
    """Payload for recording a transaction. Missing date means 'now'."""
    type: TransactionType
    amount: Decimal = Field(gt=0)
    category_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LEN)
    merchant: Optional[str] = Field(default=None, max_length=MERCHANT_MAX_LEN)
    date: Optional[datetime] = None
    source: Source = "manual"
    tags: list[str] = Field(default_factory=list)


class TransactionUpdate(TextDateTagsMixin, SQLModel):
    """Partial update payload for transactions."""
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    category_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LEN)
    merchant: Optional[str] = Field(default=None, max_length=MERCHANT_MAX_LEN)
    date: Optional[datetime] = None
    source: Optional[Source] = None
    tags: Optional[list[str]] = None


class TransactionRead(SQLModel):
    """Response model for a transaction."""
    id: str
    type: str
    amount: Decimal
    category_id: str
    description: Optional[str] = None
    merchant: Optional[str] = None
    date: datetime
    source: str
    tags: list[str] = []
    created_at: datetime


# Budget schemas

class BudgetConfigRead(BaseModel):
    monthly: float
    categories: dict[str, float]
    alert_threshold_percent: int
    auto_adjust: bool


class BudgetConfigUpdate(SQLModel):
    """Partial update of the budget settings."""
    monthly: Optional[Decimal] = Field(default=None, ge=0)
    alert_threshold_percent: Optional[int] = Field(default=None, ge=0, le=100)
    auto_adjust: Optional[bool] = None


class CategoryBudgetSet(SQLModel):
    amount: Decimal = Field(ge=0)


class BudgetAlertRead(BaseModel):
    scope: str
    level: str
    message: str
    percent_used: float
    amount_spent: float
    category_id: Optional[str] = None
    fired_at: Optional[datetime] = None


class BudgetChangeRead(BaseModel):
    kind: str
    amount: float
    created_at: datetime

    class Config:
        from_attributes = True


# User & Auth schemas

class UserRead(SQLModel):
    """Response model for a user."""
    id: int
    username: str


class UserCreate(SQLModel):
    """Payload for creating a user."""
    username: str
    password: str


class UserLogin(SQLModel):
    """Payload for logging in."""
    username: str
    password: str


class Token(BaseModel):
    """Token response model."""
    access_token: str
    token_type: str


class UsernameChange(BaseModel):
    """Payload to change username."""
    new_username: str


class PasswordChange(BaseModel):
    """Payload to change password."""
    current_password: str
    new_password: str
