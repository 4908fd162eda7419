import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    CategoryType,
    GoalStatus,
    ReminderFrequency,
    TransactionStatus,
    TransactionType,
)


HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
ICON_PATTERN = r"^[a-zA-Z0-9_-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _clean_keywords(values: Optional[list[str]]) -> Optional[list[str]]:
    if values is None:
        return None
    seen: list[str] = []
    for value in values:
        clean = value.strip().lower()
        if clean and clean not in seen:
            seen.append(clean)
    return seen


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    type: CategoryType
    color: str = Field("#607D8B", pattern=HEX_COLOR_PATTERN)
    icon: str = Field("category", max_length=50, pattern=ICON_PATTERN)
    description: Optional[str] = Field(None, max_length=500)
    parent_id: Optional[int] = None
    sort_order: int = 0
    budget_allocation_cents: int = Field(0, ge=0)
    keywords: list[str] = Field(default_factory=list)

    @field_validator("color")
    @classmethod
    def _upper_color(cls, value: str) -> str:
        return value.upper()

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: list[str]) -> list[str]:
        return _clean_keywords(value) or []


class CategoryUpdate(BaseModel):
    """Partial update; ``model_fields_set`` tells an explicit null parent apart."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50, pattern=ICON_PATTERN)
    parent_id: Optional[int] = None
    sort_order: Optional[int] = None
    budget_allocation_cents: Optional[int] = Field(None, ge=0)
    keywords: Optional[list[str]] = None
    is_active: Optional[bool] = None

    @field_validator("color")
    @classmethod
    def _upper_color(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return _clean_keywords(value)


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    payee: Optional[str] = Field(None, max_length=100)
    payment_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)
    account: str = Field("default", max_length=50)
    status: TransactionStatus = TransactionStatus.completed
    tags: list[str] = Field(default_factory=list)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(None, gt=0)
    description: Optional[str] = Field(None, min_length=1, max_length=200)
    category_id: Optional[int] = None
    payee: Optional[str] = Field(None, max_length=100)
    payment_method: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)
    account: Optional[str] = Field(None, max_length=50)
    status: Optional[TransactionStatus] = None
    tags: Optional[list[str]] = None


class BulkOperationIn(BaseModel):
    operation: str
    transaction_ids: list[int] = Field(..., min_length=1, max_length=500)
    category_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    tags: list[str] = Field(default_factory=list)


class ImportRow(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = None
    payee: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    row_number: int = Field(0, ge=0)


class BudgetAllocationIn(BaseModel):
    category_id: int
    allocated_cents: int = Field(..., ge=0)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)
    start_date: date
    end_date: date
    alert_threshold: int = Field(80, ge=1, le=100)
    allocations: list[BudgetAllocationIn] = Field(default_factory=list)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    target_cents: int = Field(..., gt=0)
    current_cents: int = Field(0, ge=0)
    target_date: date
    priority: str = Field("medium", pattern=r"^(low|medium|high)$")
    reminder_frequency: ReminderFrequency = ReminderFrequency.monthly
    status: GoalStatus = GoalStatus.active


class UserIn(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    first_name: Optional[str] = Field(None, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)
    is_email_verified: bool = False


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=128)


class PasswordResetIn(BaseModel):
    token: str = Field(..., min_length=64, max_length=64)
    new_password: str = Field(..., min_length=1, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordIn(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)


class PasswordCheckIn(BaseModel):
    password: str = Field(..., max_length=128)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class ContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
