import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from models import Category, Expense, ExpenseWallet, UserRole

# Amounts stay Decimal in Python and go out as JSON numbers.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

HEX_COLOR = r"^#[0-9a-fA-F]{6}([0-9a-fA-F]{2})?$"
EMAIL = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field("#3b82f6", pattern=HEX_COLOR)
    description: Optional[str] = Field(None, max_length=500)


class CategoryUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    description: Optional[str] = Field(None, max_length=500)


class ExpenseIn(CamelModel):
    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    category_id: int
    vendor: Optional[str] = Field(None, max_length=200)
    date: dt.date
    receipt_path: Optional[str] = None
    notes: Optional[str] = None


class ExpenseUpdate(CamelModel):
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    category_id: Optional[int] = None
    vendor: Optional[str] = Field(None, max_length=200)
    date: Optional[dt.date] = None
    receipt_path: Optional[str] = None
    notes: Optional[str] = None


class ExpenseWalletIn(CamelModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)
    date: dt.date


class ExpenseWalletUpdate(CamelModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(None, max_length=500)
    date: Optional[dt.date] = None


class UserIn(CamelModel):
    email: str = Field(..., pattern=EMAIL, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole = UserRole.user
    is_active: bool = True


class UserUpdate(CamelModel):
    email: Optional[str] = Field(None, pattern=EMAIL, max_length=320)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class UserStatusIn(CamelModel):
    is_active: bool


class IdentityProfile(CamelModel):
    """Subset of the identity provider's profile used to match a local user."""

    object_id: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=320)
    display_name: Optional[str] = Field(None, max_length=200)


class ImportRequest(CamelModel):
    file_path: str = Field(..., min_length=1)


class CategoryOut(CamelModel):
    id: int
    name: str
    color: str
    description: Optional[str]
    is_active: bool


class ExpenseOut(CamelModel):
    id: int
    description: str
    amount: Money
    category_id: int
    vendor: Optional[str]
    date: dt.date
    receipt_path: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    category: Optional[CategoryOut]

    @classmethod
    def from_model(cls, expense: Expense) -> "ExpenseOut":
        return cls(
            id=expense.id,
            description=expense.description,
            amount=cents_to_amount(expense.amount_cents),
            category_id=expense.category_id,
            vendor=expense.vendor,
            date=expense.date,
            receipt_path=expense.receipt_path,
            notes=expense.notes,
            created_at=expense.created_at,
            updated_at=expense.updated_at,
            category=(
                CategoryOut.model_validate(expense.category)
                if expense.category
                else None
            ),
        )


class ExpenseListOut(CamelModel):
    expenses: list[ExpenseOut]
    total_count: int
    has_more: bool


class ExpenseWalletOut(CamelModel):
    id: int
    amount: Money
    description: Optional[str]
    date: dt.date
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, wallet: ExpenseWallet) -> "ExpenseWalletOut":
        return cls(
            id=wallet.id,
            amount=cents_to_amount(wallet.amount_cents),
            description=wallet.description,
            date=wallet.date,
            created_at=wallet.created_at,
            updated_at=wallet.updated_at,
        )


class UserOut(CamelModel):
    id: int
    email: str
    name: str
    role: UserRole
    external_id: Optional[str]
    is_active: bool
    last_login_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class WalletSummaryOut(CamelModel):
    wallet_amount: Money
    monthly_budget: Optional[Money] = None
    total_expenses: Money
    remaining_amount: Money
    expense_count: int
    average_expense: Money
    percentage_used: float
    daily_average: Optional[Money] = None
    projected_total: Optional[Money] = None
    days_left: Optional[int] = None


class CategoryBreakdownOut(CategoryOut):
    total_amount: Money
    expense_count: int
    percentage: float

    @classmethod
    def from_row(
        cls,
        category: Category,
        total_amount: Decimal,
        expense_count: int,
        percentage: float,
    ) -> "CategoryBreakdownOut":
        return cls(
            id=category.id,
            name=category.name,
            color=category.color,
            description=category.description,
            is_active=category.is_active,
            total_amount=total_amount,
            expense_count=expense_count,
            percentage=percentage,
        )


class TrendPointOut(CamelModel):
    date: dt.date
    amount: Money


class MonthlyTrendPointOut(CamelModel):
    month: str
    amount: Money


class ImportResultOut(CamelModel):
    total: int
    successful: int
    failed: int
    errors: list[str]


class UploadOut(CamelModel):
    original_name: str
    saved_as: str
    size: int
    mime_type: Optional[str]
    path: str
