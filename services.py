from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import and_, asc, desc, extract, func, select
from sqlalchemy.orm import Session, contains_eager

from models import Category, Expense, ExpenseWallet, User, UserRole
from periods import add_months, local_today, resolve_month
from schemas import (
    CategoryIn,
    CategoryUpdate,
    ExpenseIn,
    ExpenseUpdate,
    ExpenseWalletIn,
    ExpenseWalletUpdate,
    UserIn,
    UserUpdate,
    amount_to_cents,
    cents_to_amount,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


class NotFoundError(ValueError):
    pass


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ExpenseFilters:
    search: Optional[str] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


SORT_KEYS = ("date", "amount", "description", "category")


@dataclass
class WalletSummary:
    wallet_amount: Decimal
    total_expenses: Decimal
    remaining_amount: Decimal
    expense_count: int
    average_expense: Decimal
    percentage_used: float
    monthly_budget: Optional[Decimal] = None
    daily_average: Optional[Decimal] = None
    projected_total: Optional[Decimal] = None
    days_left: Optional[int] = None


@dataclass
class CategoryBreakdown:
    category: Category
    total_amount: Decimal
    expense_count: int
    percentage: float


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_inactive: bool = False) -> list[Category]:
        stmt = select(Category).order_by(Category.name)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValueError("Category name is required")
        if self._name_taken(name):
            raise ValueError("Category with this name already exists")
        category = Category(
            name=name,
            color=data.color,
            description=data.description,
            is_active=True,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValueError("Category name is required")
            if self._name_taken(name, exclude_id=category.id):
                raise ValueError("Category with this name already exists")
            category.name = name
        if data.color is not None:
            category.color = data.color
        if "description" in data.model_fields_set:
            category.description = data.description
        self.session.commit()
        return category

    def soft_delete(self, category_id: int) -> None:
        category = self.get(category_id)
        category.is_active = False
        self.session.commit()


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _conditions(filters: ExpenseFilters) -> list:
        conditions = []
        if filters.search:
            conditions.append(
                Expense.description.contains(filters.search, autoescape=True)
            )
        if filters.category_id is not None:
            conditions.append(Expense.category_id == filters.category_id)
        if filters.start_date is not None:
            conditions.append(Expense.date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(Expense.date <= filters.end_date)
        if filters.min_amount is not None:
            conditions.append(Expense.amount_cents >= amount_to_cents(filters.min_amount))
        if filters.max_amount is not None:
            conditions.append(Expense.amount_cents <= amount_to_cents(filters.max_amount))
        return conditions

    def list(
        self,
        filters: Optional[ExpenseFilters] = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> list[Expense]:
        filters = filters or ExpenseFilters()
        if sort_by not in SORT_KEYS:
            sort_by = "date"
        order_fn = asc if sort_order == "asc" else desc
        sort_column = {
            "date": Expense.date,
            "amount": Expense.amount_cents,
            "description": Expense.description,
            "category": Category.name,
        }[sort_by]
        stmt = (
            select(Expense)
            .outerjoin(Category, Category.id == Expense.category_id)
            .options(contains_eager(Expense.category))
            .where(*self._conditions(filters))
            .order_by(order_fn(sort_column), order_fn(Expense.id))
            .offset(max(offset, 0))
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def count(self, filters: Optional[ExpenseFilters] = None) -> int:
        filters = filters or ExpenseFilters()
        stmt = select(func.count(Expense.id)).where(*self._conditions(filters))
        return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .outerjoin(Category, Category.id == Expense.category_id)
            .options(contains_eager(Expense.category))
            .where(Expense.id == expense_id)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def _active_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or not category.is_active:
            raise ValueError("Category not found")
        return category

    def create(self, data: ExpenseIn) -> Expense:
        self._active_category(data.category_id)
        expense = Expense(
            description=data.description.strip(),
            amount_cents=amount_to_cents(data.amount),
            category_id=data.category_id,
            vendor=data.vendor,
            date=data.date,
            receipt_path=data.receipt_path,
            notes=data.notes,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_fields_set
        if data.category_id is not None and data.category_id != expense.category_id:
            self._active_category(data.category_id)
            expense.category_id = data.category_id
        if data.description is not None:
            expense.description = data.description.strip()
        if data.amount is not None:
            expense.amount_cents = amount_to_cents(data.amount)
        if data.date is not None:
            expense.date = data.date
        for name in ("vendor", "receipt_path", "notes"):
            if name in fields:
                setattr(expense, name, getattr(data, name))
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            raise NotFoundError("Expense not found")
        self.session.delete(expense)
        self.session.commit()

    def total_cents(self) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0))
        return int(self.session.execute(stmt).scalar_one() or 0)


class WalletService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[ExpenseWallet]:
        stmt = select(ExpenseWallet).order_by(
            ExpenseWallet.created_at.desc(), ExpenseWallet.id.desc()
        )
        return self.session.scalars(stmt).all()

    def current(self) -> ExpenseWallet:
        stmt = (
            select(ExpenseWallet)
            .order_by(ExpenseWallet.updated_at.desc(), ExpenseWallet.id.desc())
            .limit(1)
        )
        wallet = self.session.scalar(stmt)
        if not wallet:
            raise NotFoundError("No expense wallet found")
        return wallet

    def get(self, wallet_id: int) -> ExpenseWallet:
        wallet = self.session.get(ExpenseWallet, wallet_id)
        if not wallet:
            raise NotFoundError("Expense wallet not found")
        return wallet

    def create(self, data: ExpenseWalletIn) -> ExpenseWallet:
        cents = amount_to_cents(data.amount)
        if cents <= 0:
            raise ValueError("Amount must be a positive number")
        wallet = ExpenseWallet(
            amount_cents=cents, description=data.description, date=data.date
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        logger.info(f"wallet_topup: id={wallet.id} amount_cents={cents}")
        return wallet

    def update(self, wallet_id: int, data: ExpenseWalletUpdate) -> ExpenseWallet:
        wallet = self.get(wallet_id)
        if data.amount is not None:
            cents = amount_to_cents(data.amount)
            if cents <= 0:
                raise ValueError("Amount must be a positive number")
            wallet.amount_cents = cents
        if "description" in data.model_fields_set:
            wallet.description = data.description
        if data.date is not None:
            wallet.date = data.date
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def delete(self, wallet_id: int) -> None:
        wallet = self.get(wallet_id)
        self.session.delete(wallet)
        self.session.commit()

    def total_cents(self) -> int:
        stmt = select(func.coalesce(func.sum(ExpenseWallet.amount_cents), 0))
        return int(self.session.execute(stmt).scalar_one() or 0)


class AnalyticsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def wallet_summary(self) -> WalletSummary:
        wallet_amount = cents_to_amount(WalletService(self.session).total_cents())
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
                func.count(Expense.id).label("count"),
            )
        ).one()
        total_expenses = cents_to_amount(row.total)
        expense_count = int(row.count or 0)
        return WalletSummary(
            wallet_amount=wallet_amount,
            total_expenses=total_expenses,
            remaining_amount=wallet_amount - total_expenses,
            expense_count=expense_count,
            average_expense=(
                total_expenses / expense_count if expense_count else ZERO
            ),
            percentage_used=(
                float(total_expenses / wallet_amount * 100) if wallet_amount > 0 else 0.0
            ),
        )

    def wallet_summary_for_month(
        self, month: int, year: int, *, today: Optional[date] = None
    ) -> WalletSummary:
        """Wallet position plus spend statistics for one calendar month.

        The wallet is a single running pool: its balance and the remaining
        amount do not depend on the month being viewed. Only the spend
        figures and projections are scoped to the month.
        """
        period = resolve_month(month, year)
        today = local_today(today)

        wallet_amount = cents_to_amount(WalletService(self.session).total_cents())
        expenses_ever = cents_to_amount(ExpenseService(self.session).total_cents())
        available = wallet_amount - expenses_ever

        row = self.session.execute(
            select(
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
                func.count(Expense.id).label("count"),
            ).where(Expense.date >= period.start, Expense.date < period.next_start)
        ).one()
        monthly_amount = cents_to_amount(row.total)
        monthly_count = int(row.count or 0)
        average = monthly_amount / monthly_count if monthly_count else ZERO
        percentage_used = (
            float(monthly_amount / wallet_amount * 100) if wallet_amount > 0 else 0.0
        )

        days_in_month = period.days
        is_current = today.year == period.year and today.month == period.month
        if is_current:
            # completed days only
            days_passed = max(today.day - 1, 1)
        else:
            days_passed = days_in_month
        daily_average = round2(monthly_amount / days_passed)

        projected_total = monthly_amount
        if is_current and today.day < days_in_month:
            remaining_days = days_in_month - today.day
            projected_total = round2(monthly_amount + daily_average * remaining_days)

        if is_current:
            days_left = days_in_month - today.day
        elif (period.year, period.month) > (today.year, today.month):
            days_left = days_in_month
        else:
            days_left = 0

        return WalletSummary(
            wallet_amount=wallet_amount,
            monthly_budget=wallet_amount,
            total_expenses=monthly_amount,
            remaining_amount=available,
            expense_count=monthly_count,
            average_expense=average,
            percentage_used=percentage_used,
            daily_average=daily_average,
            projected_total=projected_total,
            days_left=days_left,
        )

    def category_breakdown(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[CategoryBreakdown]:
        join_on = Expense.category_id == Category.id
        if month is not None or year is not None:
            if month is None or year is None:
                raise ValueError("Month and year must be provided together")
            period = resolve_month(month, year)
            join_on = and_(
                join_on,
                Expense.date >= period.start,
                Expense.date < period.next_start,
            )
        stmt = (
            select(
                Category,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
                func.count(Expense.id).label("count"),
            )
            .outerjoin(Expense, join_on)
            .where(Category.is_active.is_(True))
            .group_by(Category.id)
            .order_by(Category.name)
        )
        rows = self.session.execute(stmt).all()
        grand_total = sum(int(row.total or 0) for row in rows)
        breakdown = []
        for row in rows:
            cents = int(row.total or 0)
            percent = (cents / grand_total * 100) if grand_total else 0.0
            breakdown.append(
                CategoryBreakdown(
                    category=row.Category,
                    total_amount=cents_to_amount(cents),
                    expense_count=int(row.count or 0),
                    percentage=percent,
                )
            )
        return breakdown

    def expense_trends(
        self, days: int, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        if days < 1:
            raise ValueError("Invalid days parameter")
        start = local_today(today) - timedelta(days=days)
        stmt = (
            select(
                Expense.date.label("day"),
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
            )
            .where(Expense.date >= start)
            .group_by(Expense.date)
            .order_by(Expense.date)
        )
        return [
            {"date": row.day, "amount": cents_to_amount(row.total)}
            for row in self.session.execute(stmt)
        ]

    def monthly_trends(
        self, months: int, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        if months < 1:
            raise ValueError("Invalid months parameter")
        start = add_months(local_today(today), -months)
        year = extract("year", Expense.date).label("year")
        month = extract("month", Expense.date).label("month")
        stmt = (
            select(
                year,
                month,
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
            )
            .where(Expense.date >= start)
            .group_by(year, month)
            .order_by(year, month)
        )
        return [
            {
                "month": f"{int(row.year):04d}-{int(row.month):02d}",
                "amount": cents_to_amount(row.total),
            }
            for row in self.session.execute(stmt)
        ]


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        stmt = select(User).order_by(User.created_at.desc(), User.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def get_by_external_id(self, external_id: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.external_id == external_id))

    def create(self, data: UserIn) -> User:
        email = data.email.strip().lower()
        if self.get_by_email(email):
            raise ValueError("User with this email already exists")
        user = User(
            email=email,
            name=data.name.strip(),
            role=data.role,
            is_active=data.is_active,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id} role={user.role.value}")
        return user

    def update(
        self, user_id: int, data: UserUpdate, *, acting_user_id: Optional[int] = None
    ) -> User:
        user = self.get(user_id)
        if acting_user_id == user.id:
            if data.role is not None and data.role != UserRole.admin:
                raise ValueError("Cannot demote yourself from admin role")
            if data.is_active is False:
                raise ValueError("Cannot deactivate your own account")
        if data.email is not None:
            email = data.email.strip().lower()
            existing = self.get_by_email(email)
            if existing and existing.id != user.id:
                raise ValueError("User with this email already exists")
            user.email = email
        if data.name is not None:
            user.name = data.name.strip()
        if data.role is not None:
            user.role = data.role
        if data.is_active is not None:
            user.is_active = data.is_active
        self.session.commit()
        self.session.refresh(user)
        return user

    def set_active(
        self, user_id: int, is_active: bool, *, acting_user_id: Optional[int] = None
    ) -> User:
        if acting_user_id == user_id and not is_active:
            raise ValueError("Cannot deactivate your own account")
        user = self.get(user_id)
        user.is_active = is_active
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_status: id={user.id} is_active={is_active}")
        return user

    def delete(self, user_id: int, *, acting_user_id: Optional[int] = None) -> None:
        if acting_user_id == user_id:
            raise ValueError("Cannot delete your own account")
        user = self.get(user_id)
        self.session.delete(user)
        self.session.commit()

    def ensure_admin(self, email: str) -> User:
        user = self.get_by_email(email)
        if user:
            if user.role != UserRole.admin or not user.is_active:
                user.role = UserRole.admin
                user.is_active = True
                self.session.commit()
            return user
        return self.create(
            UserIn(email=email, name=email.split("@")[0], role=UserRole.admin)
        )
