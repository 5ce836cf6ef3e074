from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, build_engine
from models import Category
from schemas import ExpenseIn, ExpenseWalletIn, ExpenseWalletUpdate
from services import AnalyticsService, ExpenseService, NotFoundError, WalletService


def make_session():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_expense(session, category, amount: str, day: date):
    return ExpenseService(session).create(
        ExpenseIn(
            description="Supplies",
            amount=Decimal(amount),
            category_id=category.id,
            date=day,
        )
    )


def seed_pool(session):
    """Wallet of 1000 with 200 spent in January and 300 in February 2024."""
    category = Category(name="Office")
    session.add(category)
    session.commit()
    WalletService(session).create(
        ExpenseWalletIn(amount=Decimal("1000"), date=date(2024, 1, 1))
    )
    add_expense(session, category, "200", date(2024, 1, 31))
    add_expense(session, category, "300", date(2024, 2, 1))
    return category


def test_remaining_amount_is_the_same_for_every_month() -> None:
    session = make_session()
    seed_pool(session)
    analytics = AnalyticsService(session)

    january = analytics.wallet_summary_for_month(1, 2024, today=date(2024, 3, 15))
    february = analytics.wallet_summary_for_month(2, 2024, today=date(2024, 3, 15))

    assert january.remaining_amount == Decimal("500.00")
    assert february.remaining_amount == Decimal("500.00")
    assert january.total_expenses == Decimal("200.00")
    assert february.total_expenses == Decimal("300.00")
    assert january.wallet_amount == january.monthly_budget == Decimal("1000.00")
    assert january.percentage_used == pytest.approx(20.0)


def test_past_month_uses_full_month_for_average() -> None:
    session = make_session()
    seed_pool(session)

    january = AnalyticsService(session).wallet_summary_for_month(
        1, 2024, today=date(2024, 3, 15)
    )
    assert january.daily_average == Decimal("6.45")
    assert january.projected_total == Decimal("200.00")
    assert january.days_left == 0
    assert january.expense_count == 1
    assert january.average_expense == Decimal("200.00")


def test_current_month_projects_from_completed_days() -> None:
    session = make_session()
    seed_pool(session)

    february = AnalyticsService(session).wallet_summary_for_month(
        2, 2024, today=date(2024, 2, 10)
    )
    # 300 over 9 completed days, 19 days still to come in a 29-day February
    assert february.daily_average == Decimal("33.33")
    assert february.projected_total == Decimal("933.27")
    assert february.days_left == 19


def test_first_day_of_current_month_counts_one_day() -> None:
    session = make_session()
    seed_pool(session)

    february = AnalyticsService(session).wallet_summary_for_month(
        2, 2024, today=date(2024, 2, 1)
    )
    assert february.daily_average == Decimal("300.00")
    assert february.days_left == 28


def test_future_month_has_full_days_left_and_no_spend() -> None:
    session = make_session()
    seed_pool(session)

    april = AnalyticsService(session).wallet_summary_for_month(
        4, 2024, today=date(2024, 2, 10)
    )
    assert april.total_expenses == Decimal("0")
    assert april.daily_average == Decimal("0.00")
    assert april.projected_total == Decimal("0")
    assert april.days_left == 30
    assert april.average_expense == Decimal("0")
    assert april.remaining_amount == Decimal("500.00")


def test_empty_wallet_reports_zero_percentage() -> None:
    session = make_session()
    category = Category(name="Office")
    session.add(category)
    session.commit()
    add_expense(session, category, "50", date(2024, 5, 5))

    summary = AnalyticsService(session).wallet_summary_for_month(
        5, 2024, today=date(2024, 6, 1)
    )
    assert summary.wallet_amount == Decimal("0")
    assert summary.percentage_used == 0.0
    assert summary.remaining_amount == Decimal("-50.00")


@pytest.mark.parametrize(
    "month, year",
    [(0, 2024), (13, 2024), (6, 1969), (6, 3001), ("6", 2024), (True, 2024)],
)
def test_invalid_month_or_year_is_rejected(month, year) -> None:
    session = make_session()
    with pytest.raises(ValueError):
        AnalyticsService(session).wallet_summary_for_month(
            month, year, today=date(2024, 6, 1)
        )


def test_all_time_summary() -> None:
    session = make_session()
    seed_pool(session)

    summary = AnalyticsService(session).wallet_summary()
    assert summary.wallet_amount == Decimal("1000.00")
    assert summary.total_expenses == Decimal("500.00")
    assert summary.remaining_amount == Decimal("500.00")
    assert summary.expense_count == 2
    assert summary.average_expense == Decimal("250")
    assert summary.percentage_used == pytest.approx(50.0)


def test_current_wallet_is_most_recently_updated() -> None:
    session = make_session()
    wallets = WalletService(session)
    with pytest.raises(NotFoundError):
        wallets.current()

    first = wallets.create(ExpenseWalletIn(amount=Decimal("100"), date=date(2024, 1, 1)))
    wallets.create(ExpenseWalletIn(amount=Decimal("250"), date=date(2024, 2, 1)))
    wallets.update(first.id, ExpenseWalletUpdate(description="January top-up"))

    assert wallets.current().id == first.id
    assert wallets.total_cents() == 35000


def test_wallet_entries_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ExpenseWalletIn(amount=Decimal("0"), date=date(2024, 1, 1))
