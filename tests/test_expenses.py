import random
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import services
from alerts import Alert, AlertPublisher, ChannelRegistry
from database import Base
from models import Expense
from schemas import BudgetIn, ExpenseIn
from services import (
    BudgetService,
    ExpenseService,
    NotFoundError,
    ReportService,
    SpendCache,
    ledger_sum,
)


JAN = date(2025, 1, 15)


class RecordingChannel:
    def __init__(self) -> None:
        self.events: list[dict] = []

    def send(self, payload: dict) -> None:
        self.events.append(payload)


class BrokenChannel:
    def send(self, payload: dict) -> None:
        raise RuntimeError("socket closed")


def make_publisher(user_id: int = 1, *channels) -> AlertPublisher:
    registry = ChannelRegistry()
    for channel in channels:
        registry.register(user_id, channel)
    return AlertPublisher(registry)


def food(amount: str, day: date = JAN) -> ExpenseIn:
    return ExpenseIn(amount=Decimal(amount), date=day, category="Food")


def test_over_budget_alert_then_delete_restores_total() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    channel = RecordingChannel()

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher(1, channel))
        cache = SpendCache(session, 1)

        first = expenses.create(food("60"))
        assert first.alerts == []
        assert cache.get("Food", "2025-01") == 6_000
        assert channel.events == []

        second = expenses.create(food("50"))
        assert second.alerts == [
            Alert(category="Food", spent_cents=11_000, limit_cents=10_000)
        ]
        assert cache.get("Food", "2025-01") == 11_000
        assert len(channel.events) == 1
        assert channel.events[0]["alerts"] == [
            {"category": "Food", "spent": "110.00", "limit": "100.00"}
        ]
        assert "created_at" in channel.events[0]

        expenses.delete(second.expense.id)
        assert cache.get("Food", "2025-01") == 6_000
        assert len(channel.events) == 1


def test_unbudgeted_category_creates_no_cache_entry() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    channel = RecordingChannel()

    with Session(engine) as session:
        expenses = ExpenseService(session, 1, publisher=make_publisher(1, channel))
        created = expenses.create(
            ExpenseIn(amount=Decimal("500"), date=JAN, category="Travel")
        )

        assert created.expense.id is not None
        assert created.alerts == []
        assert SpendCache(session, 1).get("Travel", "2025-01") is None
        assert SpendCache(session, 1).rows_for_month("2025-01") == []
        assert channel.events == []


def test_budget_created_after_spending_recomputes_from_ledger() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        expenses.create(food("60"))
        expenses.create(food("50"))
        assert SpendCache(session, 1).get("Food", "2025-01") is None

        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        assert SpendCache(session, 1).get("Food", "2025-01") == 11_000


def test_alert_only_when_strictly_over_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher())

        assert expenses.create(food("99.99")).alerts == []
        assert expenses.create(food("0.01")).alerts == []
        over = expenses.create(food("0.01")).alerts
        assert [a.spent_cents for a in over] == [10_002]


def test_zero_limit_alerts_on_any_positive_spend() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("0")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher())

        assert expenses.create(food("0")).alerts == []
        assert len(expenses.create(food("1")).alerts) == 1


def test_delete_of_missing_or_foreign_expense_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        mine = ExpenseService(session, 1, publisher=make_publisher())
        theirs = ExpenseService(session, 2, publisher=make_publisher())
        created = mine.create(food("40"))

        with pytest.raises(NotFoundError):
            theirs.delete(created.expense.id)
        with pytest.raises(NotFoundError):
            mine.delete(9_999)
        assert SpendCache(session, 1).get("Food", "2025-01") == 4_000

        mine.delete(created.expense.id)
        with pytest.raises(NotFoundError):
            mine.delete(created.expense.id)
        assert SpendCache(session, 1).get("Food", "2025-01") == 0


def test_delete_adjusts_month_of_expense_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        december = expenses.create(food("20", day=date(2024, 12, 30)))
        expenses.create(food("30"))

        expenses.delete(december.expense.id)

        assert SpendCache(session, 1).get("Food", "2024-12") == 0
        assert SpendCache(session, 1).get("Food", "2025-01") == 3_000


def test_cache_matches_ledger_after_mixed_sequence() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    rng = random.Random(7)

    with Session(engine) as session:
        budgets = BudgetService(session, 1)
        for category in ("Food", "Rent"):
            budgets.upsert(
                BudgetIn(category=category, amount=Decimal("250")), today=JAN
            )
        expenses = ExpenseService(session, 1, publisher=make_publisher())

        live: list[tuple[int, str, int]] = []
        for _ in range(80):
            if live and rng.random() < 0.4:
                expense_id, _category, _cents = live.pop(rng.randrange(len(live)))
                expenses.delete(expense_id)
                continue
            category = rng.choice(["Food", "Rent", "Fun"])
            cents = rng.randint(1, 9_999)
            created = expenses.create(
                ExpenseIn(
                    amount=Decimal(cents) / 100,
                    date=date(2025, 1, rng.randint(1, 28)),
                    category=category,
                )
            )
            live.append((created.expense.id, category, cents))

        cache = SpendCache(session, 1)
        for category in ("Food", "Rent"):
            expected = sum(c for _id, cat, c in live if cat == category)
            assert cache.get(category, "2025-01") == expected
            assert ledger_sum(session, 1, category, "2025-01") == expected
        assert cache.get("Fun", "2025-01") is None


def test_failed_cache_write_rolls_back_ledger_insert(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        expenses.create(food("10"))

        def failing_increment(self, category, month_key, delta_cents):
            raise OperationalError("UPDATE spend_cache", {}, Exception("disk I/O"))

        monkeypatch.setattr(services.SpendCache, "increment", failing_increment)
        with pytest.raises(OperationalError):
            expenses.create(food("25"))

        count = session.scalar(select(func.count(Expense.id)))
        assert count == 1
        monkeypatch.undo()
        assert SpendCache(session, 1).get("Food", "2025-01") == 1_000


def test_failed_cache_write_rolls_back_delete(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        created = expenses.create(food("10"))

        def failing_increment(self, category, month_key, delta_cents):
            raise OperationalError("UPDATE spend_cache", {}, Exception("locked"))

        monkeypatch.setattr(services.SpendCache, "increment", failing_increment)
        with pytest.raises(OperationalError):
            expenses.delete(created.expense.id)
        monkeypatch.undo()

        assert expenses.get(created.expense.id).id == created.expense.id
        assert SpendCache(session, 1).get("Food", "2025-01") == 1_000


def test_broken_channel_does_not_fail_the_request() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    healthy = RecordingChannel()

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("10")), today=JAN
        )
        publisher = make_publisher(1, BrokenChannel(), healthy)
        created = ExpenseService(session, 1, publisher=publisher).create(food("20"))

        assert len(created.alerts) == 1
        assert len(healthy.events) == 1


def test_expense_input_requires_amount_and_date() -> None:
    with pytest.raises(ValidationError):
        ExpenseIn(date=JAN)
    with pytest.raises(ValidationError):
        ExpenseIn(amount=Decimal("5"))
    with pytest.raises(ValidationError):
        ExpenseIn(amount=Decimal("-5"), date=JAN)


def test_expense_input_defaults_category_and_blanks() -> None:
    data = ExpenseIn(amount=Decimal("5"), date=JAN, vendor="  ", note=" lunch ")
    assert data.category == "Uncategorized"
    assert data.vendor is None
    assert data.note == "lunch"

    assert ExpenseIn(amount="5", date=JAN, category="  ").category == "Uncategorized"


def test_recent_lists_newest_first_without_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        older = expenses.create(food("1", day=date(2025, 1, 2)))
        newer = expenses.create(food("2", day=date(2025, 1, 20)))
        gone = expenses.create(food("3", day=date(2025, 1, 25)))
        ExpenseService(session, 2, publisher=make_publisher()).create(food("4"))
        expenses.delete(gone.expense.id)

        assert [e.id for e in expenses.recent()] == [newer.expense.id, older.expense.id]


def test_delete_in_month_the_budget_never_tracked_leaves_cache_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        december = expenses.create(food("20", day=date(2024, 12, 30)))
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )

        expenses.delete(december.expense.id)

        assert SpendCache(session, 1).get("Food", "2024-12") is None
        assert ledger_sum(session, 1, "Food", "2024-12") == 0
        assert ReportService(session, 1).generate("2024-12") is None


def test_writers_lock_category_before_reading_budget(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    calls: list[tuple[str, int, str]] = []
    real_budget_for = services._budget_for

    def recording_lock(session, user_id, category):
        calls.append(("lock", user_id, category))

    def recording_budget_for(session, user_id, category):
        calls.append(("budget", user_id, category))
        return real_budget_for(session, user_id, category)

    monkeypatch.setattr(services, "_lock_category", recording_lock)
    monkeypatch.setattr(services, "_budget_for", recording_budget_for)

    with Session(engine) as session:
        BudgetService(session, 1).upsert(
            BudgetIn(category="Food", amount=Decimal("100")), today=JAN
        )
        assert calls == [("lock", 1, "Food"), ("budget", 1, "Food")]

        calls.clear()
        expenses = ExpenseService(session, 1, publisher=make_publisher())
        created = expenses.create(food("10"))
        assert calls == [("lock", 1, "Food"), ("budget", 1, "Food")]

        calls.clear()
        expenses.delete(created.expense.id)
        assert calls == [("lock", 1, "Food"), ("budget", 1, "Food")]
