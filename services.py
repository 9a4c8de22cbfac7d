from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from alerts import Alert, AlertPublisher, get_alert_publisher
from database import unit_of_work
from models import Budget, Expense, Report, ReportLine, SpendCacheEntry
from money import to_cents
from periods import current_month_key, month_key_for, month_period, parse_month_key
from schemas import BudgetIn, ExpenseIn


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


def ledger_sum(session: Session, user_id: int, category: str, month_key: str) -> int:
    period = month_period(month_key)
    return int(
        session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.user_id == user_id,
                Expense.category == category,
                Expense.deleted_at.is_(None),
                Expense.date.between(period.start, period.end),
            )
        ).scalar_one()
    )


def _lock_category(session: Session, user_id: int, category: str) -> None:
    """Serialize writers of one (owner, category) until the transaction ends.

    SQLite already allows a single writer at a time. On PostgreSQL a
    transaction-scoped advisory lock keeps a budget recompute from missing
    an expense that a concurrent transaction has inserted but not committed.
    """
    if session.get_bind().dialect.name == "postgresql":
        session.execute(
            select(func.pg_advisory_xact_lock(func.hashtext(f"{user_id}:{category}")))
        )


def _dialect_insert(session: Session):
    name = session.get_bind().dialect.name
    if name == "sqlite":
        return sqlite.insert
    if name == "postgresql":
        return postgresql.insert
    raise RuntimeError(f"Spend cache upsert not supported on dialect '{name}'")


class SpendCache:
    """Running spend totals per (owner, month, category).

    All methods run inside the caller's transaction and never commit. Writes
    are single upsert statements so concurrent increments to the same key are
    serialized by the database instead of by a lock held here.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _upsert(
        self, category: str, month_key: str, cents: int, *, accumulate: bool
    ) -> int:
        table = SpendCacheEntry.__table__
        insert = _dialect_insert(self.session)
        stmt = insert(table).values(
            user_id=self.user_id,
            month_key=month_key,
            category=category,
            total_cents=cents,
        )
        new_total = (
            table.c.total_cents + stmt.excluded.total_cents
            if accumulate
            else stmt.excluded.total_cents
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.month_key, table.c.category],
            set_={"total_cents": new_total, "updated_at": datetime.utcnow()},
        ).returning(table.c.total_cents)
        return int(self.session.execute(stmt).scalar_one())

    def increment(self, category: str, month_key: str, delta_cents: int) -> int:
        return self._upsert(category, month_key, delta_cents, accumulate=True)

    def recompute(self, category: str, month_key: str) -> int:
        total = ledger_sum(self.session, self.user_id, category, month_key)
        return self._upsert(category, month_key, total, accumulate=False)

    def remove(self, category: str, month_key: str) -> None:
        self.session.execute(
            delete(SpendCacheEntry).where(
                SpendCacheEntry.user_id == self.user_id,
                SpendCacheEntry.month_key == month_key,
                SpendCacheEntry.category == category,
            )
        )

    def get(self, category: str, month_key: str) -> Optional[int]:
        return self.session.scalar(
            select(SpendCacheEntry.total_cents).where(
                SpendCacheEntry.user_id == self.user_id,
                SpendCacheEntry.month_key == month_key,
                SpendCacheEntry.category == category,
            )
        )

    def rows_for_month(self, month_key: str) -> list[tuple[str, int]]:
        stmt = (
            select(SpendCacheEntry.category, SpendCacheEntry.total_cents)
            .where(
                SpendCacheEntry.user_id == self.user_id,
                SpendCacheEntry.month_key == month_key,
            )
            .order_by(SpendCacheEntry.category)
        )
        return [(row.category, int(row.total_cents)) for row in self.session.execute(stmt)]


def _budget_for(session: Session, user_id: int, category: str) -> Optional[Budget]:
    return session.scalar(
        select(Budget).where(Budget.user_id == user_id, Budget.category == category)
    )


@dataclass
class ExpenseCreated:
    expense: Expense
    alerts: list[Alert] = field(default_factory=list)


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        publisher: Optional[AlertPublisher] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.publisher = publisher or get_alert_publisher()

    def create(self, data: ExpenseIn) -> ExpenseCreated:
        alerts: list[Alert] = []
        with unit_of_work(self.session):
            expense = Expense(
                user_id=self.user_id,
                date=data.date,
                amount_cents=to_cents(data.amount),
                category=data.category,
                vendor=data.vendor,
                note=data.note,
            )
            self.session.add(expense)
            self.session.flush()

            _lock_category(self.session, self.user_id, expense.category)
            budget = _budget_for(self.session, self.user_id, expense.category)
            if budget is not None:
                total = SpendCache(self.session, self.user_id).increment(
                    expense.category, month_key_for(expense.date), expense.amount_cents
                )
                if total > budget.amount_cents:
                    alerts.append(
                        Alert(
                            category=expense.category,
                            spent_cents=total,
                            limit_cents=budget.amount_cents,
                        )
                    )

        logger.info(
            f"expense_created: user_id={self.user_id} id={expense.id} "
            f"category={expense.category} alerts={len(alerts)}"
        )
        self._publish(alerts)
        return ExpenseCreated(expense=expense, alerts=alerts)

    def _publish(self, alerts: list[Alert]) -> None:
        if not alerts:
            return
        try:
            self.publisher.publish(self.user_id, alerts)
        except Exception:
            logger.warning(
                f"alert_publish_failed: user_id={self.user_id}", exc_info=True
            )

    def get(self, expense_id: int) -> Expense:
        expense = self.session.scalar(
            select(Expense).where(
                Expense.user_id == self.user_id,
                Expense.id == expense_id,
                Expense.deleted_at.is_(None),
            )
        )
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        with unit_of_work(self.session):
            _lock_category(self.session, self.user_id, expense.category)
            # Conditional update so two concurrent deletes cannot both decrement.
            result = self.session.execute(
                update(Expense)
                .where(
                    Expense.id == expense.id,
                    Expense.user_id == self.user_id,
                    Expense.deleted_at.is_(None),
                )
                .values(deleted_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("Expense not found")

            budget = _budget_for(self.session, self.user_id, expense.category)
            cache = SpendCache(self.session, self.user_id)
            month_key = month_key_for(expense.date)
            # A month the budget never tracked has no entry to adjust.
            tracked = cache.get(expense.category, month_key) is not None
            if budget is not None and tracked:
                cache.increment(expense.category, month_key, -expense.amount_cents)
        logger.info(f"expense_deleted: user_id={self.user_id} id={expense_id}")

    def recent(self, limit: int = 200) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id, Expense.deleted_at.is_(None))
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class BudgetStatus:
    category: str
    budget_cents: int
    spent_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.spent_cents

    @property
    def percentage(self) -> float:
        if self.budget_cents == 0:
            return 0.0
        return round(self.spent_cents * 100 / self.budget_cents, 2)

    @property
    def status(self) -> str:
        if self.budget_cents == 0:
            return "good"
        if self.spent_cents * 100 > self.budget_cents * 100:
            return "over"
        if self.spent_cents * 100 > self.budget_cents * 80:
            return "warning"
        return "good"


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.category)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn, *, today: Optional[date] = None) -> Budget:
        month_key = current_month_key(today=today)
        with unit_of_work(self.session):
            _lock_category(self.session, self.user_id, data.category)
            budget = _budget_for(self.session, self.user_id, data.category)
            if budget:
                budget.amount_cents = to_cents(data.amount)
            else:
                budget = Budget(
                    user_id=self.user_id,
                    category=data.category,
                    amount_cents=to_cents(data.amount),
                )
                self.session.add(budget)
            self.session.flush()
            # Increments are skipped while a category has no budget, so the
            # cache is rebuilt from the ledger here.
            total = SpendCache(self.session, self.user_id).recompute(
                data.category, month_key
            )
        logger.info(
            f"budget_upserted: user_id={self.user_id} category={data.category} "
            f"month={month_key} cached_cents={total}"
        )
        return budget

    def delete(self, category: str, *, today: Optional[date] = None) -> None:
        month_key = current_month_key(today=today)
        budget = _budget_for(self.session, self.user_id, category.strip())
        if not budget:
            raise NotFoundError("Budget not found")
        with unit_of_work(self.session):
            _lock_category(self.session, self.user_id, budget.category)
            self.session.delete(budget)
            SpendCache(self.session, self.user_id).remove(budget.category, month_key)
        logger.info(
            f"budget_deleted: user_id={self.user_id} category={budget.category} "
            f"month={month_key}"
        )

    def list_status(self, *, today: Optional[date] = None) -> list[BudgetStatus]:
        month_key = current_month_key(today=today)
        spent_by_category = dict(
            SpendCache(self.session, self.user_id).rows_for_month(month_key)
        )
        return [
            BudgetStatus(
                category=budget.category,
                budget_cents=budget.amount_cents,
                spent_cents=spent_by_category.get(budget.category, 0),
            )
            for budget in self.list_all()
        ]


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def generate(self, month_key: str) -> Optional[Report]:
        year, month = parse_month_key(month_key)
        with unit_of_work(self.session):
            rows = SpendCache(self.session, self.user_id).rows_for_month(month_key)
            if not rows:
                logger.info(
                    f"report_skipped: user_id={self.user_id} month={month_key} "
                    "reason=empty_cache"
                )
                return None

            # Categories whose budget is gone keep their spend with a zero limit.
            limits = {
                row.category: int(row.amount_cents)
                for row in self.session.execute(
                    select(Budget.category, Budget.amount_cents).where(
                        Budget.user_id == self.user_id
                    )
                )
            }

            lines: list[ReportLine] = []
            total_budgeted = total_spent = total_overspent = 0
            for position, (category, spent) in enumerate(rows):
                budgeted = limits.get(category, 0)
                overspent = max(0, spent - budgeted)
                total_budgeted += budgeted
                total_spent += spent
                total_overspent += overspent
                lines.append(
                    ReportLine(
                        position=position,
                        category=category,
                        budgeted_cents=budgeted,
                        spent_cents=spent,
                        overspent_cents=overspent,
                    )
                )

            report = Report(
                user_id=self.user_id,
                year=year,
                month=month,
                total_budgeted_cents=total_budgeted,
                total_spent_cents=total_spent,
                total_overspent_cents=total_overspent,
                generated_at=datetime.utcnow(),
                lines=lines,
            )
            self.session.add(report)
            self.session.flush()

        logger.info(
            f"report_generated: user_id={self.user_id} month={month_key} "
            f"id={report.id} categories={len(lines)}"
        )
        return report

    def list_recent(self, limit: int = 12) -> list[Report]:
        stmt = (
            select(Report)
            .options(selectinload(Report.lines))
            .where(Report.user_id == self.user_id)
            .order_by(Report.generated_at.desc(), Report.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def get(self, report_id: int) -> Report:
        report = self.session.scalar(
            select(Report)
            .options(selectinload(Report.lines))
            .where(Report.user_id == self.user_id, Report.id == report_id)
        )
        if not report:
            raise NotFoundError("Report not found")
        return report


def owners_with_budgets(session: Session) -> list[int]:
    stmt = select(Budget.user_id).distinct().order_by(Budget.user_id)
    return [int(user_id) for user_id in session.scalars(stmt)]


def generate_reports_for_all(session: Session, month_key: str) -> int:
    parse_month_key(month_key)
    written = 0
    for user_id in owners_with_budgets(session):
        try:
            if ReportService(session, user_id).generate(month_key) is not None:
                written += 1
        except SQLAlchemyError:
            logger.exception(
                f"report_batch_failed: user_id={user_id} month={month_key}"
            )
    logger.info(f"report_batch: month={month_key} written={written}")
    return written
