import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from models import DEFAULT_CATEGORY


def _as_utc(value: datetime) -> datetime:
    # Timestamps are stored as naive UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    date: dt.date
    category: Optional[str] = Field(
        default=None, max_length=100, validate_default=True
    )
    vendor: Optional[str] = Field(default=None, max_length=200)
    note: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("category")
    @classmethod
    def _default_category(cls, value: Optional[str]) -> str:
        clean = (value or "").strip()
        return clean or DEFAULT_CATEGORY

    @field_validator("vendor", "note")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        clean = value.strip()
        return clean or None


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)

    @field_validator("category")
    @classmethod
    def _strip_category(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Category must not be blank")
        return clean


class ReportGenerateIn(BaseModel):
    month: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")


class AlertOut(BaseModel):
    category: str
    spent: Decimal
    limit: Decimal


class AlertEventOut(BaseModel):
    alerts: list[AlertOut]
    created_at: UtcDatetime


class ExpenseCreatedOut(BaseModel):
    id: int
    alerts: list[AlertOut]


class ExpenseOut(BaseModel):
    id: int
    amount: Decimal
    date: dt.date
    category: str
    vendor: Optional[str]
    note: Optional[str]


class BudgetStatusOut(BaseModel):
    category: str
    budget_amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: float
    status: Literal["good", "warning", "over"]


class ReportLineOut(BaseModel):
    category: str
    budgeted: Decimal
    spent: Decimal
    overspent: Decimal


class ReportOut(BaseModel):
    id: int
    year: int
    month: int
    total_budgeted: Decimal
    total_spent: Decimal
    total_overspent: Decimal
    categories: list[ReportLineOut]
    generated_at: UtcDatetime


class ReportGeneratedOut(BaseModel):
    generated_at: UtcDatetime
