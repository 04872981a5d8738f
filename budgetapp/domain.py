"""Budget domain records. Money is stored as integer cents."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

__all__ = [
    "BudgetSource",
    "Expense",
    "IncomeSource",
    "MonthlyData",
    "User",
    "YearMonth",
    "format_money",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_money(cents: int) -> str:
    """Render cents as a dollar string: 1234 -> '$12.34', -50 -> '-$0.50'."""
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


class YearMonth(BaseModel):
    """Identifies a budgeting month."""

    model_config = {"frozen": True}

    year: int = Field(ge=1970, le=9999)
    month: int = Field(ge=1, le=12)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class Expense(BaseModel):
    id: int = 0
    year_month: YearMonth
    category: str = ""
    description: str
    amount_cents: int = Field(ge=0)
    created_at: datetime = Field(default_factory=_utcnow)


class IncomeSource(BaseModel):
    id: int = 0
    user_id: int = Field(gt=0)
    name: str
    year_month: YearMonth
    amount_cents: int = Field(ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BudgetSource(BaseModel):
    """A named budget category for one month (matched to expenses by category)."""

    id: int = 0
    user_id: int = Field(gt=0)
    name: str
    year_month: YearMonth
    amount_cents: int = Field(ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class User(BaseModel):
    id: int = Field(gt=0)
    username: str
    email: str = ""


class MonthlyData(BaseModel):
    """All financial data for one user and month."""

    year_month: YearMonth
    income_sources: list[IncomeSource] = Field(default_factory=list)
    budget_sources: list[BudgetSource] = Field(default_factory=list)
    expenses: list[Expense] = Field(default_factory=list)

    @property
    def total_income_cents(self) -> int:
        return sum(s.amount_cents for s in self.income_sources)

    @property
    def total_budget_cents(self) -> int:
        return sum(s.amount_cents for s in self.budget_sources)

    @property
    def total_expense_cents(self) -> int:
        return sum(e.amount_cents for e in self.expenses)

    @property
    def remaining_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents

    def spent_in_category(self, category: str) -> int:
        return sum(e.amount_cents for e in self.expenses if e.category == category)
