"""Event model and the closed set of typed payload variants.

Payloads form a tagged union discriminated on ``kind``. User-scoped variants
require a positive ``user_id``; invalid payloads fail at construction with a
pydantic ValidationError.
"""

from datetime import datetime, timezone
from types import MappingProxyType
from typing import Annotated, Any, Callable, Literal, Mapping, Union, get_args

from pydantic import AfterValidator, BaseModel, Field, PlainSerializer, model_validator

from budgetapp.domain import BudgetSource, Expense, IncomeSource, MonthlyData, YearMonth
from budgetapp.ids import IdGenerator, UuidIdGenerator

__all__ = [
    "BudgetExceeded",
    "BudgetSourceCreated",
    "BudgetSourceDeleted",
    "BudgetSourceUpdated",
    "DataExport",
    "DataImport",
    "Event",
    "EventFactory",
    "EventPayload",
    "ExpenseCreated",
    "ExpenseDeleted",
    "ExpenseUpdated",
    "GenericPayload",
    "IncomeSourceCreated",
    "IncomeSourceDeleted",
    "IncomeSourceUpdated",
    "MonthlyDataUpdated",
    "SecurityAlert",
    "SystemHealth",
    "UserCreated",
    "UserLogin",
    "UserLogout",
]

SCHEMA_VERSION = "1.0"


class _Payload(BaseModel):
    model_config = {"frozen": True}


class _UserPayload(_Payload):
    user_id: int = Field(gt=0)


# --- Expenses ---


class ExpenseCreated(_UserPayload):
    kind: Literal["expense.created"] = "expense.created"
    expense: Expense


class ExpenseUpdated(_UserPayload):
    kind: Literal["expense.updated"] = "expense.updated"
    expense: Expense
    previous: Expense | None = None


class ExpenseDeleted(_UserPayload):
    kind: Literal["expense.deleted"] = "expense.deleted"
    expense: Expense


# --- Income / budget sources ---


class IncomeSourceCreated(_UserPayload):
    kind: Literal["income_source.created"] = "income_source.created"
    income_source: IncomeSource


class IncomeSourceUpdated(_UserPayload):
    kind: Literal["income_source.updated"] = "income_source.updated"
    income_source: IncomeSource
    previous: IncomeSource | None = None


class IncomeSourceDeleted(_UserPayload):
    kind: Literal["income_source.deleted"] = "income_source.deleted"
    income_source: IncomeSource


class BudgetSourceCreated(_UserPayload):
    kind: Literal["budget_source.created"] = "budget_source.created"
    budget_source: BudgetSource


class BudgetSourceUpdated(_UserPayload):
    kind: Literal["budget_source.updated"] = "budget_source.updated"
    budget_source: BudgetSource
    previous: BudgetSource | None = None


class BudgetSourceDeleted(_UserPayload):
    kind: Literal["budget_source.deleted"] = "budget_source.deleted"
    budget_source: BudgetSource


# --- Users ---


class UserLogin(_UserPayload):
    kind: Literal["user.login"] = "user.login"
    username: str = ""
    session_id: str = ""
    ip_address: str = ""
    user_agent: str = ""
    success: bool = True


class UserLogout(_UserPayload):
    kind: Literal["user.logout"] = "user.logout"
    session_id: str = ""
    session_duration: float = Field(default=0.0, ge=0)


class UserCreated(_UserPayload):
    kind: Literal["user.created"] = "user.created"
    username: str = Field(min_length=1)


# --- Budget / reporting ---


class BudgetExceeded(_UserPayload):
    kind: Literal["budget.exceeded"] = "budget.exceeded"
    year_month: YearMonth
    category: str
    budget_cents: int = Field(gt=0)
    spent_cents: int = Field(ge=0)

    @property
    def excess_cents(self) -> int:
        return max(self.spent_cents - self.budget_cents, 0)

    @property
    def excess_percent(self) -> float:
        return self.excess_cents / self.budget_cents * 100


class MonthlyDataUpdated(_UserPayload):
    kind: Literal["monthly_data.updated"] = "monthly_data.updated"
    data: MonthlyData


class DataExport(_UserPayload):
    kind: Literal["data.export"] = "data.export"
    export_type: str
    format: str = "csv"
    record_count: int = Field(default=0, ge=0)
    file_size: int = Field(default=0, ge=0)
    status: Literal["processing", "completed", "failed"] = "completed"


class DataImport(_UserPayload):
    kind: Literal["data.import"] = "data.import"
    import_type: str
    record_count: int = Field(default=0, ge=0)
    status: Literal["processing", "completed", "failed"] = "completed"


# --- System / security (not necessarily user-scoped) ---


class SystemHealth(_Payload):
    kind: Literal["system.health"] = "system.health"
    status: Literal["healthy", "warning", "error", "critical"]
    message: str = ""
    metrics: dict[str, Any] = Field(default_factory=dict)


class SecurityAlert(_Payload):
    kind: Literal["security.alert"] = "security.alert"
    alert_type: str
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    description: str = ""
    user_id: int | None = Field(default=None, gt=0)
    ip_address: str = ""


class GenericPayload(_Payload):
    """Free-form payload for event types outside the closed set."""

    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: int | None = Field(default=None, gt=0)


EventPayload = Annotated[
    Union[
        ExpenseCreated,
        ExpenseUpdated,
        ExpenseDeleted,
        IncomeSourceCreated,
        IncomeSourceUpdated,
        IncomeSourceDeleted,
        BudgetSourceCreated,
        BudgetSourceUpdated,
        BudgetSourceDeleted,
        UserLogin,
        UserLogout,
        UserCreated,
        BudgetExceeded,
        MonthlyDataUpdated,
        DataExport,
        DataImport,
        SystemHealth,
        SecurityAlert,
        GenericPayload,
    ],
    Field(discriminator="kind"),
]

# Event types owned by a typed payload; a GenericPayload may not claim them
TYPED_EVENT_TYPES = frozenset(
    cls.model_fields["kind"].default
    for cls in get_args(get_args(EventPayload)[0])
    if cls is not GenericPayload
)


# Read-only view; serialized as a plain dict
Metadata = Annotated[
    Mapping[str, Any],
    AfterValidator(lambda value: MappingProxyType(dict(value))),
    PlainSerializer(dict, return_type=dict[str, Any]),
]


class Event(BaseModel):
    """Immutable event passed to handlers. ID and timestamp are fixed at construction."""

    model_config = {"frozen": True}

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    source: str
    timestamp: datetime
    version: str = SCHEMA_VERSION
    metadata: Metadata = Field(default_factory=dict, validate_default=True)
    payload: EventPayload

    @model_validator(mode="after")
    def _type_matches_payload(self) -> "Event":
        if self.payload.kind == "generic":
            if self.type in TYPED_EVENT_TYPES:
                raise ValueError(f"event type {self.type!r} requires its typed payload")
        elif self.type != self.payload.kind:
            raise ValueError(
                f"event type {self.type!r} does not match payload kind {self.payload.kind!r}"
            )
        return self

    @property
    def user_id(self) -> int | None:
        return getattr(self.payload, "user_id", None)

    def to_json(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "Event":
        return cls.model_validate_json(data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventFactory:
    """Builds events with injected ID generation and clock."""

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ids = id_generator or UuidIdGenerator()
        self._clock = clock or _utcnow

    def create(
        self,
        payload: _Payload,
        source: str,
        *,
        metadata: dict[str, Any] | None = None,
        event_type: str | None = None,
    ) -> Event:
        """Create an event. event_type is only needed for GenericPayload."""
        return Event(
            id=self._ids.new_id("evt"),
            type=event_type or payload.kind,
            source=source,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
            payload=payload,
        )
