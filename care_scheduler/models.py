"""
Scheduling records held by the entity store.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from care_scheduler.errors import ValidationError


class ShiftStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AssignmentStatus(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    REPLACED = "replaced"


ACTIVE_ASSIGNMENT_STATUSES = frozenset(
    {AssignmentStatus.OFFERED, AssignmentStatus.ACCEPTED}
)


class NoRecurrence(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["none"] = "none"


class WeeklyRecurrence(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["weekly"] = "weekly"


class MonthlyRecurrence(BaseModel):
    """Repeats on one day of the month; ``None`` means the start date's day."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["monthly"] = "monthly"
    day_of_month: int | None = Field(default=None, ge=1, le=31)


Recurrence = Annotated[
    NoRecurrence | WeeklyRecurrence | MonthlyRecurrence,
    Field(discriminator="kind"),
]


def recurrence_from_rule(
    is_recurring: bool, rule: str | None, day_of_month: int | None = None
) -> NoRecurrence | WeeklyRecurrence | MonthlyRecurrence:
    """
    Parse the ``is_recurring`` / ``recurrence_rule`` pair used at the
    transport boundary into a single tagged value.
    """
    if not is_recurring:
        if rule:
            raise ValidationError(
                "recurrence_rule is only allowed on recurring shifts",
                recurrence_rule=rule,
            )
        return NoRecurrence()
    if rule == "weekly":
        return WeeklyRecurrence()
    if rule == "monthly":
        return MonthlyRecurrence(day_of_month=day_of_month)
    raise ValidationError(
        "recurring shifts need a recurrence_rule of 'weekly' or 'monthly'",
        recurrence_rule=rule,
    )


class Client(BaseModel):
    id: str
    company_id: str
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    is_active: bool = True

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Staff(BaseModel):
    id: str
    company_id: str
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    hourly_rate: float = Field(default=0.0, ge=0)
    qualifications: list[str] = Field(default_factory=list)
    is_active: bool = True

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class CareService(BaseModel):
    id: str
    company_id: str
    name: str
    description: str | None = None


class ShiftType(BaseModel):
    id: str
    company_id: str
    name: str
    description: str | None = None
    duration_hours: float = Field(gt=0)
    hourly_rate: float = Field(default=0.0, ge=0)
    is_active: bool = True


class Shift(BaseModel):
    id: str
    company_id: str
    client_id: str
    care_service_id: str
    shift_type_id: str | None = None
    start_time: datetime
    end_time: datetime
    status: ShiftStatus = ShiftStatus.DRAFT
    recurrence: Recurrence = Field(default_factory=NoRecurrence)
    break_minutes: int = Field(default=0, ge=0)
    location: str | None = None
    notes: str | None = None
    instructions: str | None = None
    price_book_id: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _check_times(self) -> "Shift":
        # shifts are compared and sorted across the whole company
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValueError("start_time and end_time must carry a timezone")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_recurring(self) -> bool:
        return not isinstance(self.recurrence, NoRecurrence)

    @property
    def recurrence_rule(self) -> str | None:
        return None if isinstance(self.recurrence, NoRecurrence) else self.recurrence.kind

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time


class ShiftStaffAssignment(BaseModel):
    id: str
    company_id: str
    shift_id: str
    staff_id: str
    assignment_status: AssignmentStatus = AssignmentStatus.ACCEPTED
    assigned_at: datetime
    assigned_by: str | None = None
    notes: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_active: bool = True

    @property
    def holds_shift(self) -> bool:
        """True while this assignment occupies the shift's single active slot."""
        return self.is_active and self.assignment_status in ACTIVE_ASSIGNMENT_STATUSES


def active_assignment(
    assignments: list[ShiftStaffAssignment],
) -> ShiftStaffAssignment | None:
    return next((a for a in assignments if a.holds_shift), None)


M = TypeVar("M", bound=BaseModel)


def parse_model(model: type[M], data: dict[str, Any]) -> M:
    """Build ``model`` from ``data``, reporting bad input as a scheduling ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()
        ]
        message = errors[0]["msg"] if errors else f"invalid {model.__name__}"
        raise ValidationError(message, model=model.__name__, errors=errors) from exc
