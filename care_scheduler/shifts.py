import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from care_scheduler import lifecycle
from care_scheduler.assignments import add_assignment, require_shift, require_staff
from care_scheduler.errors import ConflictError, NotFoundError, ValidationError
from care_scheduler.locks import ShiftGuard
from care_scheduler.models import (
    AssignmentStatus,
    Shift,
    ShiftStatus,
    ShiftType,
    active_assignment,
    parse_model,
    recurrence_from_rule,
)
from care_scheduler.store import DateRange, EntityOperations, ShiftQuery

logger = logging.getLogger(__name__)


class ShiftCreate(BaseModel):
    company_id: str
    client_id: str
    care_service_id: str
    shift_type_id: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    is_recurring: bool = False
    recurrence_rule: str | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    break_minutes: int = Field(default=0, ge=0)
    location: str | None = None
    notes: str | None = None
    instructions: str | None = None
    price_book_id: str | None = None


class ShiftUpdate(BaseModel):
    # status and unknown fields are rejected rather than dropped
    model_config = ConfigDict(extra="forbid")

    client_id: str | None = None
    care_service_id: str | None = None
    shift_type_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_recurring: bool | None = None
    recurrence_rule: str | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    break_minutes: int | None = Field(default=None, ge=0)
    location: str | None = None
    notes: str | None = None
    instructions: str | None = None
    price_book_id: str | None = None


_RECURRENCE_FIELDS = ("is_recurring", "recurrence_rule", "day_of_month")


def _check_window(start: datetime | None, end: datetime | None) -> None:
    if start is None or end is None:
        raise ValidationError("start_time and end_time are required")
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError(
            "start_time and end_time must carry a timezone",
            start_time=start.isoformat(),
            end_time=end.isoformat(),
        )
    if end <= start:
        raise ValidationError(
            "end_time must be after start_time",
            start_time=start.isoformat(),
            end_time=end.isoformat(),
        )


async def _check_references(
    tx: EntityOperations,
    company_id: str,
    *,
    client_id: str | None = None,
    care_service_id: str | None = None,
    shift_type_id: str | None = None,
) -> ShiftType | None:
    """
    Raise NotFoundError for any given id that is missing or belongs to
    another company. Returns the shift type when one was checked.
    """
    if client_id is not None:
        client = await tx.get_client(client_id)
        if client is None or client.company_id != company_id:
            raise NotFoundError("Client not found", client_id=client_id)
    if care_service_id is not None:
        service = await tx.get_care_service(care_service_id)
        if service is None or service.company_id != company_id:
            raise NotFoundError("Care service not found", care_service_id=care_service_id)
    if shift_type_id is None:
        return None
    shift_type = await tx.get_shift_type(shift_type_id)
    if shift_type is None or shift_type.company_id != company_id:
        raise NotFoundError("Shift type not found", shift_type_id=shift_type_id)
    return shift_type


class ShiftService:
    def __init__(
        self, guard: ShiftGuard, *, now_fn: Callable[[], datetime] | None = None
    ) -> None:
        self._guard = guard
        self._now = now_fn or (lambda: datetime.now(UTC))

    async def create_shift(
        self, data: ShiftCreate, assigned_staff_id: str | None = None
    ) -> Shift:
        """
        Store a new shift in ``draft``. With ``assigned_staff_id`` the
        accepted assignment is created in the same transaction and the shift
        starts out ``assigned``.
        """
        async with self._guard.mutate(None, "create_shift") as tx:
            record = await self._resolve_references(tx, data)
            shift = await tx.create_shift(record)
            if assigned_staff_id:
                staff = await require_staff(tx, assigned_staff_id, shift.company_id)
                await add_assignment(
                    tx,
                    shift,
                    staff,
                    status=AssignmentStatus.ACCEPTED,
                    assigned_at=self._now(),
                )
                shift = await lifecycle.follow_assignments(tx, shift, 0, 1)

        logger.info(
            "shift %s created for client %s (%s)",
            shift.id,
            shift.client_id,
            shift.status.value,
        )
        return shift

    async def _resolve_references(
        self, tx: EntityOperations, data: ShiftCreate
    ) -> dict[str, Any]:
        shift_type = await _check_references(
            tx,
            data.company_id,
            client_id=data.client_id,
            care_service_id=data.care_service_id,
            shift_type_id=data.shift_type_id,
        )
        end_time = data.end_time
        if shift_type is not None and end_time is None:
            end_time = data.start_time + timedelta(hours=shift_type.duration_hours)
        if end_time is None:
            raise ValidationError("end_time is required when no shift type is given")
        _check_window(data.start_time, end_time)

        record = data.model_dump(exclude=set(_RECURRENCE_FIELDS))
        record.update(
            end_time=end_time,
            status=ShiftStatus.DRAFT,
            recurrence=recurrence_from_rule(
                data.is_recurring, data.recurrence_rule, data.day_of_month
            ),
        )
        return record

    async def update_shift(self, shift_id: str, patch: ShiftUpdate | dict[str, Any]) -> Shift:
        """
        Edit shift details. Status is not editable here; use ``change_status``.
        Active assignment times follow the shift's new times.
        """
        if isinstance(patch, dict):
            if "status" in patch:
                raise ValidationError(
                    "status cannot be patched; use the status change operation"
                )
            patch = parse_model(ShiftUpdate, patch)
        changes = patch.model_dump(exclude_unset=True)

        async with self._guard.mutate(shift_id, "update_shift") as tx:
            shift = await require_shift(tx, shift_id)
            await _check_references(
                tx,
                shift.company_id,
                client_id=changes.get("client_id"),
                care_service_id=changes.get("care_service_id"),
                shift_type_id=changes.get("shift_type_id"),
            )
            _check_window(
                changes.get("start_time", shift.start_time),
                changes.get("end_time", shift.end_time),
            )
            if any(field in changes for field in _RECURRENCE_FIELDS):
                is_recurring = changes.pop("is_recurring", shift.is_recurring)
                rule = changes.pop(
                    "recurrence_rule", shift.recurrence_rule if is_recurring else None
                )
                day = changes.pop("day_of_month", getattr(shift.recurrence, "day_of_month", None))
                changes["recurrence"] = recurrence_from_rule(is_recurring, rule, day)
            updated = await tx.update_shift(shift_id, changes)

            if "start_time" in changes or "end_time" in changes:
                current = active_assignment(await tx.list_assignments(shift_id))
                if current is not None:
                    await tx.update_assignment(
                        current.id,
                        {"start_time": updated.start_time, "end_time": updated.end_time},
                    )

        logger.info("shift %s updated: %s", shift_id, sorted(changes))
        return updated

    async def change_status(self, shift_id: str, status: ShiftStatus) -> Shift:
        async with self._guard.mutate(shift_id, "change_status") as tx:
            shift = await require_shift(tx, shift_id)
            current = active_assignment(await tx.list_assignments(shift_id))
            return await lifecycle.change_status(
                tx, shift, status, has_active_assignment=current is not None
            )

    async def cancel_shift(self, shift_id: str) -> Shift:
        """Cancel and soft-deactivate; assignment history is kept."""
        async with self._guard.mutate(shift_id, "cancel_shift") as tx:
            shift = await require_shift(tx, shift_id)
            current = active_assignment(await tx.list_assignments(shift_id))
            shift = await lifecycle.change_status(
                tx,
                shift,
                ShiftStatus.CANCELLED,
                has_active_assignment=current is not None,
            )
            shift = await tx.update_shift(shift_id, {"is_active": False})

        logger.info("shift %s cancelled and deactivated", shift_id)
        return shift

    async def delete_shift(self, shift_id: str) -> None:
        """Hard delete, allowed only for shifts that never had an assignment."""
        async with self._guard.mutate(shift_id, "delete_shift") as tx:
            shift = await tx.get_shift(shift_id)
            if shift is None:
                raise NotFoundError("Shift not found", shift_id=shift_id)
            history = await tx.list_assignments(shift_id)
            if history:
                raise ConflictError(
                    "shift has assignment history; cancel it instead of deleting",
                    shift_id=shift_id,
                    assignments=len(history),
                )
            await tx.delete_shift(shift_id)

        logger.info("shift %s deleted", shift_id)

    async def get_shift(self, shift_id: str) -> Shift:
        shift = await self._guard.read(self._guard.store.get_shift(shift_id), "get_shift")
        if shift is None:
            raise NotFoundError("Shift not found", shift_id=shift_id)
        return shift

    async def list_shifts(
        self, query: ShiftQuery | None = None, date_range: DateRange | None = None
    ) -> list[Shift]:
        if date_range is not None:
            date_from, date_to = date_range
            if date_from is not None and date_to is not None and date_to < date_from:
                raise ValidationError(
                    "date_to must not be before date_from",
                    date_from=date_from.isoformat(),
                    date_to=date_to.isoformat(),
                )
        shifts = await self._guard.read(
            self._guard.store.list_shifts(query, date_range), "list_shifts"
        )
        return sorted(shifts, key=lambda s: (s.start_time, s.id))

    async def shifts_for_staff(
        self, staff_id: str, date_from: date | None = None, date_to: date | None = None
    ) -> list[Shift]:
        return await self.list_shifts(ShiftQuery(staff_id=staff_id), (date_from, date_to))

    async def shifts_for_client(
        self, client_id: str, date_from: date | None = None, date_to: date | None = None
    ) -> list[Shift]:
        return await self.list_shifts(ShiftQuery(client_id=client_id), (date_from, date_to))

