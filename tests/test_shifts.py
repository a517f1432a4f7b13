from datetime import date, timedelta

import pytest

from care_scheduler.errors import ConflictError, NotFoundError, ValidationError
from care_scheduler.models import AssignmentStatus, MonthlyRecurrence, ShiftStatus
from care_scheduler.shifts import ShiftCreate, ShiftUpdate
from care_scheduler.store import ShiftQuery
from conftest import COMPANY, at


def _create(**overrides) -> ShiftCreate:
    fields = {
        "company_id": COMPANY,
        "client_id": "client-1",
        "care_service_id": "svc-personal",
        "start_time": at(3, 9),
        "end_time": at(3, 13),
    }
    fields.update(overrides)
    return ShiftCreate(**fields)


@pytest.mark.asyncio
async def test_create_shift_starts_in_draft(store, shifts) -> None:
    shift = await shifts.create_shift(_create(notes="bring gloves"))
    assert shift.status == ShiftStatus.DRAFT
    assert shift.created_at is not None
    assert shift.notes == "bring gloves"
    assert (await store.get_shift(shift.id)) == shift


@pytest.mark.asyncio
async def test_create_shift_with_assigned_staff(store, shifts) -> None:
    shift = await shifts.create_shift(_create(), assigned_staff_id="staff-5")
    assert shift.status == ShiftStatus.ASSIGNED
    [assignment] = await store.list_assignments(shift.id)
    assert assignment.staff_id == "staff-5"
    assert assignment.assignment_status == AssignmentStatus.ACCEPTED
    assert assignment.start_time == shift.start_time


@pytest.mark.asyncio
async def test_create_shift_with_unknown_staff_stores_nothing(store, shifts) -> None:
    before = len(await store.list_shifts(ShiftQuery(include_inactive=True)))
    with pytest.raises(NotFoundError):
        await shifts.create_shift(_create(), assigned_staff_id="staff-404")
    assert len(await store.list_shifts(ShiftQuery(include_inactive=True))) == before
    assert await store.list_assignments() == []


@pytest.mark.asyncio
async def test_end_time_derived_from_shift_type(shifts) -> None:
    shift = await shifts.create_shift(_create(end_time=None, shift_type_id="type-night"))
    assert shift.end_time == at(3, 19)


@pytest.mark.asyncio
async def test_explicit_end_time_wins_over_shift_type(shifts) -> None:
    shift = await shifts.create_shift(_create(shift_type_id="type-night"))
    assert shift.end_time == at(3, 13)


@pytest.mark.asyncio
async def test_create_recurring_monthly_shift(shifts) -> None:
    shift = await shifts.create_shift(
        _create(is_recurring=True, recurrence_rule="monthly", day_of_month=10)
    )
    assert shift.recurrence == MonthlyRecurrence(day_of_month=10)
    assert shift.recurrence_rule == "monthly"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"end_time": at(3, 8)}, ValidationError),
        ({"end_time": at(3, 9)}, ValidationError),
        ({"end_time": None}, ValidationError),
        ({"is_recurring": True}, ValidationError),
        ({"recurrence_rule": "weekly"}, ValidationError),
        ({"client_id": "client-404"}, NotFoundError),
        ({"client_id": "client-x"}, NotFoundError),
        ({"care_service_id": "svc-404"}, NotFoundError),
        ({"shift_type_id": "type-404"}, NotFoundError),
    ],
)
async def test_create_shift_rejections_store_nothing(store, shifts, overrides, error) -> None:
    before = len(await store.list_shifts(ShiftQuery(include_inactive=True)))
    with pytest.raises(error):
        await shifts.create_shift(_create(**overrides))
    assert len(await store.list_shifts(ShiftQuery(include_inactive=True))) == before


@pytest.mark.asyncio
async def test_update_shift_times_move_the_active_assignment(store, shifts, manager) -> None:
    assignment = await manager.create_assignment("shift-1", "staff-5")
    updated = await shifts.update_shift(
        "shift-1", ShiftUpdate(start_time=at(0, 10), end_time=at(0, 18))
    )
    assert (updated.start_time, updated.end_time) == (at(0, 10), at(0, 18))
    moved = await store.get_assignment(assignment.id)
    assert (moved.start_time, moved.end_time) == (at(0, 10), at(0, 18))
    assert updated.status == ShiftStatus.ASSIGNED


@pytest.mark.asyncio
async def test_update_shift_rejects_inverted_window(store, shifts) -> None:
    with pytest.raises(ValidationError):
        await shifts.update_shift("shift-1", {"end_time": at(0, 8)})
    assert (await store.get_shift("shift-1")).end_time == at(0, 17)


@pytest.mark.asyncio
async def test_update_shift_rejects_status_in_patch(store, shifts) -> None:
    with pytest.raises(ValidationError):
        await shifts.update_shift("shift-1", {"status": "completed"})
    assert (await store.get_shift("shift-1")).status == ShiftStatus.DRAFT


@pytest.mark.asyncio
async def test_update_shift_recurrence(shifts) -> None:
    updated = await shifts.update_shift(
        "shift-1", {"is_recurring": True, "recurrence_rule": "weekly"}
    )
    assert updated.recurrence_rule == "weekly"
    cleared = await shifts.update_shift("shift-1", {"is_recurring": False})
    assert cleared.is_recurring is False


@pytest.mark.asyncio
async def test_update_unknown_shift(shifts) -> None:
    with pytest.raises(NotFoundError):
        await shifts.update_shift("missing", {"notes": "x"})


@pytest.mark.asyncio
async def test_change_status_paths(shifts, manager) -> None:
    published = await shifts.change_status("shift-1", ShiftStatus.PUBLISHED)
    assert published.status == ShiftStatus.PUBLISHED

    with pytest.raises(ConflictError):
        await shifts.change_status("shift-1", ShiftStatus.ASSIGNED)

    await manager.create_assignment("shift-1", "staff-5")
    started = await shifts.change_status("shift-1", ShiftStatus.IN_PROGRESS)
    assert started.status == ShiftStatus.IN_PROGRESS
    done = await shifts.change_status("shift-1", ShiftStatus.COMPLETED)
    assert done.status == ShiftStatus.COMPLETED

    with pytest.raises(ConflictError):
        await shifts.change_status("shift-1", ShiftStatus.DRAFT)


@pytest.mark.asyncio
async def test_cancel_shift_deactivates_and_keeps_history(store, shifts, manager) -> None:
    assignment = await manager.create_assignment("shift-1", "staff-5")
    cancelled = await shifts.cancel_shift("shift-1")
    assert cancelled.status == ShiftStatus.CANCELLED
    assert cancelled.is_active is False
    assert [a.id for a in await store.list_assignments("shift-1")] == [assignment.id]

    with pytest.raises(NotFoundError):
        await shifts.cancel_shift("shift-1")


@pytest.mark.asyncio
async def test_delete_shift_without_history(store, shifts) -> None:
    await shifts.delete_shift("shift-1")
    assert await store.get_shift("shift-1") is None
    with pytest.raises(NotFoundError):
        await shifts.delete_shift("shift-1")


@pytest.mark.asyncio
async def test_delete_shift_with_history_is_a_conflict(store, shifts, manager) -> None:
    assignment = await manager.create_assignment("shift-1", "staff-5")
    await manager.remove_assignment(assignment.id)
    with pytest.raises(ConflictError):
        await shifts.delete_shift("shift-1")
    assert await store.get_shift("shift-1") is not None


@pytest.mark.asyncio
async def test_get_shift(shifts) -> None:
    assert (await shifts.get_shift("shift-2")).client_id == "client-2"
    with pytest.raises(NotFoundError):
        await shifts.get_shift("missing")


@pytest.mark.asyncio
async def test_listings_by_staff_and_client(shifts, manager) -> None:
    await manager.create_assignment("shift-2", "staff-7")
    by_staff = await shifts.shifts_for_staff("staff-7")
    assert [s.id for s in by_staff] == ["shift-2"]
    assert await shifts.shifts_for_staff("staff-5") == []

    by_client = await shifts.shifts_for_client("client-1")
    assert [s.id for s in by_client] == ["shift-1"]


@pytest.mark.asyncio
async def test_list_shifts_is_ordered_and_date_bounded(shifts) -> None:
    listed = await shifts.list_shifts(ShiftQuery(company_id=COMPANY))
    assert [s.id for s in listed] == ["shift-1", "shift-2"]

    monday = at(0, 0).date()
    only_monday = await shifts.list_shifts(None, (monday, monday))
    assert [s.id for s in only_monday] == ["shift-1"]


@pytest.mark.asyncio
async def test_list_shifts_rejects_inverted_date_range(shifts) -> None:
    with pytest.raises(ValidationError):
        await shifts.list_shifts(None, (date(2025, 7, 10), date(2025, 7, 10) - timedelta(days=1)))


@pytest.mark.asyncio
async def test_naive_times_are_rejected_and_listings_keep_working(store, shifts) -> None:
    naive_start = at(1, 9).replace(tzinfo=None)
    with pytest.raises(ValidationError):
        await shifts.create_shift(
            _create(start_time=naive_start, end_time=naive_start + timedelta(hours=2))
        )
    with pytest.raises(ValidationError):
        await shifts.update_shift("shift-1", {"start_time": at(0, 8).replace(tzinfo=None)})

    listed = await shifts.list_shifts(ShiftQuery(company_id=COMPANY))
    assert [s.id for s in listed] == ["shift-1", "shift-2"]
    assert (await store.get_shift("shift-1")).start_time == at(0, 9)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "patch",
    [
        {"client_id": "client-x"},
        {"client_id": "client-404"},
        {"care_service_id": "svc-404"},
        {"shift_type_id": "type-404"},
    ],
)
async def test_update_shift_checks_changed_references(store, shifts, patch) -> None:
    with pytest.raises(NotFoundError):
        await shifts.update_shift("shift-1", ShiftUpdate(**patch))
    unchanged = await store.get_shift("shift-1")
    assert unchanged.client_id == "client-1"
    assert unchanged.shift_type_id is None


@pytest.mark.asyncio
async def test_update_shift_moves_to_another_client_of_the_same_company(shifts) -> None:
    updated = await shifts.update_shift(
        "shift-1", ShiftUpdate(client_id="client-2", shift_type_id="type-day")
    )
    assert (updated.client_id, updated.shift_type_id) == ("client-2", "type-day")


@pytest.mark.asyncio
async def test_update_shift_rejects_unknown_fields(shifts) -> None:
    with pytest.raises(ValidationError):
        await shifts.update_shift("shift-1", {"colour": "blue"})
