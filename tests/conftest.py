import itertools
from datetime import UTC, datetime, timedelta

import pytest

from care_scheduler.assignments import AssignmentManager
from care_scheduler.locks import ShiftGuard, ShiftLocks
from care_scheduler.models import (
    CareService,
    Client,
    Shift,
    ShiftStatus,
    ShiftType,
    Staff,
    WeeklyRecurrence,
)
from care_scheduler.shifts import ShiftService
from care_scheduler.store import InMemoryEntityStore

COMPANY = "co-1"

# Monday 7 July 2025
MONDAY = datetime(2025, 7, 7, tzinfo=UTC)


def at(day_offset: int, hour: int, minute: int = 0) -> datetime:
    return MONDAY + timedelta(days=day_offset, hours=hour, minutes=minute)


class SteppingClock:
    """now_fn that moves one second forward on every call."""

    def __init__(self, start: datetime) -> None:
        self._ticks = itertools.count()
        self._start = start

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=next(self._ticks))


def make_shift(shift_id: str, start: datetime, end: datetime, **overrides) -> Shift:
    fields = {
        "id": shift_id,
        "company_id": COMPANY,
        "client_id": "client-1",
        "care_service_id": "svc-personal",
        "start_time": start,
        "end_time": end,
    }
    fields.update(overrides)
    return Shift(**fields)


@pytest.fixture
def store() -> InMemoryEntityStore:
    store = InMemoryEntityStore(now_fn=SteppingClock(MONDAY - timedelta(days=7)))
    store.add(
        Client(id="client-1", company_id=COMPANY, first_name="Alice", last_name="Ongwele"),
        Client(id="client-2", company_id=COMPANY, first_name="Barry", last_name="Kozumikov"),
        Client(id="client-x", company_id="co-2", first_name="Other", last_name="Company"),
        CareService(id="svc-personal", company_id=COMPANY, name="Personal Care"),
        CareService(id="svc-domestic", company_id=COMPANY, name="Domestic Assistance"),
        ShiftType(id="type-day", company_id=COMPANY, name="Day", duration_hours=8, hourly_rate=32.5),
        ShiftType(id="type-night", company_id=COMPANY, name="Night", duration_hours=10),
        Staff(id="staff-5", company_id=COMPANY, first_name="Wei", last_name="Yan"),
        Staff(id="staff-7", company_id=COMPANY, first_name="Eve", last_name="Example"),
        Staff(id="staff-8", company_id=COMPANY, first_name="Sam", last_name="Okafor"),
        Staff(
            id="staff-9",
            company_id=COMPANY,
            first_name="Ina",
            last_name="Active",
            is_active=False,
        ),
        Staff(id="staff-x", company_id="co-2", first_name="Out", last_name="Sider"),
        # Monday 09:00-17:00, draft
        make_shift("shift-1", at(0, 9), at(0, 17)),
        # Tuesday 08:00-12:00, weekly
        make_shift(
            "shift-2",
            at(1, 8),
            at(1, 12),
            client_id="client-2",
            care_service_id="svc-domestic",
            shift_type_id="type-day",
            recurrence=WeeklyRecurrence(),
        ),
        make_shift(
            "shift-gone",
            at(2, 9),
            at(2, 12),
            status=ShiftStatus.CANCELLED,
            is_active=False,
        ),
    )
    return store


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(MONDAY - timedelta(days=1))


@pytest.fixture
def guard(store: InMemoryEntityStore) -> ShiftGuard:
    return ShiftGuard(store, ShiftLocks("reject"), timeout=1.0)


@pytest.fixture
def manager(guard: ShiftGuard, clock: SteppingClock) -> AssignmentManager:
    return AssignmentManager(guard, now_fn=clock)


@pytest.fixture
def shifts(guard: ShiftGuard, clock: SteppingClock) -> ShiftService:
    return ShiftService(guard, now_fn=clock)
