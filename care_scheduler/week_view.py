"""
Weekly scheduling grid.

Weeks run Monday to Sunday. Grid construction is a pure function of the
week anchor, the row list, the shift pool and the filters; loading the pool
from the store is kept separate in ``CalendarService``.
"""

from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from care_scheduler.errors import ValidationError
from care_scheduler.locks import ShiftGuard
from care_scheduler.models import (
    CareService,
    Client,
    Shift,
    ShiftStaffAssignment,
    ShiftStatus,
    ShiftType,
    Staff,
    active_assignment,
    parse_model,
)
from care_scheduler.recurrence import expand, occurrence_times
from care_scheduler.store import EntityStore, ShiftQuery

ALL = "all"
PENDING_STATUSES = frozenset(
    {ShiftStatus.DRAFT, ShiftStatus.PUBLISHED, ShiftStatus.ASSIGNED}
)


def week_bounds(anchor: date | datetime) -> tuple[date, date]:
    day = anchor.date() if isinstance(anchor, datetime) else anchor
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def week_days(anchor: date | datetime) -> list[date]:
    monday, _ = week_bounds(anchor)
    return [monday + timedelta(days=i) for i in range(7)]


def shift_week(anchor: date | datetime, weeks: int) -> date:
    """Anchor moved by ``weeks`` (negative for earlier weeks)."""
    day = anchor.date() if isinstance(anchor, datetime) else anchor
    return day + timedelta(weeks=weeks)


class CalendarFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    search: str = ""
    status: str = ALL
    client_id: str = ALL
    shift_type_id: str = ALL

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        if value != ALL and value not in {s.value for s in ShiftStatus}:
            raise ValueError(f"unknown shift status {value!r}")
        return value


FilterInput = CalendarFilters | Mapping[str, str] | None


class ScheduledShift(BaseModel):
    """A shift together with the records the scheduling view needs around it."""

    shift: Shift
    client: Client | None = None
    care_service: CareService | None = None
    shift_type: ShiftType | None = None
    assignments: list[ShiftStaffAssignment] = Field(default_factory=list)

    @property
    def active_assignment(self) -> ShiftStaffAssignment | None:
        return active_assignment(self.assignments)

    def matches(self, filters: CalendarFilters) -> bool:
        shift = self.shift
        if filters.status != ALL and shift.status.value != filters.status:
            return False
        if filters.client_id != ALL and shift.client_id != filters.client_id:
            return False
        if filters.shift_type_id != ALL and shift.shift_type_id != filters.shift_type_id:
            return False
        if filters.search:
            needle = filters.search.lower()
            names = [
                self.client.name if self.client else "",
                self.care_service.name if self.care_service else "",
            ]
            if not any(needle in name.lower() for name in names):
                return False
        return True


class ShiftOccurrence(BaseModel):
    day: date
    start_time: datetime
    end_time: datetime
    staff_id: str | None
    scheduled: ScheduledShift

    @property
    def shift_id(self) -> str:
        return self.scheduled.shift.id


class WeekGrid(BaseModel):
    week_start: date
    days: list[date]
    row_ids: list[str]
    cells: dict[str, dict[date, list[ShiftOccurrence]]]

    def cell(self, row_id: str, day: date) -> list[ShiftOccurrence]:
        return self.cells.get(row_id, {}).get(day, [])

    def total(self) -> int:
        return sum(len(items) for row in self.cells.values() for items in row.values())


class WeekSummary(BaseModel):
    week_start: date
    total: int = 0
    today: int = 0
    tomorrow: int = 0
    completed: int = 0
    pending: int = 0
    cancelled: int = 0
    vacant: int = 0


def _visible(shift: Shift, filters: CalendarFilters, include_cancelled: bool) -> bool:
    # cancelled shifts are inactive but still counted and filterable
    if shift.is_active:
        return True
    if shift.status != ShiftStatus.CANCELLED:
        return False
    return include_cancelled or filters.status == ShiftStatus.CANCELLED.value


def _occurrences(
    anchor: date | datetime,
    pool: Iterable[ScheduledShift],
    filters: CalendarFilters | None,
    *,
    include_cancelled: bool = False,
) -> list[ShiftOccurrence]:
    filters = filters or CalendarFilters()
    monday, sunday = week_bounds(anchor)
    found: list[ShiftOccurrence] = []
    for scheduled in pool:
        if not _visible(scheduled.shift, filters, include_cancelled):
            continue
        if not scheduled.matches(filters):
            continue
        current = scheduled.active_assignment
        for day in expand(scheduled.shift, monday, sunday):
            start, end = occurrence_times(scheduled.shift, day)
            found.append(
                ShiftOccurrence(
                    day=day,
                    start_time=start,
                    end_time=end,
                    staff_id=current.staff_id if current else None,
                    scheduled=scheduled,
                )
            )
    return found


def _empty_grid(anchor: date | datetime, row_ids: Iterable[str]) -> WeekGrid:
    days = week_days(anchor)
    rows = list(dict.fromkeys(row_ids))
    return WeekGrid(
        week_start=days[0],
        days=days,
        row_ids=rows,
        cells={row: {day: [] for day in days} for row in rows},
    )


def _sort_cells(grid: WeekGrid) -> WeekGrid:
    for row in grid.cells.values():
        for items in row.values():
            items.sort(key=lambda o: (o.start_time, o.shift_id))
    return grid


def build_grid(
    week_anchor: date | datetime,
    staff_list: Iterable[Staff],
    shift_pool: Iterable[ScheduledShift],
    filters: CalendarFilters | None = None,
) -> WeekGrid:
    """
    Staff rows by day columns. A cell holds every occurrence whose active
    assignment belongs to that staff member, ordered by start time. Vacant
    shifts are left out; ask ``vacant_shifts`` for them.
    """
    grid = _empty_grid(week_anchor, (staff.id for staff in staff_list))
    for occurrence in _occurrences(week_anchor, shift_pool, filters):
        if occurrence.staff_id is None or occurrence.staff_id not in grid.cells:
            continue
        grid.cells[occurrence.staff_id][occurrence.day].append(occurrence)
    return _sort_cells(grid)


def vacant_shifts(
    week_anchor: date | datetime,
    shift_pool: Iterable[ScheduledShift],
    filters: CalendarFilters | None = None,
) -> dict[date, list[ShiftOccurrence]]:
    vacant: dict[date, list[ShiftOccurrence]] = {day: [] for day in week_days(week_anchor)}
    for occurrence in _occurrences(week_anchor, shift_pool, filters):
        if occurrence.staff_id is None:
            vacant[occurrence.day].append(occurrence)
    for items in vacant.values():
        items.sort(key=lambda o: (o.start_time, o.shift_id))
    return vacant


def build_client_grid(
    week_anchor: date | datetime,
    clients: Iterable[Client],
    shift_pool: Iterable[ScheduledShift],
    filters: CalendarFilters | None = None,
) -> WeekGrid:
    """Client rows; unlike the staff grid this includes vacant shifts."""
    grid = _empty_grid(week_anchor, (client.id for client in clients))
    for occurrence in _occurrences(week_anchor, shift_pool, filters):
        client_id = occurrence.scheduled.shift.client_id
        if client_id in grid.cells:
            grid.cells[client_id][occurrence.day].append(occurrence)
    return _sort_cells(grid)


def summarize_week(
    week_anchor: date | datetime,
    shift_pool: Iterable[ScheduledShift],
    today: date,
) -> WeekSummary:
    monday, _ = week_bounds(week_anchor)
    summary = WeekSummary(week_start=monday)
    tomorrow = today + timedelta(days=1)
    for occurrence in _occurrences(
        week_anchor, shift_pool, None, include_cancelled=True
    ):
        status = occurrence.scheduled.shift.status
        summary.total += 1
        if occurrence.day == today:
            summary.today += 1
        elif occurrence.day == tomorrow:
            summary.tomorrow += 1
        if status == ShiftStatus.COMPLETED:
            summary.completed += 1
        elif status == ShiftStatus.CANCELLED:
            summary.cancelled += 1
        elif status in PENDING_STATUSES:
            summary.pending += 1
        if occurrence.staff_id is None and status != ShiftStatus.CANCELLED:
            summary.vacant += 1
    return summary


def coerce_filters(filters: FilterInput) -> CalendarFilters | None:
    """Accept filters as a model or as raw query values ('all' disables one)."""
    if filters is None or isinstance(filters, CalendarFilters):
        return filters
    return parse_model(CalendarFilters, dict(filters))


class CalendarService:
    """Loads the shift pool for a company and week from the store."""

    def __init__(self, guard: ShiftGuard) -> None:
        self._guard = guard

    async def load_shift_pool(
        self, company_id: str, week_anchor: date | datetime
    ) -> list[ScheduledShift]:
        if not company_id:
            raise ValidationError("company_id is required")
        store: EntityStore = self._guard.store
        _, sunday = week_bounds(week_anchor)
        # recurring shifts that started in earlier weeks still occur this week
        shifts = await self._guard.read(
            store.list_shifts(
                ShiftQuery(company_id=company_id, include_inactive=True), (None, sunday)
            ),
            "load_shift_pool",
        )
        clients = await self._guard.read(store.list_clients(company_id), "list_clients")
        services = await self._guard.read(
            store.list_care_services(company_id), "list_care_services"
        )
        types = await self._guard.read(
            store.list_shift_types(company_id), "list_shift_types"
        )
        assignments = await self._guard.read(store.list_assignments(), "list_assignments")

        clients_by_id = {c.id: c for c in clients}
        services_by_id = {s.id: s for s in services}
        types_by_id = {t.id: t for t in types}
        by_shift: dict[str, list[ShiftStaffAssignment]] = {}
        for assignment in assignments:
            by_shift.setdefault(assignment.shift_id, []).append(assignment)

        return [
            ScheduledShift(
                shift=shift,
                client=clients_by_id.get(shift.client_id),
                care_service=services_by_id.get(shift.care_service_id),
                shift_type=types_by_id.get(shift.shift_type_id or ""),
                assignments=by_shift.get(shift.id, []),
            )
            for shift in shifts
        ]

    async def staff_rows(self, company_id: str) -> list[Staff]:
        staff = await self._guard.read(self._guard.store.list_staff(company_id), "list_staff")
        return [member for member in staff if member.is_active]

    async def week(
        self,
        company_id: str,
        week_anchor: date,
        filters: FilterInput = None,
    ) -> WeekGrid:
        filters = coerce_filters(filters)
        pool = await self.load_shift_pool(company_id, week_anchor)
        return build_grid(week_anchor, await self.staff_rows(company_id), pool, filters)

    async def vacant(
        self,
        company_id: str,
        week_anchor: date,
        filters: FilterInput = None,
    ) -> dict[date, list[ShiftOccurrence]]:
        filters = coerce_filters(filters)
        pool = await self.load_shift_pool(company_id, week_anchor)
        return vacant_shifts(week_anchor, pool, filters)

    async def client_week(
        self,
        company_id: str,
        week_anchor: date,
        filters: FilterInput = None,
    ) -> WeekGrid:
        filters = coerce_filters(filters)
        pool = await self.load_shift_pool(company_id, week_anchor)
        clients = await self._guard.read(
            self._guard.store.list_clients(company_id), "list_clients"
        )
        return build_client_grid(
            week_anchor, [c for c in clients if c.is_active], pool, filters
        )

    async def summary(self, company_id: str, week_anchor: date, today: date) -> WeekSummary:
        pool = await self.load_shift_pool(company_id, week_anchor)
        return summarize_week(week_anchor, pool, today)
