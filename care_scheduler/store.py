"""
Entity store: the persistence collaborator the scheduling core talks to.

``EntityStore`` is the interface; ``InMemoryEntityStore`` is the in-process
implementation used by the API and the tests. Every write made by the core
goes through ``transaction()``, which stages writes and applies them in one
step on a clean exit, so an assignment change and the shift status change
it causes are never observed separately.
"""

import itertools
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any, Protocol

from pydantic import BaseModel

from care_scheduler.database import InMemoryKeyValueDatabase
from care_scheduler.errors import NotFoundError
from care_scheduler.models import (
    CareService,
    Client,
    Shift,
    ShiftStaffAssignment,
    ShiftStatus,
    ShiftType,
    Staff,
    parse_model,
)

Record = Shift | ShiftStaffAssignment | Staff | Client | ShiftType | CareService
DateRange = tuple[date | None, date | None]

_KINDS: dict[type[BaseModel], str] = {
    Shift: "shift",
    ShiftStaffAssignment: "assignment",
    Staff: "staff",
    Client: "client",
    ShiftType: "shift_type",
    CareService: "care_service",
}


class ShiftQuery(BaseModel):
    company_id: str | None = None
    client_id: str | None = None
    staff_id: str | None = None
    shift_type_id: str | None = None
    status: ShiftStatus | None = None
    search: str | None = None
    include_inactive: bool = False


class EntityOperations(Protocol):
    async def get_shift(self, shift_id: str) -> Shift | None: ...

    async def list_shifts(
        self, query: ShiftQuery | None = None, date_range: DateRange | None = None
    ) -> list[Shift]: ...

    async def create_shift(self, data: dict[str, Any]) -> Shift: ...

    async def update_shift(self, shift_id: str, patch: dict[str, Any]) -> Shift: ...

    async def delete_shift(self, shift_id: str) -> None: ...

    async def get_assignment(self, assignment_id: str) -> ShiftStaffAssignment | None: ...

    async def list_assignments(
        self, shift_id: str | None = None
    ) -> list[ShiftStaffAssignment]: ...

    async def create_assignment(self, data: dict[str, Any]) -> ShiftStaffAssignment: ...

    async def update_assignment(
        self, assignment_id: str, patch: dict[str, Any]
    ) -> ShiftStaffAssignment: ...

    async def delete_assignment(self, assignment_id: str) -> None: ...

    async def get_staff(self, staff_id: str) -> Staff | None: ...

    async def get_client(self, client_id: str) -> Client | None: ...

    async def get_shift_type(self, shift_type_id: str) -> ShiftType | None: ...

    async def get_care_service(self, care_service_id: str) -> CareService | None: ...


class EntityStore(EntityOperations, Protocol):
    async def list_staff(self, company_id: str) -> list[Staff]: ...

    async def list_clients(self, company_id: str) -> list[Client]: ...

    async def list_shift_types(self, company_id: str) -> list[ShiftType]: ...

    async def list_care_services(self, company_id: str) -> list[CareService]: ...

    def transaction(self) -> AbstractAsyncContextManager[EntityOperations]: ...


class _EntityAccess(ABC):
    """
    Record-level operations written against the abstract primitives below
    so the store and its transactions share them.
    """

    @abstractmethod
    def _get(self, key: str) -> Record | None:
        ...

    @abstractmethod
    def _scan(self, kind: str) -> list[Record]:
        ...

    @abstractmethod
    def _write(self, key: str, value: Record | None) -> None:
        ...

    @abstractmethod
    def _next_id(self, kind: str) -> str:
        ...

    @abstractmethod
    def _now(self) -> datetime:
        ...

    def _fetch(self, kind: str, record_id: str) -> Any:
        value = self._get(f"{kind}:{record_id}")
        return value.model_copy(deep=True) if value is not None else None

    def _list(self, kind: str, company_id: str | None = None) -> list[Any]:
        return [
            r.model_copy(deep=True)
            for r in self._scan(kind)
            if company_id is None or getattr(r, "company_id", None) == company_id
        ]

    async def get_shift(self, shift_id: str) -> Shift | None:
        return self._fetch("shift", shift_id)

    async def list_shifts(
        self, query: ShiftQuery | None = None, date_range: DateRange | None = None
    ) -> list[Shift]:
        query = query or ShiftQuery()
        date_from, date_to = date_range or (None, None)
        staffed: dict[str, str] = {}
        if query.staff_id is not None:
            staffed = {
                a.shift_id: a.staff_id
                for a in self._scan("assignment")
                if isinstance(a, ShiftStaffAssignment) and a.holds_shift
            }

        matches: list[Shift] = []
        for shift in self._list("shift", query.company_id):
            if not query.include_inactive and not shift.is_active:
                continue
            if query.client_id is not None and shift.client_id != query.client_id:
                continue
            if (
                query.shift_type_id is not None
                and shift.shift_type_id != query.shift_type_id
            ):
                continue
            if query.status is not None and shift.status != query.status:
                continue
            if query.staff_id is not None and staffed.get(shift.id) != query.staff_id:
                continue
            day = shift.start_time.date()
            if date_from is not None and day < date_from:
                continue
            if date_to is not None and day > date_to:
                continue
            if query.search and not self._matches_search(shift, query.search):
                continue
            matches.append(shift)
        return matches

    def _matches_search(self, shift: Shift, search: str) -> bool:
        needle = search.lower()
        client = self._get(f"client:{shift.client_id}")
        service = self._get(f"care_service:{shift.care_service_id}")
        haystacks = [
            client.name if isinstance(client, Client) else "",
            service.name if isinstance(service, CareService) else "",
        ]
        return any(needle in h.lower() for h in haystacks)

    async def create_shift(self, data: dict[str, Any]) -> Shift:
        now = self._now()
        shift = parse_model(
            Shift,
            {**data, "id": self._next_id("shift"), "created_at": now, "updated_at": now},
        )
        self._write(f"shift:{shift.id}", shift)
        return shift.model_copy(deep=True)

    async def update_shift(self, shift_id: str, patch: dict[str, Any]) -> Shift:
        current = self._require("shift", shift_id)
        shift = parse_model(
            Shift,
            {**current.model_dump(), **patch, "id": shift_id, "updated_at": self._now()},
        )
        self._write(f"shift:{shift_id}", shift)
        return shift.model_copy(deep=True)

    async def delete_shift(self, shift_id: str) -> None:
        self._require("shift", shift_id)
        self._write(f"shift:{shift_id}", None)

    async def get_assignment(self, assignment_id: str) -> ShiftStaffAssignment | None:
        return self._fetch("assignment", assignment_id)

    async def list_assignments(
        self, shift_id: str | None = None
    ) -> list[ShiftStaffAssignment]:
        return [
            a for a in self._list("assignment") if shift_id is None or a.shift_id == shift_id
        ]

    async def create_assignment(self, data: dict[str, Any]) -> ShiftStaffAssignment:
        assignment = parse_model(
            ShiftStaffAssignment, {**data, "id": self._next_id("assignment")}
        )
        self._write(f"assignment:{assignment.id}", assignment)
        return assignment.model_copy(deep=True)

    async def update_assignment(
        self, assignment_id: str, patch: dict[str, Any]
    ) -> ShiftStaffAssignment:
        current = self._require("assignment", assignment_id)
        assignment = parse_model(
            ShiftStaffAssignment, {**current.model_dump(), **patch, "id": assignment_id}
        )
        self._write(f"assignment:{assignment_id}", assignment)
        return assignment.model_copy(deep=True)

    async def delete_assignment(self, assignment_id: str) -> None:
        self._require("assignment", assignment_id)
        self._write(f"assignment:{assignment_id}", None)

    async def get_staff(self, staff_id: str) -> Staff | None:
        return self._fetch("staff", staff_id)

    async def get_client(self, client_id: str) -> Client | None:
        return self._fetch("client", client_id)

    async def get_shift_type(self, shift_type_id: str) -> ShiftType | None:
        return self._fetch("shift_type", shift_type_id)

    async def get_care_service(self, care_service_id: str) -> CareService | None:
        return self._fetch("care_service", care_service_id)

    def _require(self, kind: str, record_id: str) -> Record:
        value = self._get(f"{kind}:{record_id}")
        if value is None:
            raise NotFoundError(f"{kind.replace('_', ' ')} not found", id=record_id)
        return value


class StoreTransaction(_EntityAccess):
    """
    Staged unit of work. Reads see the staged writes; nothing reaches the
    underlying database until the owning ``transaction()`` block exits cleanly.
    """

    def __init__(self, store: "InMemoryEntityStore") -> None:
        self._store = store
        self.staged: dict[str, Record | None] = {}

    def _get(self, key: str) -> Record | None:
        if key in self.staged:
            return self.staged[key]
        return self._store._get(key)

    def _scan(self, kind: str) -> list[Record]:
        prefix = f"{kind}:"
        merged: dict[str, Record | None] = dict(self._store._db.items(prefix))
        merged.update({k: v for k, v in self.staged.items() if k.startswith(prefix)})
        return [v for v in merged.values() if v is not None]

    def _write(self, key: str, value: Record | None) -> None:
        self.staged[key] = value

    def _next_id(self, kind: str) -> str:
        return self._store._next_id(kind)

    def _now(self) -> datetime:
        return self._store._now()


class InMemoryEntityStore(_EntityAccess):
    def __init__(
        self,
        db: InMemoryKeyValueDatabase[str, Record] | None = None,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._db: InMemoryKeyValueDatabase[str, Record] = (
            db if db is not None else InMemoryKeyValueDatabase()
        )
        self._clock = now_fn or (lambda: datetime.now(UTC))
        self._counters: dict[str, itertools.count] = {}

    def _get(self, key: str) -> Record | None:
        return self._db.get(key)

    def _scan(self, kind: str) -> list[Record]:
        return [v for _, v in self._db.items(f"{kind}:")]

    def _write(self, key: str, value: Record | None) -> None:
        self._db.apply({key: value})

    def _next_id(self, kind: str) -> str:
        counter = self._counters.setdefault(kind, itertools.count(1))
        candidate = f"{kind}-{next(counter)}"
        while f"{kind}:{candidate}" in self._db:
            candidate = f"{kind}-{next(counter)}"
        return candidate

    def _now(self) -> datetime:
        return self._clock()

    def add(self, *records: Record) -> None:
        """Seed records directly (staff, clients, shift types, fixtures)."""
        for record in records:
            self._db.put(f"{_KINDS[type(record)]}:{record.id}", record.model_copy(deep=True))

    async def list_staff(self, company_id: str) -> list[Staff]:
        return self._list("staff", company_id)

    async def list_clients(self, company_id: str) -> list[Client]:
        return self._list("client", company_id)

    async def list_shift_types(self, company_id: str) -> list[ShiftType]:
        return self._list("shift_type", company_id)

    async def list_care_services(self, company_id: str) -> list[CareService]:
        return self._list("care_service", company_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        tx = StoreTransaction(self)
        yield tx
        self._db.apply(tx.staged)
