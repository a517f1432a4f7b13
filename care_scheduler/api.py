import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from care_scheduler.assignments import AssignmentManager
from care_scheduler.config import Settings, get_settings
from care_scheduler.locks import ShiftGuard, ShiftLocks
from care_scheduler.models import ShiftStatus
from care_scheduler.results import Err, Ok, capture
from care_scheduler.shifts import ShiftCreate, ShiftService, ShiftUpdate
from care_scheduler.store import EntityStore, InMemoryEntityStore, ShiftQuery
from care_scheduler.week_view import ALL, CalendarService

router = APIRouter()

NowFn = Callable[[], datetime]


class ShiftCreateRequest(ShiftCreate):
    assigned_staff_id: str | None = None


class StatusChangeRequest(BaseModel):
    status: ShiftStatus


class AssignmentCreateRequest(BaseModel):
    shift_id: str
    staff_id: str
    notes: str | None = None
    offer: bool = False


class ReplaceStaffRequest(BaseModel):
    new_staff_id: str
    notes: str | None = None


class DeclineRequest(BaseModel):
    reason: str | None = None


def _respond(result: Ok[Any] | Err, status_code: int = 200) -> Any:
    if isinstance(result, Err):
        error = result.error
        return JSONResponse(
            status_code=error.http_status,
            content=jsonable_encoder({"success": False, **error.to_dict()}),
        )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, "data": result.value}),
    )


def _shifts(request: Request) -> ShiftService:
    return request.app.state.shifts


def _assignments(request: Request) -> AssignmentManager:
    return request.app.state.assignments


def _calendar(request: Request) -> CalendarService:
    return request.app.state.calendar


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/shifts")
async def create_shift(body: ShiftCreateRequest, request: Request) -> Any:
    data = ShiftCreate.model_validate(body.model_dump(exclude={"assigned_staff_id"}))
    result = await capture(
        _shifts(request).create_shift(data, assigned_staff_id=body.assigned_staff_id)
    )
    return _respond(result, status_code=201)


@router.get("/shifts")
async def list_shifts(
    request: Request,
    company_id: str | None = None,
    client_id: str | None = None,
    staff_id: str | None = None,
    shift_type_id: str | None = None,
    status: ShiftStatus | None = None,
    search: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> Any:
    query = ShiftQuery(
        company_id=company_id,
        client_id=client_id,
        staff_id=staff_id,
        shift_type_id=shift_type_id,
        status=status,
        search=search,
    )
    return _respond(
        await capture(_shifts(request).list_shifts(query, (date_from, date_to)))
    )


@router.get("/shifts/{shift_id}")
async def get_shift(shift_id: str, request: Request) -> Any:
    return _respond(await capture(_shifts(request).get_shift(shift_id)))


@router.put("/shifts/{shift_id}")
async def update_shift(shift_id: str, body: ShiftUpdate, request: Request) -> Any:
    return _respond(await capture(_shifts(request).update_shift(shift_id, body)))


@router.delete("/shifts/{shift_id}")
async def delete_shift(shift_id: str, request: Request) -> Any:
    return _respond(await capture(_shifts(request).delete_shift(shift_id)))


@router.post("/shifts/{shift_id}/status")
async def change_shift_status(
    shift_id: str, body: StatusChangeRequest, request: Request
) -> Any:
    return _respond(
        await capture(_shifts(request).change_status(shift_id, body.status))
    )


@router.post("/shifts/{shift_id}/cancel")
async def cancel_shift(shift_id: str, request: Request) -> Any:
    return _respond(await capture(_shifts(request).cancel_shift(shift_id)))


@router.post("/shift-staff-assignments")
async def create_assignment(body: AssignmentCreateRequest, request: Request) -> Any:
    result = await capture(
        _assignments(request).create_assignment(
            body.shift_id, body.staff_id, body.notes, offer=body.offer
        )
    )
    return _respond(result, status_code=201)


@router.get("/shift-staff-assignments/shift/{shift_id}")
async def list_shift_assignments(shift_id: str, request: Request) -> Any:
    return _respond(await capture(_assignments(request).list_assignments(shift_id)))


@router.put("/shift-staff-assignments/{assignment_id}/replace")
async def replace_staff(
    assignment_id: str, body: ReplaceStaffRequest, request: Request
) -> Any:
    return _respond(
        await capture(
            _assignments(request).replace_staff(
                assignment_id, body.new_staff_id, body.notes
            )
        )
    )


@router.put("/shift-staff-assignments/{assignment_id}/accept")
async def accept_assignment(assignment_id: str, request: Request) -> Any:
    return _respond(
        await capture(_assignments(request).accept_assignment(assignment_id))
    )


@router.put("/shift-staff-assignments/{assignment_id}/decline")
async def decline_assignment(
    assignment_id: str, request: Request, body: DeclineRequest | None = None
) -> Any:
    reason = body.reason if body else None
    return _respond(
        await capture(_assignments(request).decline_assignment(assignment_id, reason))
    )


@router.delete("/shift-staff-assignments/{assignment_id}")
async def remove_assignment(assignment_id: str, request: Request) -> Any:
    return _respond(
        await capture(_assignments(request).remove_assignment(assignment_id))
    )


def calendar_filters(
    search: str = "",
    status: str = ALL,
    client_id: str = ALL,
    shift_type_id: str = ALL,
) -> dict[str, str]:
    return {
        "search": search,
        "status": status,
        "client_id": client_id,
        "shift_type_id": shift_type_id,
    }


@router.get("/calendar/week")
async def calendar_week(
    request: Request,
    company_id: str,
    anchor: date | None = None,
    filters: dict[str, str] = Depends(calendar_filters),
) -> Any:
    week_anchor = anchor or request.app.state.now_fn().date()
    return _respond(
        await capture(_calendar(request).week(company_id, week_anchor, filters))
    )


@router.get("/calendar/vacant")
async def calendar_vacant(
    request: Request,
    company_id: str,
    anchor: date | None = None,
    filters: dict[str, str] = Depends(calendar_filters),
) -> Any:
    week_anchor = anchor or request.app.state.now_fn().date()
    return _respond(
        await capture(_calendar(request).vacant(company_id, week_anchor, filters))
    )


@router.get("/calendar/clients")
async def calendar_clients(
    request: Request,
    company_id: str,
    anchor: date | None = None,
    filters: dict[str, str] = Depends(calendar_filters),
) -> Any:
    week_anchor = anchor or request.app.state.now_fn().date()
    return _respond(
        await capture(
            _calendar(request).client_week(company_id, week_anchor, filters)
        )
    )


@router.get("/dashboard/summary")
async def dashboard_summary(
    request: Request, company_id: str, anchor: date | None = None
) -> Any:
    today = request.app.state.now_fn().date()
    result = await capture(
        _calendar(request).summary(company_id, anchor or today, today)
    )
    return _respond(result)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(
            {
                "success": False,
                "error": "validation",
                "message": errors[0]["msg"] if errors else "invalid request",
                "details": {"errors": errors},
            }
        ),
    )


def create_app(
    store: EntityStore | None = None,
    settings: Settings | None = None,
    *,
    now_fn: NowFn | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("care_scheduler").setLevel(settings.log_level.upper())

    app = FastAPI(title=settings.app_name)
    app.state.now_fn = now_fn or (lambda: datetime.now(UTC))
    app.state.store = store if store is not None else InMemoryEntityStore()

    guard = ShiftGuard(
        app.state.store,
        ShiftLocks(settings.busy_shift_policy),
        timeout=settings.store_timeout_seconds,
    )
    app.state.guard = guard

    # read now_fn through app.state so tests can swap the clock after startup
    def clock() -> datetime:
        return app.state.now_fn()

    app.state.shifts = ShiftService(guard, now_fn=clock)
    app.state.assignments = AssignmentManager(guard, now_fn=clock)
    app.state.calendar = CalendarService(guard)

    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.include_router(router)
    return app
