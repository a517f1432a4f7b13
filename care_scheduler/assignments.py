import logging
from collections.abc import Callable
from datetime import UTC, datetime

from care_scheduler import lifecycle
from care_scheduler.errors import ConflictError, NotFoundError, ValidationError
from care_scheduler.locks import ShiftGuard
from care_scheduler.models import (
    AssignmentStatus,
    Shift,
    ShiftStaffAssignment,
    Staff,
    active_assignment,
)
from care_scheduler.store import EntityOperations

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


async def require_shift(tx: EntityOperations, shift_id: str) -> Shift:
    shift = await tx.get_shift(shift_id)
    if shift is None or not shift.is_active:
        raise NotFoundError("Shift not found", shift_id=shift_id)
    return shift


async def require_staff(tx: EntityOperations, staff_id: str, company_id: str) -> Staff:
    staff = await tx.get_staff(staff_id)
    if staff is None or staff.company_id != company_id:
        raise NotFoundError("Staff member not found", staff_id=staff_id)
    if not staff.is_active:
        raise NotFoundError("Staff member is inactive", staff_id=staff_id)
    return staff


async def add_assignment(
    tx: EntityOperations,
    shift: Shift,
    staff: Staff,
    *,
    status: AssignmentStatus,
    assigned_at: datetime,
    notes: str | None = None,
    assigned_by: str | None = None,
) -> ShiftStaffAssignment:
    """
    Insert a new active assignment for ``shift``. The caller has already
    checked that the shift holds no other active assignment.
    """
    return await tx.create_assignment(
        {
            "company_id": shift.company_id,
            "shift_id": shift.id,
            "staff_id": staff.id,
            "assignment_status": status,
            "assigned_at": assigned_at,
            "assigned_by": assigned_by,
            "notes": notes,
            "start_time": shift.start_time,
            "end_time": shift.end_time,
        }
    )


class AssignmentManager:
    """
    Creates, replaces and removes staff-to-shift assignments.

    A shift holds at most one active (offered or accepted) assignment. Every
    operation runs under the shift's lock inside one store transaction, and
    the shift status consequence is written in that same transaction.
    """

    def __init__(self, guard: ShiftGuard, *, now_fn: NowFn | None = None) -> None:
        self._guard = guard
        self._now = now_fn or (lambda: datetime.now(UTC))

    async def create_assignment(
        self,
        shift_id: str,
        staff_id: str,
        notes: str | None = None,
        *,
        offer: bool = False,
        assigned_by: str | None = None,
    ) -> ShiftStaffAssignment:
        if not shift_id or not staff_id:
            raise ValidationError("shift_id and staff_id are required")

        async with self._guard.mutate(shift_id, "create_assignment") as tx:
            shift = await require_shift(tx, shift_id)
            staff = await require_staff(tx, staff_id, shift.company_id)
            current = active_assignment(await tx.list_assignments(shift_id))
            if current is not None:
                raise ConflictError(
                    "shift already has an active assignment; replace it instead",
                    shift_id=shift_id,
                    assignment_id=current.id,
                    staff_id=current.staff_id,
                )
            status = AssignmentStatus.OFFERED if offer else AssignmentStatus.ACCEPTED
            assignment = await add_assignment(
                tx,
                shift,
                staff,
                status=status,
                assigned_at=self._now(),
                notes=notes,
                assigned_by=assigned_by,
            )
            await lifecycle.follow_assignments(tx, shift, 0, 1)

        logger.info(
            "assignment %s created: staff %s on shift %s (%s)",
            assignment.id,
            staff_id,
            shift_id,
            assignment.assignment_status.value,
        )
        return assignment

    async def replace_staff(
        self, assignment_id: str, new_staff_id: str, notes: str | None = None
    ) -> ShiftStaffAssignment:
        """
        Mark the assignment ``replaced`` and give the shift to ``new_staff_id``.
        Both writes commit together or not at all.
        """
        if not new_staff_id:
            raise ValidationError("new_staff_id is required")
        shift_id = await self._shift_id_for(assignment_id)

        async with self._guard.mutate(shift_id, "replace_staff") as tx:
            existing = await self._require_assignment(tx, assignment_id)
            if not existing.holds_shift:
                raise ConflictError(
                    f"cannot replace a {existing.assignment_status.value} assignment",
                    assignment_id=assignment_id,
                    assignment_status=existing.assignment_status.value,
                )
            if existing.staff_id == new_staff_id:
                raise ConflictError(
                    "staff member is already assigned to this shift",
                    assignment_id=assignment_id,
                    staff_id=new_staff_id,
                )
            shift = await require_shift(tx, existing.shift_id)
            staff = await require_staff(tx, new_staff_id, shift.company_id)

            await tx.update_assignment(
                existing.id, {"assignment_status": AssignmentStatus.REPLACED}
            )
            replacement = await add_assignment(
                tx,
                shift,
                staff,
                status=AssignmentStatus.ACCEPTED,
                assigned_at=self._now(),
                notes=notes,
            )
            await lifecycle.follow_assignments(tx, shift, 1, 1)

        logger.info(
            "assignment %s replaced by %s on shift %s (staff %s -> %s)",
            existing.id,
            replacement.id,
            shift_id,
            existing.staff_id,
            new_staff_id,
        )
        return replacement

    async def remove_assignment(self, assignment_id: str) -> ShiftStaffAssignment:
        """Deactivate the assignment; the record stays for history."""
        shift_id = await self._shift_id_for(assignment_id)

        async with self._guard.mutate(shift_id, "remove_assignment") as tx:
            assignment = await self._require_assignment(tx, assignment_id)
            if not assignment.is_active:
                raise NotFoundError(
                    "Assignment already removed", assignment_id=assignment_id
                )
            shift = await require_shift(tx, assignment.shift_id)
            held = assignment.holds_shift
            removed = await tx.update_assignment(assignment_id, {"is_active": False})
            if held:
                await lifecycle.follow_assignments(tx, shift, 1, 0)

        logger.info("assignment %s removed from shift %s", assignment_id, shift_id)
        return removed

    async def accept_assignment(self, assignment_id: str) -> ShiftStaffAssignment:
        shift_id = await self._shift_id_for(assignment_id)

        async with self._guard.mutate(shift_id, "accept_assignment") as tx:
            assignment = await self._require_assignment(tx, assignment_id)
            await require_shift(tx, assignment.shift_id)
            if not (
                assignment.is_active
                and assignment.assignment_status == AssignmentStatus.OFFERED
            ):
                raise ConflictError(
                    "only offered assignments can be accepted",
                    assignment_id=assignment_id,
                    assignment_status=assignment.assignment_status.value,
                )
            accepted = await tx.update_assignment(
                assignment_id, {"assignment_status": AssignmentStatus.ACCEPTED}
            )

        logger.info("assignment %s accepted on shift %s", assignment_id, shift_id)
        return accepted

    async def decline_assignment(
        self, assignment_id: str, reason: str | None = None
    ) -> ShiftStaffAssignment:
        shift_id = await self._shift_id_for(assignment_id)

        async with self._guard.mutate(shift_id, "decline_assignment") as tx:
            assignment = await self._require_assignment(tx, assignment_id)
            shift = await require_shift(tx, assignment.shift_id)
            if not assignment.holds_shift:
                raise ConflictError(
                    f"cannot decline a {assignment.assignment_status.value} assignment",
                    assignment_id=assignment_id,
                    assignment_status=assignment.assignment_status.value,
                )
            patch: dict = {"assignment_status": AssignmentStatus.DECLINED}
            if reason:
                patch["notes"] = (
                    f"{assignment.notes}\nDeclined: {reason}"
                    if assignment.notes
                    else f"Declined: {reason}"
                )
            declined = await tx.update_assignment(assignment_id, patch)
            await lifecycle.follow_assignments(tx, shift, 1, 0)

        logger.info("assignment %s declined on shift %s", assignment_id, shift_id)
        return declined

    async def list_assignments(self, shift_id: str) -> list[ShiftStaffAssignment]:
        """Full assignment history for a shift, oldest first."""
        shift = await self._guard.read(
            self._guard.store.get_shift(shift_id), "list_assignments"
        )
        if shift is None:
            raise NotFoundError("Shift not found", shift_id=shift_id)
        assignments = await self._guard.read(
            self._guard.store.list_assignments(shift_id), "list_assignments"
        )
        return sorted(assignments, key=lambda a: (a.assigned_at, a.id))

    async def _shift_id_for(self, assignment_id: str) -> str:
        if not assignment_id:
            raise ValidationError("assignment_id is required")
        assignment = await self._guard.read(
            self._guard.store.get_assignment(assignment_id), "get_assignment"
        )
        if assignment is None:
            raise NotFoundError("Assignment not found", assignment_id=assignment_id)
        return assignment.shift_id

    @staticmethod
    async def _require_assignment(
        tx: EntityOperations, assignment_id: str
    ) -> ShiftStaffAssignment:
        assignment = await tx.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment not found", assignment_id=assignment_id)
        return assignment
