"""
Shift status state machine.

    draft -> published -> assigned -> in_progress -> completed
    (any non-terminal) -> cancelled

Two kinds of transition exist. Automatic ones follow the number of active
assignments on a shift (0 -> 1 staffs it, 1 -> 0 reverts it to draft).
Direct ones come from an explicit status change request. Both end in
``write_status``, which is the only code that writes ``Shift.status``.
"""

import logging

from care_scheduler.errors import ConflictError
from care_scheduler.models import Shift, ShiftStatus
from care_scheduler.store import EntityOperations

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({ShiftStatus.COMPLETED, ShiftStatus.CANCELLED})

# statuses that only make sense while someone is assigned
STAFFED_STATUSES = frozenset({ShiftStatus.ASSIGNED, ShiftStatus.IN_PROGRESS})

DIRECT_TRANSITIONS: dict[ShiftStatus, frozenset[ShiftStatus]] = {
    ShiftStatus.DRAFT: frozenset(
        {ShiftStatus.PUBLISHED, ShiftStatus.ASSIGNED, ShiftStatus.CANCELLED}
    ),
    ShiftStatus.PUBLISHED: frozenset(
        {ShiftStatus.DRAFT, ShiftStatus.ASSIGNED, ShiftStatus.CANCELLED}
    ),
    ShiftStatus.ASSIGNED: frozenset({ShiftStatus.IN_PROGRESS, ShiftStatus.CANCELLED}),
    ShiftStatus.IN_PROGRESS: frozenset(
        {ShiftStatus.COMPLETED, ShiftStatus.CANCELLED, ShiftStatus.ASSIGNED}
    ),
    ShiftStatus.COMPLETED: frozenset(),
    ShiftStatus.CANCELLED: frozenset(),
}


def is_terminal(status: ShiftStatus) -> bool:
    return status in TERMINAL_STATUSES


def check_transition(
    current: ShiftStatus, target: ShiftStatus, *, has_active_assignment: bool
) -> None:
    """Raise ConflictError unless a direct change from ``current`` to ``target`` is legal."""
    if is_terminal(current):
        raise ConflictError(
            f"shift is {current.value} and can no longer change status",
            current=current.value,
            target=target.value,
        )
    if target not in DIRECT_TRANSITIONS[current]:
        raise ConflictError(
            f"illegal status transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )
    if target == ShiftStatus.ASSIGNED and not has_active_assignment:
        raise ConflictError(
            "a shift can only be marked assigned while it has an active assignment",
            current=current.value,
            target=target.value,
        )


def status_after_assignment_change(
    current: ShiftStatus, active_before: int, active_after: int
) -> ShiftStatus:
    if active_before == 0 and active_after == 1:
        if current in (ShiftStatus.DRAFT, ShiftStatus.PUBLISHED):
            return ShiftStatus.ASSIGNED
    elif active_before == 1 and active_after == 0:
        if current == ShiftStatus.ASSIGNED:
            return ShiftStatus.DRAFT
    return current


async def write_status(
    tx: EntityOperations, shift: Shift, target: ShiftStatus, *, reason: str
) -> Shift:
    if shift.status == target:
        return shift
    updated = await tx.update_shift(shift.id, {"status": target})
    logger.info(
        "shift %s status %s -> %s (%s)",
        shift.id,
        shift.status.value,
        target.value,
        reason,
    )
    return updated


async def follow_assignments(
    tx: EntityOperations, shift: Shift, active_before: int, active_after: int
) -> Shift:
    """Apply the automatic transition caused by an assignment change, if any."""
    target = status_after_assignment_change(shift.status, active_before, active_after)
    return await write_status(
        tx, shift, target, reason=f"active assignments {active_before} -> {active_after}"
    )


async def change_status(
    tx: EntityOperations,
    shift: Shift,
    target: ShiftStatus,
    *,
    has_active_assignment: bool,
) -> Shift:
    if shift.status == target:
        return shift
    check_transition(shift.status, target, has_active_assignment=has_active_assignment)
    return await write_status(tx, shift, target, reason="direct status change")
