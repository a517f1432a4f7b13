from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Generic, TypeVar

from care_scheduler.errors import SchedulingError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: SchedulingError

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


async def capture(operation: Awaitable[T]) -> "Ok[T] | Err":
    """
    Await a core operation and tag its outcome.

    Only scheduling errors become ``Err``; anything else is a bug and
    propagates unchanged.
    """
    try:
        value = await operation
    except SchedulingError as exc:
        return Err(exc)
    return Ok(value)
