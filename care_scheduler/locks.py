import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from typing import Literal, TypeVar

from care_scheduler.config import get_settings
from care_scheduler.errors import ConflictError, SchedulingError, TransientError
from care_scheduler.store import EntityOperations, EntityStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
BusyPolicy = Literal["reject", "wait"]


class ShiftLocks:
    """
    One asyncio lock per shift id. With the ``reject`` policy a second
    mutation for a shift that is already being changed fails fast with a
    ConflictError; with ``wait`` it queues behind the first.
    """

    def __init__(self, policy: BusyPolicy = "reject") -> None:
        self.policy = policy
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def busy(self, shift_id: str) -> bool:
        lock = self._locks.get(shift_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, shift_id: str) -> AsyncIterator[None]:
        if self.policy == "reject" and self.busy(shift_id):
            raise ConflictError(
                "another change to this shift is still in progress",
                shift_id=shift_id,
            )
        lock = self._locks.setdefault(shift_id, asyncio.Lock())
        self._holders[shift_id] = self._holders.get(shift_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[shift_id] -= 1
            if self._holders[shift_id] == 0:
                del self._holders[shift_id]
                del self._locks[shift_id]


class ShiftGuard:
    """
    Wraps every mutation in the shift lock, a bounded store interval and a
    single store transaction. A timeout or any error discards the staged
    writes, so a failed or cancelled mutation leaves nothing behind.
    """

    def __init__(
        self,
        store: EntityStore,
        locks: ShiftLocks | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.locks = locks or ShiftLocks(settings.busy_shift_policy)
        self.timeout = timeout if timeout is not None else settings.store_timeout_seconds

    @asynccontextmanager
    async def mutate(
        self, shift_id: str | None, operation: str
    ) -> AsyncIterator[EntityOperations]:
        try:
            async with asyncio.timeout(self.timeout):
                if shift_id is None:
                    async with self.store.transaction() as tx:
                        yield tx
                else:
                    async with self.locks.hold(shift_id):
                        async with self.store.transaction() as tx:
                            yield tx
        except TimeoutError as exc:
            logger.warning("%s on shift %s timed out, rolled back", operation, shift_id)
            raise TransientError(
                f"{operation} timed out waiting for the store",
                shift_id=shift_id,
                timeout_seconds=self.timeout,
            ) from exc
        except SchedulingError as exc:
            logger.warning(
                "%s on shift %s rejected (%s): %s",
                operation,
                shift_id,
                exc.kind,
                exc.message,
            )
            raise

    async def read(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            async with asyncio.timeout(self.timeout):
                return await awaitable
        except TimeoutError as exc:
            raise TransientError(
                f"{operation} timed out waiting for the store",
                timeout_seconds=self.timeout,
            ) from exc
