"""Model handle registry: the single swappable slot holding the active model.

Readers (encode requests) share access; a model switch takes exclusive access
only for the pointer swap itself. The loading of the replacement happens
before exclusive access is requested, so the critical section stays tiny.

Fairness policy (phase-fair, writer-preferring)
- While a writer is waiting, newly arriving readers queue behind it.
- Readers admitted before the writer run to completion; the writer goes next.
- When the writer releases, every reader queued behind it is admitted before
  any further writer. Neither side can starve the other.
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, List, Optional

import structlog

from libs.common.metrics import MetricsCollector
from .errors import ConcurrencyTimeoutError, ModelNotLoadedError
from .models import ModelUnit

logger = structlog.get_logger("embedding_service.registry")


class ReadWriteLock:
    """Phase-fair asyncio reader/writer lock.

    Release operations are synchronous so they are safe to call from
    ``finally`` blocks of cancelled tasks.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._read_waiters: List[asyncio.Future] = []
        self._write_waiters: Deque[asyncio.Future] = deque()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writer_active(self) -> bool:
        return self._writer

    @property
    def writers_waiting(self) -> int:
        return sum(1 for fut in self._write_waiters if not fut.done())

    async def acquire_read(self) -> None:
        if not self._writer and not self._write_waiters:
            self._readers += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._read_waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # granted just before the cancellation landed
                self.release_read()
            elif fut in self._read_waiters:
                self._read_waiters.remove(fut)
            raise

    def release_read(self) -> None:
        if self._readers <= 0:
            raise RuntimeError("release_read called without a held read lock")
        self._readers -= 1
        if self._readers == 0:
            self._grant_writer()

    async def acquire_write(self) -> None:
        if not self._writer and self._readers == 0 and not self._write_waiters:
            self._writer = True
            return

        fut = asyncio.get_running_loop().create_future()
        self._write_waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self.release_write()
            else:
                if fut in self._write_waiters:
                    self._write_waiters.remove(fut)
                # readers parked behind this writer may proceed now
                if not self._writer and not self._write_waiters:
                    self._grant_readers()
            raise

    def release_write(self) -> None:
        if not self._writer:
            raise RuntimeError("release_write called without a held write lock")
        self._writer = False
        if self._read_waiters:
            self._grant_readers()
        else:
            self._grant_writer()

    def _grant_readers(self) -> None:
        waiters, self._read_waiters = self._read_waiters, []
        for fut in waiters:
            if not fut.done():
                self._readers += 1
                fut.set_result(True)

    def _grant_writer(self) -> None:
        if self._writer or self._readers:
            return
        while self._write_waiters:
            fut = self._write_waiters.popleft()
            if not fut.done():
                self._writer = True
                fut.set_result(True)
                return
        # no writer left to serve, release any parked readers
        if self._read_waiters:
            self._grant_readers()


class ModelHandleRegistry:
    """Holds the active ``ModelUnit`` behind a ``ReadWriteLock``.

    Parameters
    - initial_unit: fully loaded unit to serve from startup
    - read_timeout: default bound (seconds) on waiting for a read guard;
      ``None`` waits indefinitely
    - metrics: optional collector receiving read-guard wait times
    """

    def __init__(
        self,
        initial_unit: ModelUnit,
        read_timeout: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._active: Optional[ModelUnit] = initial_unit
        self._lock = ReadWriteLock()
        self._read_timeout = read_timeout
        self._metrics = metrics
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of successful swaps since startup."""
        return self._generation

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @asynccontextmanager
    async def acquire_read(self, timeout: Optional[float] = None) -> AsyncIterator[ModelUnit]:
        """Shared access to the active unit for the duration of the block."""
        timeout = self._read_timeout if timeout is None else timeout
        started = time.perf_counter()
        try:
            if timeout is None:
                await self._lock.acquire_read()
            else:
                await asyncio.wait_for(self._lock.acquire_read(), timeout)
        except asyncio.TimeoutError:
            raise ConcurrencyTimeoutError(
                f"Read access to the active model not granted within {timeout}s"
            ) from None

        if self._metrics is not None:
            self._metrics.record_read_wait(time.perf_counter() - started)

        try:
            unit = self._active
            if unit is None:
                raise ModelNotLoadedError("No model is loaded")
            yield unit
        finally:
            self._lock.release_read()

    async def acquire_write_and_swap(self, new_unit: ModelUnit) -> ModelUnit:
        """Replace the active unit once all current readers have left.

        Returns the previous unit; the caller releases it after this call so
        teardown never runs under the lock.
        """
        await self._lock.acquire_write()
        try:
            previous = self._active
            if previous is None:
                raise ModelNotLoadedError("Registry is closed")
            self._active = new_unit
            self._generation += 1
        finally:
            self._lock.release_write()

        logger.info(
            "Active model swapped",
            previous_model=previous.metadata.model_id,
            model_id=new_unit.metadata.model_id,
            generation=self._generation,
        )
        return previous

    async def close(self) -> Optional[ModelUnit]:
        """Empty the slot at shutdown and hand back the last active unit."""
        await self._lock.acquire_write()
        try:
            unit, self._active = self._active, None
        finally:
            self._lock.release_write()
        return unit
