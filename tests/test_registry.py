"""Tests for the reader/writer lock and the model handle registry."""

import asyncio

import pytest

from app.encoders.errors import ConcurrencyTimeoutError, ModelNotLoadedError
from app.encoders.registry import ModelHandleRegistry, ReadWriteLock
from tests.fakes import make_unit


async def settle(rounds: int = 5):
    """Let pending callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.unit
class TestReadWriteLock:
    """Reader/writer lock semantics."""

    @pytest.mark.asyncio
    async def test_readers_share_access(self):
        lock = ReadWriteLock()
        await lock.acquire_read()
        await lock.acquire_read()
        assert lock.readers == 2
        lock.release_read()
        lock.release_read()
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        await lock.acquire_read()

        writer = asyncio.ensure_future(lock.acquire_write())
        await settle()
        assert not writer.done()
        assert lock.writers_waiting == 1

        lock.release_read()
        await writer
        assert lock.writer_active
        lock.release_write()
        assert not lock.writer_active

    @pytest.mark.asyncio
    async def test_new_readers_queue_behind_waiting_writer(self):
        lock = ReadWriteLock()
        order = []
        await lock.acquire_read()

        async def writer():
            await lock.acquire_write()
            order.append("writer")
            lock.release_write()

        async def late_reader():
            await lock.acquire_read()
            order.append("reader")
            lock.release_read()

        writer_task = asyncio.ensure_future(writer())
        await settle()
        reader_task = asyncio.ensure_future(late_reader())
        await settle()
        assert order == []

        lock.release_read()
        await asyncio.gather(writer_task, reader_task)
        assert order == ["writer", "reader"]

    @pytest.mark.asyncio
    async def test_parked_readers_run_before_next_writer(self):
        lock = ReadWriteLock()
        order = []
        await lock.acquire_write()

        async def reader(name):
            await lock.acquire_read()
            order.append(name)
            await asyncio.sleep(0)
            lock.release_read()

        async def writer():
            await lock.acquire_write()
            order.append("writer")
            lock.release_write()

        readers = [asyncio.ensure_future(reader(f"r{i}")) for i in range(3)]
        await settle()
        second_writer = asyncio.ensure_future(writer())
        await settle()

        lock.release_write()
        await asyncio.gather(*readers, second_writer)
        assert order[-1] == "writer"
        assert sorted(order[:3]) == ["r0", "r1", "r2"]

    @pytest.mark.asyncio
    async def test_cancelled_writer_unblocks_parked_readers(self):
        lock = ReadWriteLock()
        await lock.acquire_read()

        writer = asyncio.ensure_future(lock.acquire_write())
        await settle()
        reader = asyncio.ensure_future(lock.acquire_read())
        await settle()
        assert not reader.done()

        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer
        await asyncio.wait_for(reader, timeout=1.0)
        assert lock.readers == 2
        assert lock.writers_waiting == 0

    @pytest.mark.asyncio
    async def test_cancelled_reader_leaves_no_trace(self):
        lock = ReadWriteLock()
        await lock.acquire_write()

        reader = asyncio.ensure_future(lock.acquire_read())
        await settle()
        reader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await reader

        lock.release_write()
        assert lock.readers == 0
        await asyncio.wait_for(lock.acquire_write(), timeout=1.0)
        lock.release_write()

    def test_release_without_hold_raises(self):
        lock = ReadWriteLock()
        with pytest.raises(RuntimeError):
            lock.release_read()
        with pytest.raises(RuntimeError):
            lock.release_write()


@pytest.mark.unit
class TestModelHandleRegistry:
    """Swappable slot semantics."""

    @pytest.mark.asyncio
    async def test_read_returns_active_unit(self):
        unit = make_unit("fake/a")
        registry = ModelHandleRegistry(unit)
        async with registry.acquire_read() as active:
            assert active is unit
        assert registry.lock.readers == 0

    @pytest.mark.asyncio
    async def test_swap_returns_previous_and_bumps_generation(self):
        first, second = make_unit("fake/a"), make_unit("fake/b")
        registry = ModelHandleRegistry(first)

        previous = await registry.acquire_write_and_swap(second)

        assert previous is first
        assert registry.generation == 1
        async with registry.acquire_read() as active:
            assert active is second

    @pytest.mark.asyncio
    async def test_reader_keeps_its_unit_during_swap(self):
        first, second = make_unit("fake/a"), make_unit("fake/b")
        registry = ModelHandleRegistry(first)

        async with registry.acquire_read() as held:
            swap = asyncio.ensure_future(registry.acquire_write_and_swap(second))
            await settle()
            assert not swap.done()
            assert held is first
            assert registry.generation == 0

        assert await swap is first
        async with registry.acquire_read() as active:
            assert active is second

    @pytest.mark.asyncio
    async def test_read_timeout_raises_concurrency_timeout(self):
        registry = ModelHandleRegistry(make_unit(), read_timeout=0.05)
        await registry.lock.acquire_write()
        try:
            with pytest.raises(ConcurrencyTimeoutError):
                async with registry.acquire_read():
                    pass
        finally:
            registry.lock.release_write()

        async with registry.acquire_read(timeout=1.0):
            assert registry.lock.readers == 1

    @pytest.mark.asyncio
    async def test_closed_registry_has_no_model(self):
        unit = make_unit()
        registry = ModelHandleRegistry(unit)

        assert await registry.close() is unit
        with pytest.raises(ModelNotLoadedError):
            async with registry.acquire_read():
                pass
        with pytest.raises(ModelNotLoadedError):
            await registry.acquire_write_and_swap(make_unit("fake/b"))
        assert registry.lock.readers == 0
        assert not registry.lock.writer_active

    @pytest.mark.asyncio
    async def test_sustained_readers_do_not_starve_writer(self):
        registry = ModelHandleRegistry(make_unit("fake/a"))
        stop = asyncio.Event()

        async def reader():
            while not stop.is_set():
                async with registry.acquire_read():
                    await asyncio.sleep(0.001)

        readers = [asyncio.ensure_future(reader()) for _ in range(20)]
        await asyncio.sleep(0.01)
        try:
            await asyncio.wait_for(
                registry.acquire_write_and_swap(make_unit("fake/b")), timeout=2.0
            )
        finally:
            stop.set()
            await asyncio.gather(*readers)

        assert registry.generation == 1
        assert registry.lock.readers == 0
