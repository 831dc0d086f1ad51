"""Unit tests for the in-memory API-call counter and its DB flush behavior."""

import asyncio
import uuid
from unittest.mock import AsyncMock, Mock

import pytest

from qa_access.credits.usage import ApiCallCounter


class _ExecResult:
    def __init__(self, rowcount: int):
        self.rowcount = rowcount


class _Ctx:
    def __init__(self, *, exec_side_effect=None):
        self.execute = AsyncMock(side_effect=exec_side_effect or [])
        self.commit = AsyncMock()
        self.rollback = AsyncMock()
        self.add = Mock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _patch_db(monkeypatch, ctx):
    monkeypatch.setattr("qa_access.database.connection.get_db_context", lambda: ctx)


class TestRecord:

    def test_counts_per_instance(self):
        counter = ApiCallCounter()
        counter.record("a")
        counter.record("a")
        counter.record("b")
        assert counter.pending("a") == 2
        assert counter.pending("b") == 1
        assert counter.pending() == 3

    def test_no_instance_is_ignored(self):
        counter = ApiCallCounter()
        counter.record(None)
        counter.record("")
        assert counter.pending() == 0


class TestFlush:

    @pytest.mark.asyncio
    async def test_nothing_pending_skips_db(self, monkeypatch):
        def _fail():
            raise AssertionError("should not open a session")
        monkeypatch.setattr("qa_access.database.connection.get_db_context", _fail)

        assert await ApiCallCounter().flush() == {}

    @pytest.mark.asyncio
    async def test_persists_delta(self, monkeypatch):
        instance_id = str(uuid.uuid4())
        counter = ApiCallCounter()
        for _ in range(3):
            counter.record(instance_id)

        ctx = _Ctx(exec_side_effect=[_ExecResult(rowcount=1)])
        _patch_db(monkeypatch, ctx)

        flushed = await counter.flush()

        assert flushed == {instance_id: 3}
        assert counter.pending() == 0
        assert ctx.execute.await_count == 1
        assert ctx.commit.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_write_keeps_delta(self, monkeypatch):
        instance_id = str(uuid.uuid4())
        counter = ApiCallCounter()
        counter.record(instance_id)
        counter.record(instance_id)

        _patch_db(monkeypatch, _Ctx(exec_side_effect=RuntimeError("db down")))

        flushed = await counter.flush()

        assert flushed == {}
        assert counter.pending(instance_id) == 2

    @pytest.mark.asyncio
    async def test_failed_delta_merges_with_new_calls(self, monkeypatch):
        instance_id = str(uuid.uuid4())
        counter = ApiCallCounter()
        counter.record(instance_id)

        _patch_db(monkeypatch, _Ctx(exec_side_effect=RuntimeError("db down")))
        await counter.flush()
        counter.record(instance_id)

        ctx = _Ctx(exec_side_effect=[_ExecResult(rowcount=1)])
        _patch_db(monkeypatch, ctx)
        assert await counter.flush() == {instance_id: 2}

    @pytest.mark.asyncio
    async def test_unknown_instance_dropped(self, monkeypatch):
        instance_id = str(uuid.uuid4())
        counter = ApiCallCounter()
        counter.record(instance_id)

        _patch_db(monkeypatch, _Ctx(exec_side_effect=[_ExecResult(rowcount=0)]))

        assert await counter.flush() == {}
        assert counter.pending() == 0

    @pytest.mark.asyncio
    async def test_malformed_instance_id_dropped(self, monkeypatch):
        counter = ApiCallCounter()
        counter.record("not-a-uuid")

        ctx = _Ctx()
        _patch_db(monkeypatch, ctx)

        assert await counter.flush() == {}
        assert counter.pending() == 0
        assert ctx.execute.await_count == 0


class TestFlushLoop:

    @pytest.mark.asyncio
    async def test_stops_without_flushing_when_already_stopped(self):
        counter = ApiCallCounter()
        counter.flush = AsyncMock()
        stop = asyncio.Event()
        stop.set()

        await counter.run_flush_loop(stop, interval_seconds=0.01)

        counter.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flushes_each_interval(self):
        counter = ApiCallCounter()
        stop = asyncio.Event()
        calls = []

        async def _flush():
            calls.append(1)
            if len(calls) == 2:
                stop.set()
            return {}

        counter.flush = _flush
        await asyncio.wait_for(counter.run_flush_loop(stop, interval_seconds=0.01), timeout=5)

        assert len(calls) == 2
