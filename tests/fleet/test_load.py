"""Tests for load snapshots and minimum-load selection."""

import random
from collections import Counter

import pytest

from fleet.load import exec_is_running, get_exec_load, select_minimum_load, total_load
from tests.fakes.fake_runtime import FakeRuntime, make_template


async def _workers(runtime: FakeRuntime, count: int):
    template = make_template()
    ids = []
    for i in range(count):
        worker = await runtime.create_worker(template, f"w{i}", template.worker_labels("f"))
        ids.append(worker.worker_id)
    return ids


# ---------------------------------------------------------------------------
# get_exec_load
# ---------------------------------------------------------------------------

class TestGetExecLoad:
    @pytest.mark.asyncio
    async def test_counts_running_executions_only(self):
        runtime = FakeRuntime()
        a, b = await _workers(runtime, 2)
        runtime.add_execution(a)
        runtime.add_execution(a)
        runtime.add_execution(b, running=False)

        load = await get_exec_load(runtime, [a, b])
        assert load == {a: 2, b: 0}
        assert total_load(load) == 2

    @pytest.mark.asyncio
    async def test_vanished_worker_counts_zero(self):
        runtime = FakeRuntime()
        a, b = await _workers(runtime, 2)
        runtime.add_execution(b)
        runtime.kill(b)

        assert await get_exec_load(runtime, [a, b]) == {a: 0, b: 0}

    @pytest.mark.asyncio
    async def test_vanished_execution_ignored(self):
        runtime = FakeRuntime()
        (a,) = await _workers(runtime, 1)
        exec_id = runtime.add_execution(a)
        runtime.add_execution(a)
        del runtime.executions[exec_id]

        assert await get_exec_load(runtime, [a]) == {a: 1}

    @pytest.mark.asyncio
    async def test_async_predicate(self):
        runtime = FakeRuntime()
        (a,) = await _workers(runtime, 1)
        runtime.add_execution(a, running=False)
        runtime.add_execution(a)

        async def finished(info):
            return not exec_is_running(info)

        assert await get_exec_load(runtime, [a], finished) == {a: 1}

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await get_exec_load(FakeRuntime(), []) == {}


# ---------------------------------------------------------------------------
# select_minimum_load
# ---------------------------------------------------------------------------

class TestSelectMinimumLoad:
    def test_empty_returns_none(self):
        assert select_minimum_load({}) is None

    def test_picks_lowest(self):
        assert select_minimum_load({"a": 3, "b": 1, "c": 2}) == "b"

    def test_ties_are_uniform(self):
        rng = random.Random(1234)
        load = {"a": 0, "b": 0, "c": 0, "d": 5}
        counts = Counter(select_minimum_load(load, rng) for _ in range(3000))
        assert "d" not in counts
        for worker_id in ("a", "b", "c"):
            assert 800 < counts[worker_id] < 1200
