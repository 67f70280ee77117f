"""Tests for scaling and readiness policies.

Covers:
- ReplicaScalingPolicy: ceil(target / services) per service, concurrent creates,
  least-loaded-first removal
- LoadThresholdScalingPolicy: grow on load, shrink idle workers down to one
- fan-out failures: siblings still complete, tick raises TickError
- readiness policies and the policy factories
"""

import asyncio
import random

import pytest

from fleet.controller import FleetController
from fleet.errors import RuntimeInterfaceError, TickError
from fleet.policies import (
    LoadThresholdScalingPolicy,
    ReplicaReadinessPolicy,
    ReplicaScalingPolicy,
    SingleWorkerReadinessPolicy,
    create_readiness_policy,
    create_scaling_policy,
    run_fanout,
)
from fleet.worker import WorkerState
from tests.fakes.fake_runtime import FakeRuntime, make_template


def _controller(runtime, target, services=("alpine",), **kwargs) -> FleetController:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("ready_interval", 0.01)
    kwargs.setdefault("worker_ready_timeout", 0.2)
    return FleetController(
        runtime,
        "test-fleet",
        {name: make_template(name) for name in services},
        target,
        **kwargs,
    )


async def _seed(runtime: FakeRuntime, service: str, count: int):
    template = make_template(service)
    ids = []
    for _ in range(count):
        worker = await runtime.create_worker(
            template, f"seed-{len(runtime.containers)}", template.worker_labels("test-fleet")
        )
        ids.append(worker.worker_id)
    return ids


def _running_by_service(runtime: FakeRuntime):
    counts = {}
    for c in runtime.running_workers("test-fleet"):
        service = c.labels["fleet.service"]
        counts[service] = counts.get(service, 0) + 1
    return counts


# ---------------------------------------------------------------------------
# run_fanout
# ---------------------------------------------------------------------------

class TestRunFanout:
    @pytest.mark.asyncio
    async def test_empty_is_noop(self):
        await run_fanout([])

    @pytest.mark.asyncio
    async def test_failure_waits_for_siblings(self):
        finished = []

        async def fail():
            raise RuntimeInterfaceError("boom")

        async def slow():
            await asyncio.sleep(0.02)
            finished.append(True)

        with pytest.raises(TickError) as exc_info:
            await run_fanout([fail, slow, fail])

        assert finished == [True]
        assert len(exc_info.value.errors) == 2
        assert all(isinstance(e, RuntimeInterfaceError) for e in exc_info.value.errors)


# ---------------------------------------------------------------------------
# ReplicaScalingPolicy
# ---------------------------------------------------------------------------

class TestReplicaScaling:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("target,services,per_service", [
        (0, 1, 0),
        (2, 1, 2),
        (3, 2, 2),
        (5, 3, 2),
        (1, 3, 1),
    ])
    async def test_converges_to_ceil(self, target, services, per_service):
        runtime = FakeRuntime()
        names = tuple(f"svc{i}" for i in range(services))
        controller = _controller(runtime, target, services=names)

        await controller.reconcile_once()

        assert controller.per_service == per_service
        assert len(runtime.running_workers("test-fleet")) == per_service * services
        if per_service:
            assert _running_by_service(runtime) == {name: per_service for name in names}

    @pytest.mark.asyncio
    async def test_creates_fan_out_concurrently(self):
        runtime = FakeRuntime(create_delay=0.02)
        controller = _controller(runtime, 4, services=("a", "b"))

        await controller.reconcile_once()

        assert runtime.max_in_flight_creates == 4

    @pytest.mark.asyncio
    async def test_stable_fleet_is_untouched(self):
        runtime = FakeRuntime()
        controller = _controller(runtime, 2)
        await controller.reconcile_once()
        calls = list(runtime.create_calls)

        await controller.reconcile_once()

        assert runtime.create_calls == calls
        assert runtime.removed_ids == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(5))
    async def test_scale_down_keeps_loaded_workers(self, seed):
        runtime = FakeRuntime()
        busy, idle_a, idle_b, busier = await _seed(runtime, "alpine", 4)
        runtime.add_execution(busy)
        runtime.add_execution(busier)
        runtime.add_execution(busier)
        controller = _controller(runtime, 2, rng=random.Random(seed))

        await controller.reconcile_once()

        assert sorted(runtime.removed_ids) == sorted([idle_a, idle_b])
        assert set(runtime.containers) == {busy, busier}

    @pytest.mark.asyncio
    async def test_scale_down_least_loaded_first(self):
        runtime = FakeRuntime()
        low, high = await _seed(runtime, "alpine", 2)
        runtime.add_execution(low)
        runtime.add_execution(high)
        runtime.add_execution(high)
        controller = _controller(runtime, 1)

        await controller.reconcile_once()

        assert runtime.removed_ids == [low]

    @pytest.mark.asyncio
    async def test_exited_worker_is_replaced_and_removed(self):
        runtime = FakeRuntime()
        (stale,) = await _seed(runtime, "alpine", 1)
        runtime.containers[stale].state = WorkerState.REMOVED
        controller = _controller(runtime, 1)

        await controller.reconcile_once()

        assert len(runtime.running_workers("test-fleet")) == 1
        assert stale not in runtime.containers
        assert runtime.removed_ids == [stale]

    @pytest.mark.asyncio
    async def test_unhealthy_worker_is_replaced_but_kept(self):
        runtime = FakeRuntime()
        (sick,) = await _seed(runtime, "alpine", 1)
        runtime.containers[sick].state = WorkerState.UNHEALTHY
        controller = _controller(runtime, 1)

        await controller.reconcile_once()

        assert len(runtime.running_workers("test-fleet")) == 1
        assert sick in runtime.containers

    @pytest.mark.asyncio
    async def test_crash_loop_does_not_accumulate_containers(self):
        runtime = FakeRuntime()
        controller = _controller(runtime, 2)

        for _ in range(5):
            await controller.reconcile_once()
            for container in runtime.running_workers("test-fleet"):
                container.state = WorkerState.REMOVED

        await controller.reconcile_once()

        assert len(runtime.workers_of("test-fleet")) == 2
        assert len(runtime.running_workers("test-fleet")) == 2

    @pytest.mark.asyncio
    async def test_failed_remove_does_not_block_siblings(self):
        runtime = FakeRuntime()
        keep, victim = await _seed(runtime, "b", 2)
        runtime.add_execution(keep)
        runtime.fail_remove_ids[victim] = RuntimeInterfaceError("daemon unavailable")
        controller = _controller(runtime, 2, services=("a", "b"))

        with pytest.raises(TickError) as exc_info:
            await controller.reconcile_once()

        assert len(exc_info.value.errors) == 1
        # The create for service "a" still went through.
        assert _running_by_service(runtime) == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_failed_creates_are_collected(self):
        runtime = FakeRuntime()
        runtime.fail_create = RuntimeInterfaceError("no such image")
        controller = _controller(runtime, 3)

        with pytest.raises(TickError) as exc_info:
            await controller.reconcile_once()

        assert len(exc_info.value.errors) == 3


# ---------------------------------------------------------------------------
# LoadThresholdScalingPolicy
# ---------------------------------------------------------------------------

class TestLoadThresholdScaling:
    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            LoadThresholdScalingPolicy(threshold=0)

    @pytest.mark.asyncio
    async def test_grows_with_load_and_shrinks_when_idle(self):
        runtime = FakeRuntime()
        controller = _controller(runtime, 3, scaling_policy=LoadThresholdScalingPolicy(threshold=1))

        # Nothing running: start one.
        await controller.reconcile_once()
        (first,) = [c.worker_id for c in runtime.running_workers("test-fleet")]

        # Idle single worker is kept.
        await controller.reconcile_once()
        assert list(runtime.containers) == [first]

        # Busy: grow one worker per tick up to the per-service target.
        runtime.add_execution(first)
        await controller.reconcile_once()
        assert len(runtime.running_workers("test-fleet")) == 2
        await controller.reconcile_once()
        assert len(runtime.running_workers("test-fleet")) == 3
        assert runtime.removed_ids == []

        # At target: the idle workers go, the busy one stays.
        await controller.reconcile_once()
        assert list(runtime.containers) == [first]

        # Load gone: still keep one.
        runtime.finish_all()
        await controller.reconcile_once()
        assert list(runtime.containers) == [first]

    @pytest.mark.asyncio
    async def test_threshold_not_reached(self):
        runtime = FakeRuntime()
        (worker_id,) = await _seed(runtime, "alpine", 1)
        runtime.add_execution(worker_id)
        controller = _controller(runtime, 3, scaling_policy=LoadThresholdScalingPolicy(threshold=2))

        await controller.reconcile_once()

        assert list(runtime.containers) == [worker_id]

    @pytest.mark.asyncio
    async def test_exited_worker_is_removed(self):
        runtime = FakeRuntime()
        live, dead = await _seed(runtime, "alpine", 2)
        runtime.containers[dead].state = WorkerState.REMOVED
        controller = _controller(runtime, 2, scaling_policy=LoadThresholdScalingPolicy())

        await controller.reconcile_once()

        assert list(runtime.containers) == [live]
        assert runtime.removed_ids == [dead]

    @pytest.mark.asyncio
    async def test_removes_surplus_above_target(self):
        runtime = FakeRuntime()
        busy, idle = await _seed(runtime, "alpine", 2)
        runtime.add_execution(busy)
        controller = _controller(runtime, 1, scaling_policy=LoadThresholdScalingPolicy())

        await controller.reconcile_once()

        assert runtime.removed_ids == [idle]

    @pytest.mark.asyncio
    async def test_zero_target_creates_nothing(self):
        runtime = FakeRuntime()
        controller = _controller(runtime, 0, scaling_policy=LoadThresholdScalingPolicy())

        await controller.reconcile_once()

        assert runtime.containers == {}


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class TestReadiness:
    @pytest.mark.asyncio
    async def test_replica_readiness(self):
        runtime = FakeRuntime()
        controller = _controller(runtime, 3, services=("a", "b"))
        policy = ReplicaReadinessPolicy()

        assert not await policy.is_ready(controller)
        await controller.reconcile_once()
        assert await policy.is_ready(controller)

        controller.scale(1)
        assert not await policy.is_ready(controller)

    @pytest.mark.asyncio
    async def test_single_worker_readiness(self):
        runtime = FakeRuntime()
        await _seed(runtime, "a", 1)
        controller = _controller(runtime, 4, services=("a", "b"))
        policy = SingleWorkerReadinessPolicy()

        assert not await policy.is_ready(controller)
        await _seed(runtime, "b", 1)
        assert await policy.is_ready(controller)


class TestFactories:
    def test_scaling_policy_names(self):
        assert isinstance(create_scaling_policy("replicas"), ReplicaScalingPolicy)
        policy = create_scaling_policy("LOAD", threshold=3)
        assert isinstance(policy, LoadThresholdScalingPolicy)
        assert policy.threshold == 3

    def test_readiness_policy_names(self):
        assert isinstance(create_readiness_policy("replicas"), ReplicaReadinessPolicy)
        assert isinstance(create_readiness_policy("single"), SingleWorkerReadinessPolicy)

    def test_unknown_names(self):
        with pytest.raises(ValueError):
            create_scaling_policy("magic")
        with pytest.raises(ValueError):
            create_readiness_policy("magic")
