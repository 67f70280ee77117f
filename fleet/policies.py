"""
Scaling and readiness policies for FleetController.

A scaling policy runs once per reconciliation tick and issues the creates and
removes that move the fleet toward its target. A readiness policy answers a
single "is the fleet where it should be?" check; FleetController.wait_ready
polls it until a deadline.

Both are plain classes with one async method, selected at controller
construction (see create_scaling_policy / create_readiness_policy).
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Protocol, Sequence

from .errors import TickError
from .load import get_exec_load, select_minimum_load
from .worker import Worker, WorkerState

if TYPE_CHECKING:
    from .controller import FleetController

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]

RUNNING = (WorkerState.RUNNING,)


class ScalingPolicy(Protocol):
    async def scale(self, controller: "FleetController") -> None:
        """Issue this tick's creates/removes and wait for all of them."""


class ReadinessPolicy(Protocol):
    async def is_ready(self, controller: "FleetController") -> bool:
        """Return True if the fleet currently satisfies its target."""


async def run_fanout(operations: Sequence[Operation]) -> None:
    """
    Run operations concurrently and wait for every one of them.

    A failing operation never cancels its siblings. Once all have settled,
    any failures are raised together as a TickError.
    """
    if not operations:
        return
    results = await asyncio.gather(*(op() for op in operations), return_exceptions=True)
    errors = [r for r in results if isinstance(r, BaseException)]
    for err in errors:
        if isinstance(err, asyncio.CancelledError):
            raise err
    if errors:
        raise TickError(errors)


async def pick_removal_victims(
    controller: "FleetController",
    workers: Sequence[Worker],
    count: int,
) -> List[Worker]:
    """
    Choose `count` workers to remove, least loaded first.

    One load snapshot is taken; each pick is dropped from the candidates so
    the same worker is never chosen twice. Ties are broken at random.
    """
    by_id = {w.worker_id: w for w in workers}
    load = await get_exec_load(controller.runtime, list(by_id))
    victims: List[Worker] = []
    for _ in range(min(count, len(load))):
        worker_id = select_minimum_load(load, controller.rng)
        del load[worker_id]
        victims.append(by_id[worker_id])
    return victims


def _create_ops(controller: "FleetController", service: str, count: int) -> List[Operation]:
    return [functools.partial(controller.start_service_worker, service) for _ in range(count)]


def _remove_ops(controller: "FleetController", workers: Sequence[Worker]) -> List[Operation]:
    return [functools.partial(controller.remove_worker, w.worker_id) for w in workers]


async def reap_dead_workers(controller: "FleetController", service: str) -> List[Operation]:
    """Removal ops for a service's exited or dead workers, so replaced workers do not pile up."""
    dead = await controller.get_workers(service, states=(WorkerState.REMOVED,))
    if dead:
        logger.info(f"[{controller.name}] {service}: removing {len(dead)} exited worker(s)")
    return _remove_ops(controller, dead)


class ReplicaScalingPolicy:
    """
    Keep ceil(target / services) running workers per service.

    Missing workers are created concurrently; surplus workers are removed,
    least loaded first. Exited workers are removed in the same tick.
    """

    name = "replicas"

    async def scale(self, controller: "FleetController") -> None:
        per_service = controller.per_service
        plans = await asyncio.gather(
            *(self._plan(controller, service, per_service) for service in controller.services),
            *(reap_dead_workers(controller, service) for service in controller.services),
        )
        await run_fanout([op for plan in plans for op in plan])

    async def _plan(self, controller: "FleetController", service: str, per_service: int) -> List[Operation]:
        running = await controller.get_workers(service, states=RUNNING)
        mismatch = per_service - len(running)

        if mismatch > 0:
            logger.info(f"[{controller.name}] {service}: {len(running)}/{per_service} running, creating {mismatch}")
            return _create_ops(controller, service, mismatch)
        if mismatch < 0:
            victims = await pick_removal_victims(controller, running, -mismatch)
            logger.info(f"[{controller.name}] {service}: {len(running)}/{per_service} running, removing {len(victims)}")
            return _remove_ops(controller, victims)
        return []


class LoadThresholdScalingPolicy:
    """
    Grow a service only while its workers are busy.

    Per service and tick:
    - no running worker: create one
    - some worker's load >= threshold and below the per-service target: create one more
    - otherwise, idle workers are removed while more than one would remain
    - above the per-service target: surplus removed, least loaded first
    - exited workers are removed in every tick
    """

    name = "load"

    def __init__(self, threshold: int = 1):
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold}")
        self.threshold = threshold

    async def scale(self, controller: "FleetController") -> None:
        per_service = controller.per_service
        plans = await asyncio.gather(
            *(self._plan(controller, service, per_service) for service in controller.services),
            *(reap_dead_workers(controller, service) for service in controller.services),
        )
        await run_fanout([op for plan in plans for op in plan])

    async def _plan(self, controller: "FleetController", service: str, per_service: int) -> List[Operation]:
        running = await controller.get_workers(service, states=RUNNING)
        if not running:
            if per_service == 0:
                return []
            logger.info(f"[{controller.name}] {service}: no running workers, creating 1")
            return _create_ops(controller, service, 1)

        if len(running) > per_service:
            victims = await pick_removal_victims(controller, running, len(running) - per_service)
            logger.info(f"[{controller.name}] {service}: above target, removing {len(victims)}")
            return _remove_ops(controller, victims)

        load = await get_exec_load(controller.runtime, [w.worker_id for w in running])
        busiest = max(load.values())
        if busiest >= self.threshold and len(running) < per_service:
            logger.info(
                f"[{controller.name}] {service}: load {busiest} >= {self.threshold}, "
                f"growing to {len(running) + 1}/{per_service}"
            )
            return _create_ops(controller, service, 1)

        idle = [w for w in running if load[w.worker_id] == 0]
        removable = idle[: max(0, len(running) - 1)]
        if removable:
            logger.info(f"[{controller.name}] {service}: removing {len(removable)} idle worker(s)")
        return _remove_ops(controller, removable)


class ReplicaReadinessPolicy:
    """Ready when total running workers equals per_service * service_count."""

    name = "replicas"

    async def is_ready(self, controller: "FleetController") -> bool:
        running = await controller.get_workers(states=RUNNING)
        return len(running) == controller.per_service * len(controller.services)


class SingleWorkerReadinessPolicy:
    """Ready when every service has at least one running worker, whatever the target."""

    name = "single"

    async def is_ready(self, controller: "FleetController") -> bool:
        running = await controller.get_workers(states=RUNNING)
        services = {w.service for w in running}
        return all(service in services for service in controller.services)


def create_scaling_policy(name: str, **kwargs: Any) -> ScalingPolicy:
    mode = str(name).strip().lower()
    if mode == ReplicaScalingPolicy.name:
        return ReplicaScalingPolicy()
    if mode == LoadThresholdScalingPolicy.name:
        return LoadThresholdScalingPolicy(threshold=int(kwargs.get("threshold", 1)))
    raise ValueError(f"Unknown scaling policy: {name}")


def create_readiness_policy(name: str) -> ReadinessPolicy:
    mode = str(name).strip().lower()
    if mode == ReplicaReadinessPolicy.name:
        return ReplicaReadinessPolicy()
    if mode == SingleWorkerReadinessPolicy.name:
        return SingleWorkerReadinessPolicy()
    raise ValueError(f"Unknown readiness policy: {name}")
