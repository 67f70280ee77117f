"""
FleetController - keeps a pool of worker containers converged to a target.

The FleetController is the core of fleet:
- Owns the desired target and the fleet's service templates
- Runs the reconciliation loop (one scaling-policy tick at a time)
- Creates, readies and removes workers through the runtime
- Dispatches ad-hoc commands onto the live pool

Membership is never cached: every operation re-lists workers from the
runtime by the fleet's labels.
"""

import asyncio
import logging
import math
import random
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .dispatch import Dispatcher, ExecutionRequest, ExecutionResult, TargetMode
from .errors import NameConflictError, RemovalTimeoutError, WorkerNotFoundError
from .load import ExecPredicate, exec_is_running, get_exec_load, select_minimum_load, total_load
from .policies import ReadinessPolicy, ReplicaReadinessPolicy, ReplicaScalingPolicy, ScalingPolicy
from .runtime.base import WorkerRuntime
from .utils import wait_until
from .worker import FLEET_LABEL, SERVICE_LABEL, ServiceTemplate, Worker, WorkerState

logger = logging.getLogger(__name__)

# Additional create attempts after a worker name conflict.
MAX_NAME_CONFLICT_RETRIES = 3


class FleetController:
    """
    Manages a fleet of interchangeable workers across one or more services.

    Usage:
        controller = FleetController(
            runtime=DockerRuntime(),
            name="alpine-fleet",
            services={"alpine": ServiceTemplate(name="alpine", image="alpine:latest",
                                                command=("sh", "-c", "while sleep 3600; do :; done"))},
            target=2,
        )

        controller.start_background()
        await controller.wait_ready()

        result = await controller.run_on_swarm(["echo", "hello"])

        controller.scale(3)
        await controller.wait_ready()

        await controller.stop()
    """

    def __init__(
        self,
        runtime: WorkerRuntime,
        name: str,
        services: Dict[str, ServiceTemplate],
        target: int,
        *,
        poll_interval: float = 1.0,
        scaling_policy: Optional[ScalingPolicy] = None,
        readiness_policy: Optional[ReadinessPolicy] = None,
        ready_timeout: float = 10.0,
        ready_interval: float = 0.2,
        worker_ready_timeout: float = 4.0,
        rng: Optional[random.Random] = None,
    ):
        if not services:
            raise ValueError("A fleet needs at least one service template")
        if target < 0:
            raise ValueError(f"target must be >= 0, got {target}")
        for key, template in services.items():
            if key != template.name:
                raise ValueError(f"Service key {key!r} does not match template name {template.name!r}")

        self.runtime = runtime
        self.name = name
        self.services: Dict[str, ServiceTemplate] = dict(services)
        self.poll_interval = poll_interval
        self.scaling_policy: ScalingPolicy = scaling_policy or ReplicaScalingPolicy()
        self.readiness_policy: ReadinessPolicy = readiness_policy or ReplicaReadinessPolicy()
        self.ready_timeout = ready_timeout
        self.ready_interval = ready_interval
        self.worker_ready_timeout = worker_ready_timeout
        self.rng = rng or random.Random()
        self.dispatcher = Dispatcher(runtime, rng=self.rng)

        # target and running are written from caller threads, read by the loop
        self._state_lock = threading.Lock()
        self._target = target
        self._running = False
        # Bumped by every start(); a loop exits once its run is superseded.
        self._generation = 0

        self._tick_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._pending_dispatches: Set[asyncio.Task] = set()
        self.ticks = 0
        self.failed_ticks = 0

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------

    @property
    def target(self) -> int:
        with self._state_lock:
            return self._target

    @property
    def running(self) -> bool:
        with self._state_lock:
            return self._running

    def _set_running(self, value: bool) -> None:
        with self._state_lock:
            self._running = value

    def _is_current(self, generation: int) -> bool:
        with self._state_lock:
            return self._running and self._generation == generation

    @property
    def per_service(self) -> int:
        """Workers per service: ceil(target / service count)."""
        return math.ceil(self.target / len(self.services))

    @property
    def labels(self) -> Dict[str, str]:
        return {FLEET_LABEL: self.name}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Run the reconciliation loop until stop() is called.

        Each iteration runs one full tick, then sleeps poll_interval. A failed
        tick is logged and the loop carries on with the next one.

        A loop left over from an earlier run (still sleeping when stop() was
        called) exits on wake-up instead of ticking alongside this one.
        """
        with self._state_lock:
            if self._running:
                raise RuntimeError(f"Fleet {self.name} is already running")
            self._running = True
            self._generation += 1
            generation = self._generation

        logger.info(
            f"Starting fleet {self.name} (target={self.target}, services={list(self.services)}, "
            f"poll_interval={self.poll_interval}s)"
        )
        try:
            while self._is_current(generation):
                try:
                    await self.reconcile_once()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failed_ticks += 1
                    logger.error(f"[{self.name}] Reconciliation tick failed: {e}")
                await asyncio.sleep(self.poll_interval)
        finally:
            with self._state_lock:
                if self._generation == generation:
                    self._running = False
            logger.info(f"Fleet {self.name} loop exited")

    def start_background(self) -> asyncio.Task:
        """Schedule start() on the running event loop and return its task."""
        if self._loop_task is not None and not self._loop_task.done():
            raise RuntimeError(f"Fleet {self.name} loop is already scheduled")
        self._loop_task = asyncio.create_task(self.start())
        return self._loop_task

    async def reconcile_once(self) -> None:
        """Run a single tick of the scaling policy. Ticks never overlap."""
        async with self._tick_lock:
            self.ticks += 1
            logger.debug(f"[{self.name}] tick {self.ticks} (target={self.target})")
            await self.scaling_policy.scale(self)

    async def stop(self, *, confirm: bool = False, timeout: float = 5.0) -> None:
        """
        Stop the loop and force-remove every worker of the fleet.

        The loop notices the cleared flag at the top of its next iteration; an
        in-flight tick is not interrupted and may still create workers, so
        callers that need zero must re-query.

        Args:
            confirm: Also wait for each removal to be confirmed
            timeout: Deadline for each confirmation (raises RemovalTimeoutError)
        """
        self._set_running(False)
        workers = await self.get_workers()
        logger.info(f"Stopping fleet {self.name}: removing {len(workers)} worker(s)")
        await asyncio.gather(
            *(self.remove_worker(w.worker_id, wait=confirm, timeout=timeout) for w in workers)
        )

    def scale(self, replicas: int) -> None:
        """Set the desired target; the next tick applies it."""
        if replicas < 0:
            raise ValueError(f"target must be >= 0, got {replicas}")
        with self._state_lock:
            previous, self._target = self._target, replicas
        logger.info(f"Scaling fleet {self.name}: {previous} -> {replicas}")

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Poll the readiness policy. Returns False if not ready before the timeout."""
        timeout = self.ready_timeout if timeout is None else timeout
        ready = await wait_until(
            lambda: self.readiness_policy.is_ready(self),
            timeout=timeout,
            interval=self.ready_interval,
        )
        if not ready:
            logger.warning(f"Fleet {self.name} not ready after {timeout:.1f}s")
        return ready

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def get_workers(
        self,
        service: Optional[str] = None,
        states: Optional[Iterable[WorkerState]] = None,
    ) -> List[Worker]:
        """
        List the fleet's workers, optionally for one service and/or some states.

        Raises:
            KeyError: If service is not one of the fleet's templates
        """
        labels = dict(self.labels)
        if service is not None:
            if service not in self.services:
                raise KeyError(f"Unknown service {service!r} for fleet {self.name}")
            labels[SERVICE_LABEL] = service

        workers = await self.runtime.list_workers(labels)
        if service is None:
            for w in workers:
                if w.service not in self.services:
                    logger.warning(f"[{self.name}] worker {w.worker_id[:12]} has unknown service {w.service!r}")
        if states is not None:
            wanted = set(states)
            workers = [w for w in workers if w.state in wanted]
        return workers

    def worker_name(self, service: str) -> str:
        template = self.services[service]
        return template.container_name or f"{service}_{uuid.uuid4()}"

    async def start_service_worker(self, service: str) -> Worker:
        """
        Create a worker for a service and wait for it to become ready.

        A name conflict (concurrent creates racing on a generated name) is
        retried with a fresh name, up to MAX_NAME_CONFLICT_RETRIES times.
        """
        template = self.services[service]
        labels = template.worker_labels(self.name)

        attempt = 0
        while True:
            name = self.worker_name(service)
            try:
                worker = await self.runtime.create_worker(template, name, labels)
                break
            except NameConflictError:
                if attempt >= MAX_NAME_CONFLICT_RETRIES:
                    raise
                attempt += 1
                logger.warning(
                    f"[{self.name}] name conflict creating {name}, "
                    f"retrying ({attempt}/{MAX_NAME_CONFLICT_RETRIES})"
                )

        logger.info(f"[{self.name}] created worker {worker.name or worker.worker_id[:12]} for {service}")
        if not await self.wait_worker_ready(worker.worker_id):
            logger.warning(f"[{self.name}] worker {worker.worker_id[:12]} not ready after {self.worker_ready_timeout}s")
        return worker

    async def wait_worker_ready(self, worker_id: str, timeout: Optional[float] = None) -> bool:
        """Wait until a worker is running and healthy (or has no health check)."""

        async def _ready() -> bool:
            try:
                info = await self.runtime.inspect_worker(worker_id)
            except WorkerNotFoundError:
                return False
            return info.is_ready

        return await wait_until(
            _ready,
            timeout=self.worker_ready_timeout if timeout is None else timeout,
            interval=self.ready_interval,
        )

    async def remove_worker(self, worker_id: str, *, wait: bool = False, timeout: float = 5.0) -> None:
        """Force-remove a worker; one that is already gone counts as removed."""
        await self.runtime.remove_worker(worker_id, force=True)
        logger.info(f"[{self.name}] removed worker {worker_id[:12]}")
        if wait:
            await self.wait_removed(worker_id, timeout=timeout)

    async def wait_removed(self, worker_id: str, timeout: float = 5.0) -> None:
        """
        Wait until the runtime no longer knows the worker.

        Raises:
            RemovalTimeoutError: If it is still inspectable at the deadline
        """

        async def _gone() -> bool:
            try:
                await self.runtime.inspect_worker(worker_id)
            except WorkerNotFoundError:
                return True
            return False

        if not await wait_until(_gone, timeout=timeout, interval=self.ready_interval):
            raise RemovalTimeoutError(worker_id, timeout)

    # ------------------------------------------------------------------
    # Load and dispatch
    # ------------------------------------------------------------------

    async def get_exec_load(self, predicate: ExecPredicate = exec_is_running) -> Dict[str, int]:
        """Load snapshot over every worker of the fleet."""
        workers = await self.get_workers()
        return await get_exec_load(self.runtime, [w.worker_id for w in workers], predicate)

    async def get_minimum_load_worker(self) -> Optional[Worker]:
        workers = await self.get_workers(states=(WorkerState.RUNNING,))
        load = await get_exec_load(self.runtime, [w.worker_id for w in workers])
        worker_id = select_minimum_load(load, self.rng)
        return next((w for w in workers if w.worker_id == worker_id), None)

    async def wait_for_total_load(self, load: int, timeout: float = 5.0) -> int:
        """Poll until the fleet's total load equals `load`; returns the last total seen."""
        observed = 0

        async def _matches() -> bool:
            nonlocal observed
            observed = total_load(await self.get_exec_load())
            return observed == load

        await wait_until(_matches, timeout=timeout, interval=self.ready_interval)
        return observed

    async def _candidate_ids(self) -> List[str]:
        workers = await self.get_workers(states=(WorkerState.RUNNING,))
        return [w.worker_id for w in workers]

    async def dispatch(
        self,
        cmd: Sequence[str],
        mode: TargetMode = TargetMode.RANDOM,
        worker_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Run a command on the fleet, choosing the worker according to mode."""
        request = ExecutionRequest(argv=list(cmd), mode=mode, worker_id=worker_id)
        candidates = [] if mode == TargetMode.EXPLICIT else await self._candidate_ids()
        return await self.dispatcher.dispatch(request, candidates)

    async def run_on_swarm(self, cmd: Sequence[str]) -> ExecutionResult:
        """Run a command on a uniformly random running worker."""
        return await self.dispatch(cmd, TargetMode.RANDOM)

    async def run_on_minimum_load(self, cmd: Sequence[str]) -> ExecutionResult:
        """Run a command on the least loaded running worker."""
        return await self.dispatch(cmd, TargetMode.MINIMUM_LOAD)

    def dispatch_nowait(
        self,
        cmd: Sequence[str],
        mode: TargetMode = TargetMode.RANDOM,
        worker_id: Optional[str] = None,
    ) -> asyncio.Task:
        """Fire-and-forget dispatch. Failures are logged, not raised."""
        task = asyncio.create_task(self.dispatch(cmd, mode, worker_id))
        self._pending_dispatches.add(task)
        task.add_done_callback(self._dispatch_done)
        return task

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._pending_dispatches.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.warning(f"[{self.name}] dispatch failed: {err}")

    def get_stats(self) -> Dict[str, Any]:
        """Get controller statistics."""
        return {
            "name": self.name,
            "services": list(self.services),
            "target": self.target,
            "per_service": self.per_service,
            "running": self.running,
            "scaling_policy": type(self.scaling_policy).__name__,
            "readiness_policy": type(self.readiness_policy).__name__,
            "ticks": self.ticks,
            "failed_ticks": self.failed_ticks,
            "pending_dispatches": len(self._pending_dispatches),
        }
