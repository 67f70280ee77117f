"""
Load tracking for fleet workers.

A load snapshot maps worker id -> number of executions matching a predicate
(by default: executions that are still running). Snapshots are computed
fresh on every call and never cached.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from .errors import ExecutionNotFoundError, WorkerNotFoundError
from .runtime.base import WorkerRuntime
from .utils import maybe_await
from .worker import ExecutionInfo

logger = logging.getLogger(__name__)

ExecPredicate = Callable[[ExecutionInfo], Union[bool, Awaitable[bool]]]


def exec_is_running(info: ExecutionInfo) -> bool:
    return info.running


async def get_exec_load(
    runtime: WorkerRuntime,
    worker_ids: Iterable[str],
    predicate: ExecPredicate = exec_is_running,
) -> Dict[str, int]:
    """
    Count matching executions per worker.

    Every worker appears in the result, zero-load ones with 0. Workers and
    executions that vanish during the scan contribute nothing.

    Args:
        runtime: Runtime to query
        worker_ids: Workers to include in the snapshot
        predicate: Sync or async filter over an execution's inspection

    Returns:
        Dict mapping worker id to matching execution count
    """
    load: Dict[str, int] = {worker_id: 0 for worker_id in worker_ids}

    async def _count_execution(worker_id: str, exec_id: str) -> None:
        try:
            info = await runtime.inspect_execution(exec_id)
        except ExecutionNotFoundError:
            return
        if await maybe_await(predicate(info)):
            load[worker_id] += 1

    async def _scan_worker(worker_id: str) -> None:
        try:
            info = await runtime.inspect_worker(worker_id)
        except WorkerNotFoundError:
            logger.debug(f"Worker {worker_id[:12]} disappeared during load scan")
            return
        await asyncio.gather(*(_count_execution(worker_id, exec_id) for exec_id in info.exec_ids))

    await asyncio.gather(*(_scan_worker(worker_id) for worker_id in list(load)))
    return load


def select_minimum_load(
    load: Dict[str, int],
    rng: Optional[random.Random] = None,
) -> Optional[str]:
    """
    Pick the worker with the lowest load.

    Ties are broken uniformly at random among all tied workers.

    Returns:
        Worker id, or None for an empty snapshot
    """
    if not load:
        return None
    rng = rng or random
    lowest = min(load.values())
    candidates = [worker_id for worker_id, count in load.items() if count == lowest]
    return rng.choice(candidates)


def total_load(load: Dict[str, int]) -> int:
    return sum(load.values())
