"""
Dispatcher - runs ad-hoc commands on fleet workers.

Targets are chosen explicitly, uniformly at random, or by minimum active
load. Dispatch is best-effort: the candidate list is a snapshot, and a
worker removed by a concurrent reconciliation tick fails the dispatch with
the runtime's error rather than being retried elsewhere.
"""

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, List, Optional, Sequence

from .errors import ExecutionNotFoundError, NoWorkersError
from .load import get_exec_load, select_minimum_load
from .runtime.base import WorkerRuntime
from .stream import StreamChunk, collect_output, demux_stream

logger = logging.getLogger(__name__)


async def close_stream(stream: Any) -> None:
    """Release an exec output stream early; sources without aclose() are left alone."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class TargetMode(Enum):
    """How a dispatch picks its worker."""
    EXPLICIT = "explicit"
    RANDOM = "random"
    MINIMUM_LOAD = "minimum_load"


@dataclass
class ExecutionRequest:
    """Request to run a command somewhere in the fleet."""
    argv: List[str]
    mode: TargetMode = TargetMode.RANDOM
    worker_id: Optional[str] = None

    def __post_init__(self):
        if not self.argv:
            raise ValueError("ExecutionRequest requires a non-empty argv")
        if self.mode == TargetMode.EXPLICIT and not self.worker_id:
            raise ValueError("Explicit dispatch requires a worker_id")


@dataclass
class ExecutionResult:
    """Collected output of a finished execution."""
    worker_id: str
    exec_id: str
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    chunks: List[StreamChunk] = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Dispatcher:
    """
    Runs commands against workers and decodes their output.

    Usage:
        dispatcher = Dispatcher(runtime)

        # Explicit worker
        result = await dispatcher.run(worker_id, ["sh", "-c", "echo hi"])

        # Let the dispatcher choose
        result = await dispatcher.run_on_minimum_load(worker_ids, ["sleep", "5"])
    """

    def __init__(self, runtime: WorkerRuntime, rng: Optional[random.Random] = None):
        self.runtime = runtime
        self.rng = rng or random.Random()

    async def run_stream(self, worker_id: str, argv: Sequence[str]) -> AsyncIterator[StreamChunk]:
        """Start a command and yield its output chunks as they arrive."""
        handle = await self.runtime.start_execution(worker_id, argv)
        try:
            async for chunk in demux_stream(handle.stream):
                yield chunk
        finally:
            await close_stream(handle.stream)

    async def run(self, worker_id: str, argv: Sequence[str]) -> ExecutionResult:
        """Run a command to completion and collect stdout/stderr."""
        handle = await self.runtime.start_execution(worker_id, argv)
        logger.debug(f"Started exec {handle.exec_id[:12]} on {worker_id[:12]}: {list(argv)}")

        chunks: List[StreamChunk] = []
        try:
            async for chunk in demux_stream(handle.stream):
                chunks.append(chunk)
        finally:
            await close_stream(handle.stream)

        exit_code = None
        try:
            info = await self.runtime.inspect_execution(handle.exec_id)
            exit_code = info.exit_code
        except ExecutionNotFoundError:
            pass

        stdout, stderr = collect_output(chunks)
        return ExecutionResult(
            worker_id=worker_id,
            exec_id=handle.exec_id,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=exit_code,
            chunks=chunks,
        )

    def choose_random(self, worker_ids: Sequence[str]) -> str:
        if not worker_ids:
            raise NoWorkersError("No workers available for dispatch")
        return self.rng.choice(list(worker_ids))

    async def choose_minimum_load(self, worker_ids: Sequence[str]) -> str:
        if not worker_ids:
            raise NoWorkersError("No workers available for dispatch")
        load = await get_exec_load(self.runtime, worker_ids)
        return select_minimum_load(load, self.rng)

    async def run_on_random(self, worker_ids: Sequence[str], argv: Sequence[str]) -> ExecutionResult:
        return await self.run(self.choose_random(worker_ids), argv)

    async def run_on_minimum_load(self, worker_ids: Sequence[str], argv: Sequence[str]) -> ExecutionResult:
        return await self.run(await self.choose_minimum_load(worker_ids), argv)

    async def dispatch(self, request: ExecutionRequest, worker_ids: Sequence[str]) -> ExecutionResult:
        """Route a request according to its target mode."""
        if request.mode == TargetMode.EXPLICIT:
            return await self.run(request.worker_id, request.argv)
        if request.mode == TargetMode.MINIMUM_LOAD:
            return await self.run_on_minimum_load(worker_ids, request.argv)
        return await self.run_on_random(worker_ids, request.argv)
