"""
Runtime interface consumed by the fleet core.

The goal of this module is to decouple the controller, policies and
dispatcher from any single container runtime (Docker today). A runtime
binding only has to provide these operations; authentication and transport
are its own business.
"""

from __future__ import annotations

from typing import Dict, List, Protocol, Sequence

from ..worker import ExecutionHandle, ExecutionInfo, ServiceTemplate, Worker, WorkerInfo


class WorkerRuntime(Protocol):
    """
    Minimal interface required by FleetController.

    Runtimes provide:
    - label-filtered worker enumeration
    - worker creation (started) and forced removal
    - worker and execution inspection
    - command execution with a multiplexed stdout/stderr stream
    """

    async def list_workers(self, labels: Dict[str, str]) -> List[Worker]:
        """List workers (in any state) carrying every given label."""

    async def create_worker(
        self,
        template: ServiceTemplate,
        name: str,
        labels: Dict[str, str],
    ) -> Worker:
        """Create and start a worker. Raises NameConflictError on a duplicate name."""

    async def remove_worker(self, worker_id: str, force: bool = True) -> None:
        """Remove a worker. A worker that is already gone is not an error."""

    async def inspect_worker(self, worker_id: str) -> WorkerInfo:
        """Inspect a worker. Raises WorkerNotFoundError if it does not exist."""

    async def start_execution(self, worker_id: str, argv: Sequence[str]) -> ExecutionHandle:
        """Start a command in a worker and return its handle and output stream."""

    async def inspect_execution(self, exec_id: str) -> ExecutionInfo:
        """Inspect an execution. Raises ExecutionNotFoundError if it does not exist."""

    async def close(self) -> None:
        """Release any transport resources."""
