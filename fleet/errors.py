"""
Error taxonomy for fleet.

Runtime bindings raise the RuntimeInterfaceError family; the controller and
policies decide which of those are retried (NameConflictError), which count
as success (NotFoundError on removal) and which propagate.
"""

from typing import List, Optional


class FleetError(Exception):
    """Base class for every error raised by fleet."""


class RuntimeInterfaceError(FleetError):
    """A runtime call failed for a reason the core cannot recover from."""


class NameConflictError(RuntimeInterfaceError):
    """A worker with the requested name already exists."""

    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(message or f"Worker name already in use: {name}")


class NotFoundError(RuntimeInterfaceError):
    """The referenced worker or execution no longer exists."""


class WorkerNotFoundError(NotFoundError):
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker not found: {worker_id}")


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, exec_id: str):
        self.exec_id = exec_id
        super().__init__(f"Execution not found: {exec_id}")


class DockerAPIError(RuntimeInterfaceError):
    """Non-success response from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error (HTTP {status}): {message}")


class RemovalTimeoutError(FleetError):
    """A removed worker was still present when the confirmation deadline hit."""

    def __init__(self, worker_id: str, timeout: float):
        self.worker_id = worker_id
        self.timeout = timeout
        super().__init__(f"Worker {worker_id} still present {timeout:.1f}s after removal")


class NoWorkersError(FleetError):
    """Dispatch was requested but no worker is available."""


class StreamProtocolError(FleetError):
    """The multiplexed output stream ended inside a frame."""


class TickError(FleetError):
    """One or more operations of a reconciliation tick failed.

    Sibling operations are always awaited to completion first, so the
    successful ones are already applied when this is raised.
    """

    def __init__(self, errors: List[BaseException]):
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors[:3])
        if len(self.errors) > 3:
            summary += f" (+{len(self.errors) - 3} more)"
        super().__init__(f"{len(self.errors)} operation(s) failed during tick: {summary}")
