"""
Worker data model for fleet.

A Worker is one container of a fleet, discovered from the runtime by label
filter. Nothing here is persisted: every listing rebuilds Workers from the
runtime, so a Worker object is only valid for the operation that produced it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

# Labels written on every worker at creation time. They are the only
# membership authority: enumeration, scaling and teardown all filter on them.
FLEET_LABEL = "fleet.name"
SERVICE_LABEL = "fleet.service"


class WorkerState(Enum):
    """Lifecycle state of a worker as reported by the runtime."""
    PENDING = "pending"        # Created or restarting, not yet running
    RUNNING = "running"        # Running and healthy (or without a health check)
    UNHEALTHY = "unhealthy"    # Running but failing its health check, or paused
    REMOVED = "removed"        # Exited, dead or being removed


@dataclass
class Worker:
    """
    A single container belonging to a fleet.

    Attributes:
        worker_id: Runtime-assigned identifier
        name: Container name
        service: Name of the service template it was created from
        fleet: Name of the owning fleet
        state: Lifecycle state at listing time
        labels: All labels reported by the runtime
    """
    worker_id: str
    name: str = ""
    service: str = ""
    fleet: str = ""
    state: WorkerState = WorkerState.PENDING
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state == WorkerState.RUNNING

    @classmethod
    def from_labels(
        cls,
        worker_id: str,
        labels: Dict[str, str],
        state: WorkerState,
        name: str = "",
    ) -> "Worker":
        """Build a Worker, reading fleet and service from its labels."""
        return cls(
            worker_id=worker_id,
            name=name,
            service=labels.get(SERVICE_LABEL, ""),
            fleet=labels.get(FLEET_LABEL, ""),
            state=state,
            labels=dict(labels),
        )

    def __repr__(self) -> str:
        return f"Worker({self.worker_id[:12]}, service={self.service}, state={self.state.value})"


@dataclass(frozen=True)
class ServiceTemplate:
    """
    Immutable specification from which workers of one service are created.

    Attributes:
        name: Service name, unique within a fleet
        image: Image reference (e.g. "alpine:latest")
        command: Entry command argv
        env: Environment variables
        binds: Volume bindings ("host:container[:mode]")
        labels: Extra labels, merged under the fleet labels
        container_name: Pin every worker to this name (replicas will conflict)
        host_config: Extra runtime host configuration passed through verbatim
    """
    name: str
    image: str
    command: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    binds: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    container_name: Optional[str] = None
    host_config: Dict[str, Any] = field(default_factory=dict)

    def worker_labels(self, fleet_name: str) -> Dict[str, str]:
        """Labels for a new worker; fleet labels always win over template ones."""
        labels = dict(self.labels)
        labels[SERVICE_LABEL] = self.name
        labels[FLEET_LABEL] = fleet_name
        return labels

    def create_body(self, labels: Dict[str, str]) -> Dict[str, Any]:
        """Render a fresh container create request; the template is never mutated."""
        host_config: Dict[str, Any] = dict(self.host_config)
        if self.binds:
            host_config["Binds"] = list(self.binds)

        body: Dict[str, Any] = {
            "Image": self.image,
            "Labels": dict(labels),
        }
        if self.command:
            body["Cmd"] = list(self.command)
        if self.env:
            body["Env"] = [f"{k}={v}" for k, v in self.env.items()]
        if host_config:
            body["HostConfig"] = host_config
        return body


@dataclass
class WorkerInfo:
    """Result of inspecting a single worker."""
    worker_id: str
    running: bool
    health: Optional[str] = None
    exec_ids: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        """Running, and healthy when a health check is configured."""
        return self.running and (self.health is None or self.health == "healthy")


@dataclass
class ExecutionInfo:
    """Result of inspecting a single execution."""
    exec_id: str
    running: bool
    worker_id: str
    exit_code: Optional[int] = None


@dataclass
class ExecutionHandle:
    """A started execution and its raw multiplexed output stream."""
    exec_id: str
    worker_id: str
    stream: AsyncIterator[bytes]
