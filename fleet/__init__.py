"""
fleet - self-healing pools of worker containers.

Provides:
- FleetController: keeps a labelled pool of workers converged to a target
- Scaling/readiness policies: replica-target and load-threshold variants
- Dispatcher: runs ad-hoc commands on random or least-loaded workers
- Stream demultiplexer for the stdout/stderr exec output protocol
- DockerRuntime: Docker Engine API binding of the runtime interface
"""

from .controller import FleetController
from .dispatch import Dispatcher, ExecutionRequest, ExecutionResult, TargetMode
from .errors import (
    FleetError,
    NameConflictError,
    NoWorkersError,
    NotFoundError,
    RemovalTimeoutError,
    RuntimeInterfaceError,
    StreamProtocolError,
    TickError,
)
from .load import exec_is_running, get_exec_load, select_minimum_load
from .policies import (
    LoadThresholdScalingPolicy,
    ReplicaReadinessPolicy,
    ReplicaScalingPolicy,
    SingleWorkerReadinessPolicy,
    create_readiness_policy,
    create_scaling_policy,
)
from .runtime import DockerRuntime, WorkerRuntime
from .stream import FrameDecoder, StreamChunk, StreamType, demux_bytes, demux_stream
from .worker import ServiceTemplate, Worker, WorkerState

__all__ = [
    "FleetController",
    "Dispatcher",
    "ExecutionRequest",
    "ExecutionResult",
    "TargetMode",
    "FleetError",
    "NameConflictError",
    "NoWorkersError",
    "NotFoundError",
    "RemovalTimeoutError",
    "RuntimeInterfaceError",
    "StreamProtocolError",
    "TickError",
    "exec_is_running",
    "get_exec_load",
    "select_minimum_load",
    "LoadThresholdScalingPolicy",
    "ReplicaReadinessPolicy",
    "ReplicaScalingPolicy",
    "SingleWorkerReadinessPolicy",
    "create_readiness_policy",
    "create_scaling_policy",
    "DockerRuntime",
    "WorkerRuntime",
    "FrameDecoder",
    "StreamChunk",
    "StreamType",
    "demux_bytes",
    "demux_stream",
    "ServiceTemplate",
    "Worker",
    "WorkerState",
]
