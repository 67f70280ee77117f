"""
Runtime bindings for fleet.

Provides:
- WorkerRuntime: the interface the core consumes
- DockerRuntime: Docker Engine API binding
"""

from __future__ import annotations

from .base import WorkerRuntime
from .docker import DockerRuntime

__all__ = [
    "WorkerRuntime",
    "DockerRuntime",
]
