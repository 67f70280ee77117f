"""
Fleet configuration.

Configuration is read from a YAML file describing the fleet and its service
templates, with a few environment overrides. Environment variables are
loaded from ~/.fleet/.env (respects FLEET_HOME) and then the project .env.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .controller import FleetController
from .policies import create_readiness_policy, create_scaling_policy
from .runtime.base import WorkerRuntime
from .worker import ServiceTemplate

logger = logging.getLogger(__name__)


def fleet_home() -> Path:
    return Path(os.getenv("FLEET_HOME", Path.home() / ".fleet"))


def load_env() -> None:
    """Load ~/.fleet/.env first, then the project .env (neither overrides the process env)."""
    env_path = fleet_home() / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv()


class ServiceConfig(BaseModel):
    image: str = Field(description="Image reference for the service's workers")
    command: List[str] = Field(default_factory=list, description="Entry command argv")
    env: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    binds: List[str] = Field(default_factory=list, description="Volume bindings (host:container[:mode])")
    labels: Dict[str, str] = Field(default_factory=dict, description="Extra worker labels")
    container_name: Optional[str] = Field(default=None, description="Pin all workers to one name")

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    def to_template(self, name: str) -> ServiceTemplate:
        return ServiceTemplate(
            name=name,
            image=self.image,
            command=tuple(self.command),
            env=dict(self.env),
            binds=tuple(self.binds),
            labels=dict(self.labels),
            container_name=self.container_name,
        )


class FleetConfig(BaseModel):
    name: str = Field(description="Fleet name, written to every worker's fleet.name label")
    target: int = Field(default=1, ge=0, description="Desired total replica target")
    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between reconciliation ticks")
    ready_timeout: float = Field(default=10.0, gt=0, description="Default wait_ready timeout (seconds)")
    ready_interval: float = Field(default=0.2, gt=0, description="Readiness poll interval (seconds)")
    worker_ready_timeout: float = Field(default=4.0, gt=0, description="Per-worker readiness wait after create")
    scaling: str = Field(default="replicas", description="Scaling policy: 'replicas' or 'load'")
    load_threshold: int = Field(default=1, ge=1, description="Load policy: executions per worker before growing")
    readiness: str = Field(default="replicas", description="Readiness policy: 'replicas' or 'single'")
    docker_socket: Optional[str] = Field(default=None, description="Docker socket path (defaults to DOCKER_SOCKET_PATH)")
    services: Dict[str, ServiceConfig] = Field(min_length=1, description="Service templates keyed by name")

    def templates(self) -> Dict[str, ServiceTemplate]:
        return {name: svc.to_template(name) for name, svc in self.services.items()}


def _apply_env_overrides(data: dict) -> dict:
    overrides = {
        "FLEET_TARGET": "target",
        "FLEET_POLL_INTERVAL": "poll_interval",
        "DOCKER_SOCKET_PATH": "docker_socket",
    }
    for env_var, key in overrides.items():
        value = os.getenv(env_var)
        if value:
            data[key] = value
    return data


def load_fleet_config(path: Union[str, Path], use_env: bool = True) -> FleetConfig:
    """
    Load and validate a fleet YAML file.

    Args:
        path: YAML file to read
        use_env: Load .env files and apply FLEET_* / DOCKER_SOCKET_PATH overrides

    Returns:
        Validated FleetConfig
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fleet config not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Fleet config must be a mapping: {path}")

    if use_env:
        load_env()
        data = _apply_env_overrides(data)

    config = FleetConfig(**data)
    logger.info(f"Loaded fleet {config.name} from {path} ({len(config.services)} services)")
    return config


def build_controller(config: FleetConfig, runtime: WorkerRuntime) -> FleetController:
    """Create a FleetController wired with the configured policies."""
    return FleetController(
        runtime=runtime,
        name=config.name,
        services=config.templates(),
        target=config.target,
        poll_interval=config.poll_interval,
        scaling_policy=create_scaling_policy(config.scaling, threshold=config.load_threshold),
        readiness_policy=create_readiness_policy(config.readiness),
        ready_timeout=config.ready_timeout,
        ready_interval=config.ready_interval,
        worker_ready_timeout=config.worker_ready_timeout,
    )
