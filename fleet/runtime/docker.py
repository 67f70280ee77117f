"""
Docker Engine API binding for fleet.

Provides a simple async client for the Docker Engine HTTP API, reached over
the local unix socket (or a TCP DOCKER_HOST):
- List/create/start/remove containers by label
- Pull images on first use
- Start and inspect exec instances, streaming their multiplexed output
"""

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiohttp

from ..errors import (
    DockerAPIError,
    ExecutionNotFoundError,
    NameConflictError,
    RuntimeInterfaceError,
    WorkerNotFoundError,
)
from ..worker import ExecutionHandle, ExecutionInfo, ServiceTemplate, Worker, WorkerInfo, WorkerState

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"


def _worker_state(state: str, status: str = "") -> WorkerState:
    """Map a Docker container state (and status text) to a WorkerState."""
    state = (state or "").lower()
    if state == "running":
        if "unhealthy" in (status or "").lower():
            return WorkerState.UNHEALTHY
        return WorkerState.RUNNING
    if state in ("created", "restarting"):
        return WorkerState.PENDING
    if state == "paused":
        return WorkerState.UNHEALTHY
    return WorkerState.REMOVED


def split_image_reference(image: str) -> Tuple[str, str]:
    """Split "repo[:tag]" into (repo, tag); digests are returned whole with an empty tag."""
    if "@" in image:
        return image, ""
    repo, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repo, tag


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body)
    return str(body or "")


class DockerRuntime:
    """
    Async client for the Docker Engine API implementing WorkerRuntime.

    Usage:
        runtime = DockerRuntime()  # /var/run/docker.sock or $DOCKER_SOCKET_PATH

        workers = await runtime.list_workers({"fleet.name": "alpine-fleet"})
        handle = await runtime.start_execution(workers[0].worker_id, ["ls", "/"])
        async for chunk in demux_stream(handle.stream):
            ...

        await runtime.close()
    """

    def __init__(
        self,
        socket_path: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        docker_host = os.environ.get("DOCKER_HOST", "")
        if base_url is None and docker_host.startswith(("tcp://", "http://")):
            base_url = "http://" + docker_host.split("://", 1)[1]
        if base_url is None and docker_host.startswith("unix://") and socket_path is None:
            socket_path = docker_host[len("unix://"):]

        self.base_url = (base_url or "http://localhost").rstrip("/")
        self.socket_path = None if base_url else (
            socket_path or os.environ.get("DOCKER_SOCKET_PATH") or DEFAULT_SOCKET_PATH
        )
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        # Exec output streams stay open for as long as the command runs.
        self.stream_timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.UnixConnector(path=self.socket_path) if self.socket_path else None
            self._session = aiohttp.ClientSession(connector=connector, timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Make an HTTP request to the Docker API and return (status, parsed body)."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, params=params, json=data) as response:
                text = await response.text()
                if not text:
                    return response.status, None
                try:
                    return response.status, json.loads(text)
                except json.JSONDecodeError:
                    return response.status, text
        except aiohttp.ClientError as e:
            raise RuntimeInterfaceError(f"Docker request {method} {path} failed: {e}") from e

    # Container Operations

    async def list_workers(self, labels: Dict[str, str]) -> List[Worker]:
        filters = {"label": [f"{k}={v}" for k, v in labels.items()]}
        status, body = await self._request(
            "GET",
            "/containers/json",
            params={"all": "1", "filters": json.dumps(filters)},
        )
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

        workers = []
        for info in body or []:
            names = info.get("Names") or []
            workers.append(Worker.from_labels(
                worker_id=info.get("Id", ""),
                labels=info.get("Labels") or {},
                state=_worker_state(info.get("State", ""), info.get("Status", "")),
                name=names[0].lstrip("/") if names else "",
            ))
        return workers

    async def create_worker(
        self,
        template: ServiceTemplate,
        name: str,
        labels: Dict[str, str],
    ) -> Worker:
        await self.ensure_image(template.image)

        status, body = await self._request(
            "POST",
            "/containers/create",
            params={"name": name},
            data=template.create_body(labels),
        )
        if status == 409:
            raise NameConflictError(name, _error_message(body))
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

        container_id = body["Id"]
        status, body = await self._request("POST", f"/containers/{container_id}/start")
        # 304: already started
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

        logger.debug(f"Created container {name} ({container_id[:12]})")
        return Worker.from_labels(container_id, labels, WorkerState.PENDING, name=name)

    async def remove_worker(self, worker_id: str, force: bool = True) -> None:
        status, body = await self._request(
            "DELETE",
            f"/containers/{worker_id}",
            params={"force": "1" if force else "0"},
        )
        if status == 404:
            return
        if status == 409 and "already in progress" in _error_message(body).lower():
            return
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

    async def inspect_worker(self, worker_id: str) -> WorkerInfo:
        status, body = await self._request("GET", f"/containers/{worker_id}/json")
        if status == 404:
            raise WorkerNotFoundError(worker_id)
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

        state = body.get("State") or {}
        health = state.get("Health") or {}
        config = body.get("Config") or {}
        return WorkerInfo(
            worker_id=body.get("Id", worker_id),
            running=bool(state.get("Running")),
            health=health.get("Status"),
            exec_ids=list(body.get("ExecIDs") or []),
            labels=config.get("Labels") or {},
        )

    # Image Operations

    async def image_exists(self, image: str) -> bool:
        status, body = await self._request("GET", f"/images/{image}/json")
        if status == 404:
            return False
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))
        return True

    async def pull_image(self, image: str) -> None:
        """Pull an image, draining the progress stream and failing on an error entry."""
        repo, tag = split_image_reference(image)
        params = {"fromImage": repo}
        if tag:
            params["tag"] = tag

        logger.info(f"Pulling image {image}")
        status, body = await self._request("POST", "/images/create", params=params)
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))

        # The progress stream is newline-delimited JSON.
        if isinstance(body, dict):
            events = [body]
        else:
            events = []
            for line in str(body or "").splitlines():
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        for event in events:
            if isinstance(event, dict) and event.get("error"):
                raise DockerAPIError(status, f"Failed to pull {image}: {event['error']}")

    async def ensure_image(self, image: str) -> None:
        if not await self.image_exists(image):
            await self.pull_image(image)

    # Exec Operations

    async def start_execution(self, worker_id: str, argv: Sequence[str]) -> ExecutionHandle:
        status, body = await self._request(
            "POST",
            f"/containers/{worker_id}/exec",
            data={"AttachStdout": True, "AttachStderr": True, "Cmd": list(argv)},
        )
        if status == 404:
            raise WorkerNotFoundError(worker_id)
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))
        exec_id = body["Id"]

        session = await self._get_session()
        try:
            response = await session.post(
                f"{self.base_url}/exec/{exec_id}/start",
                json={"Detach": False, "Tty": False},
                timeout=self.stream_timeout,
            )
        except aiohttp.ClientError as e:
            raise RuntimeInterfaceError(f"Failed to start exec {exec_id[:12]}: {e}") from e

        if response.status >= 400:
            text = await response.text()
            response.release()
            if response.status == 404:
                raise ExecutionNotFoundError(exec_id)
            try:
                message = _error_message(json.loads(text))
            except json.JSONDecodeError:
                message = text
            raise DockerAPIError(response.status, message)

        return ExecutionHandle(
            exec_id=exec_id,
            worker_id=worker_id,
            stream=self._iter_response(response),
        )

    @staticmethod
    async def _iter_response(response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_any():
                yield chunk
        finally:
            response.release()

    async def inspect_execution(self, exec_id: str) -> ExecutionInfo:
        status, body = await self._request("GET", f"/exec/{exec_id}/json")
        if status == 404:
            raise ExecutionNotFoundError(exec_id)
        if status >= 400:
            raise DockerAPIError(status, _error_message(body))
        return ExecutionInfo(
            exec_id=body.get("ID", exec_id),
            running=bool(body.get("Running")),
            worker_id=body.get("ContainerID", ""),
            exit_code=body.get("ExitCode"),
        )
