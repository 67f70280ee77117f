"""Integration test for the fleet runner: converge, then tear down on exit."""

import asyncio

import pytest

pytestmark = pytest.mark.integration

from fleet.config import FleetConfig
from fleet.run import run_fleet
from fleet.utils import wait_until
from tests.fakes.fake_docker_server import FakeDockerServer


@pytest.mark.asyncio
async def test_run_fleet_removes_workers_on_exit(monkeypatch):
    async with FakeDockerServer(images={"alpine:latest"}) as server:
        monkeypatch.setenv("DOCKER_HOST", server.url.replace("http://", "tcp://"))
        config = FleetConfig(
            name="run-fleet",
            target=2,
            poll_interval=0.05,
            ready_interval=0.01,
            services={"alpine": {"image": "alpine:latest", "command": ["sleep", "infinity"]}},
        )

        task = asyncio.create_task(run_fleet(config))
        assert await wait_until(lambda: len(server.containers) == 2, timeout=2.0, interval=0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert server.containers == {}
