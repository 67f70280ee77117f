"""
Fleet runner - entry point for running a fleet against the local Docker daemon.

Usage:
    python -m fleet.run --config fleet.yaml
    python -m fleet.run --config fleet.yaml --verbose

The fleet is stopped (all workers force-removed) on SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal

import fire

from .config import FleetConfig, build_controller, load_fleet_config
from .runtime.docker import DockerRuntime

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        # Keep third-party libraries at WARNING level to reduce noise
        logging.getLogger('aiohttp').setLevel(logging.WARNING)
        logging.getLogger('asyncio').setLevel(logging.WARNING)
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        logging.getLogger('aiohttp').setLevel(logging.ERROR)


async def run_fleet(config: FleetConfig, wait_ready: bool = True) -> None:
    """Run a fleet until the process is signalled, then tear it down."""
    runtime = DockerRuntime(socket_path=config.docker_socket)
    controller = build_controller(config, runtime)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    loop_task = controller.start_background()
    stop_waiter = asyncio.create_task(stop_event.wait())
    try:
        if wait_ready:
            if await controller.wait_ready():
                logger.info(f"Fleet {config.name} ready: {controller.get_stats()}")
            else:
                logger.warning(f"Fleet {config.name} did not converge within {config.ready_timeout}s; still reconciling")

        done, _ = await asyncio.wait({loop_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if loop_task in done:
            # Surface an unexpected loop exit
            loop_task.result()
    finally:
        stop_waiter.cancel()
        try:
            await controller.stop()
            await loop_task
            # Sweep workers created by a tick that was in flight during the first pass
            await controller.stop()
        finally:
            await runtime.close()
        logger.info(f"Fleet {config.name} stopped")


def main(config: str = "fleet.yaml", verbose: bool = False, wait_ready: bool = True):
    """
    Run a fleet described by a YAML file.

    Args:
        config (str): Path to the fleet YAML file (default: fleet.yaml)
        verbose (bool): Enable debug logging (default: False)
        wait_ready (bool): Log once the fleet first converges (default: True)
    """
    setup_logging(verbose)
    fleet_config = load_fleet_config(config)
    asyncio.run(run_fleet(fleet_config, wait_ready=wait_ready))


def cli():
    fire.Fire(main)


if __name__ == "__main__":
    cli()
