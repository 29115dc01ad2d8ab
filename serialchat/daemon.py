#!/usr/bin/env python3
"""Async orchestrator for the serial chat relay.

Architecture:
    main() -> RelayDaemon -> TaskGroup
        ├── http (uvicorn serving the FastAPI app)
        ├── serial-poll (SerialBridge.run, supervised)
        └── serial-write (SerialBridge.run_writer, supervised)

Shutdown order: SIGINT/SIGTERM set the shared shutdown event so every open
event stream ends, then uvicorn stops accepting and drains connections, then
the poll task is cancelled, queued device lines are flushed and the serial
link closed.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from types import FrameType
from typing import Any, NoReturn

import uvicorn

# Production event loop; a missing install fails at startup.
import uvloop

from . import __version__
from .config.logging import configure_logging
from .config.settings import RuntimeConfig, get_config_source, load_runtime_config
from .errors import ConfigError, SerialOpenError
from .hub import BroadcastHub
from .metrics import RelayMetrics
from .services.relay import RelayService
from .services.task_supervisor import supervise_task
from .transport.serial import SerialBridge, open_serial_bridge
from .web.app import create_app

logger = logging.getLogger("serialchat")


class RelayServer(uvicorn.Server):
    """uvicorn server that signals event streams before draining connections."""

    def __init__(self, config: uvicorn.Config, shutdown: asyncio.Event) -> None:
        super().__init__(config)
        self._shutdown = shutdown
        self._loop: asyncio.AbstractEventLoop | None = None

    async def serve(self, sockets: Any = None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        if not self._shutdown.is_set():
            logger.info("Shutdown requested (signal %s)", sig)
            if self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._shutdown.set)
            else:
                self._shutdown.set()
        super().handle_exit(sig, frame)


class RelayDaemon:
    """Composition root: owns the hub, the serial bridge and the web server."""

    def __init__(self, config: RuntimeConfig) -> None:
        self.config = config
        self.metrics = RelayMetrics()
        self.hub = BroadcastHub(config.hub_capacity)
        self.metrics.bind_hub(self.hub)
        self.shutdown = asyncio.Event()
        self.bridge: SerialBridge | None = None

    def build_server(self, relay: RelayService) -> RelayServer:
        app = create_app(relay, self.shutdown, self.config, self.metrics)
        server_config = uvicorn.Config(
            app,
            host=self.config.http_host,
            port=self.config.http_port,
            log_config=None,
            lifespan="on",
        )
        return RelayServer(server_config, self.shutdown)

    async def run(self) -> None:
        """Open the device, then serve until a shutdown signal arrives."""
        # SerialOpenError propagates: nothing is served without the device.
        self.bridge = await open_serial_bridge(self.config, self.hub, self.metrics)
        relay = RelayService(self.hub, self.bridge, self.config, self.metrics)
        server = self.build_server(relay)

        try:
            async with asyncio.TaskGroup() as task_group:
                poll_task = task_group.create_task(
                    supervise_task(
                        "serial-poll",
                        self.bridge.run,
                        metrics=self.metrics,
                    )
                )
                writer_task = task_group.create_task(
                    supervise_task(
                        "serial-write",
                        self.bridge.run_writer,
                        metrics=self.metrics,
                    )
                )
                await server.serve()
                poll_task.cancel()
                # Lines accepted before shutdown still get a chance to go out.
                await self.bridge.flush(self.config.serial_write_timeout)
                writer_task.cancel()
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            self.shutdown.set()
            self.hub.close()
            await self.bridge.close()
            logger.info("Serial chat relay stopped.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serialchat",
        description="Relay browser chat messages to and from a serial-attached board.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--serial-port", dest="serial_port", help="serial device path")
    parser.add_argument("--baud", dest="serial_baud", type=int, help="serial baud rate")
    parser.add_argument("--device-name", dest="device_name", help="identity of device messages")
    parser.add_argument("--host", dest="http_host", help="HTTP listen address")
    parser.add_argument("--port", dest="http_port", type=int, help="HTTP listen port")
    parser.add_argument("--static-dir", dest="static_dir", help="directory of the chat UI")
    parser.add_argument(
        "--debug",
        dest="debug",
        action="store_const",
        const="1",
        help="enable debug logging",
    )
    parser.add_argument(
        "--metrics",
        dest="metrics_enabled",
        action="store_const",
        const="1",
        help="expose Prometheus metrics on /metrics",
    )
    return parser


def parse_overrides(argv: Sequence[str] | None = None) -> dict[str, Any]:
    args = build_parser().parse_args(argv)
    return {key: value for key, value in vars(args).items() if value is not None}


def main(argv: Sequence[str] | None = None) -> NoReturn:
    overrides = parse_overrides(argv)
    try:
        config = load_runtime_config(overrides)
    except ConfigError as exc:
        build_parser().error(str(exc))
    configure_logging(config)

    logger.info(
        "Starting serial chat relay. Serial: %s@%d HTTP: %s:%d (config: %s)",
        config.serial_port,
        config.serial_baud,
        config.http_host,
        config.http_port,
        get_config_source(),
    )

    try:
        asyncio.run(RelayDaemon(config).run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except SerialOpenError as exc:
        logger.critical("Serial device unavailable; not serving: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Relay interrupted by user.")
        sys.exit(0)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during relay execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
