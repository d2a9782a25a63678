"""Relay entrypoint. Loads config, starts the configured nodes, routes stdin to speakers."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from pathlib import Path

import yaml
from loguru import logger

from slackrelay import __version__
from slackrelay.config import Config, cfg, load_config_with_env
from slackrelay.core.errors import RelayConfigurationError
from slackrelay.gateway import LifecycleLogger, init_bus, registry, teardown_bus
from slackrelay.host import NodeHost


# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["slack_sdk", "slack_sdk.rtm_v2", "slack_sdk.web.async_client", "aiohttp"]


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru, keeping the origin name and line."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        msg = record.getMessage()
        logger.patch(
            lambda r: r.update(
                name=record.name,
                function=record.funcName,
                line=record.lineno,
            ),
        ).opt(exception=record.exc_info).log(level, msg)


def _intercept_logging(level: str) -> None:
    """Route third-party library logs (slack_sdk RTM and Web API) to loguru at level."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel(level)


def setup_logging(verbose: bool = False) -> None:
    """Configure loguru. Replace default logging.

    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO.
    slack_sdk's stdlib loggers are routed through the same sink.
    """
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan> | {message}"
        ),
    )
    _intercept_logging(level)


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path)
    cfg.reload(data)
    return cfg


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> None:
    # Daemon thread so a blocked readline never holds up shutdown
    def read() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=read, name="slackrelay-stdin", daemon=True).start()


async def _run(config_path: Path, config: Config) -> None:
    """Async run loop. Start nodes and serve until signalled."""
    loop = asyncio.get_running_loop()
    bus = init_bus()
    lifecycle = LifecycleLogger(bus) if config.log_lifecycle else None
    host = NodeHost(config, registry, bus)
    host.load()

    stop = asyncio.Event()
    reload_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    loop.add_signal_handler(signal.SIGHUP, reload_requested.set)

    inputs: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(loop, inputs)

    async def serve_inputs() -> None:
        while True:
            line = await inputs.get()
            if line is None:
                logger.debug("stdin closed; no more speaker input")
                return
            await host.dispatch(line)

    async def watch_reload() -> None:
        nonlocal host
        while True:
            await reload_requested.wait()
            reload_requested.clear()
            try:
                new_config = reload_config(config_path)
            except (RelayConfigurationError, yaml.YAMLError) as exc:
                logger.error("Config reload rejected, keeping current nodes: {}", exc)
                continue
            await host.close()
            host = NodeHost(new_config, registry, bus)
            host.load()
            logger.info("Config reloaded (SIGHUP)")

    tasks = [asyncio.create_task(serve_inputs()), asyncio.create_task(watch_reload())]
    try:
        await stop.wait()
    finally:
        logger.info("Relay shutting down")
        for task in tasks:
            task.cancel()
        await host.close()
        registry.close_all()
        if lifecycle is not None:
            lifecycle.close()
        teardown_bus()


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="slackrelay: fan Slack events out to many consumers")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.config.exists():
        logger.error("Config file not found: {}", args.config)
        sys.exit(1)

    try:
        config = reload_config(args.config)
    except (RelayConfigurationError, yaml.YAMLError) as exc:
        logger.error("Invalid config {}: {}", args.config, exc)
        sys.exit(1)
    logger.info("Config loaded from {}", args.config)

    asyncio.run(_run(args.config, config))


if __name__ == "__main__":
    main()
