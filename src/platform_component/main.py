"""
Platform component entrypoint.

CLI:
  platform-component run   -> register, connect, heartbeat until SIGINT/SIGTERM
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from platform_component.config import package_version

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    shutdown: threading.Event
    component: Optional[object] = None
    log_handler: Optional[logging.Handler] = None


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_component() -> int:
    """
    Runtime mode: register, start, block until shutdown, stop.
    Returns process exit code.
    """
    from platform_component.component import Component
    from platform_component.config import ConfigError, load_config
    from platform_component.errors import PlatformComponentError
    from platform_component.log_sink import install_bus_logging

    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    rt = Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("Platform Component")
    logger.info("Version: %s", cfg.version)
    logger.info("Type: %s", cfg.component_type)
    logger.info("============================================================")

    component = Component(cfg.component_type)
    rt.component = component

    try:
        component.register(cfg.token, url=cfg.url)
    except PlatformComponentError as exc:
        logger.error("failed to register platform component: %s", exc)
        return 1

    try:
        component.start(rt.shutdown)
    except PlatformComponentError as exc:
        logger.error("failed to start platform component: %s", exc)
        return 1

    if cfg.bus_logs:
        rt.log_handler = install_bus_logging(component.connection, cfg.component_type)

    logger.info("Component running (shutdown via SIGINT/SIGTERM)")

    try:
        while not rt.shutdown.is_set():
            rt.shutdown.wait(0.5)
    finally:
        code = _shutdown(rt)

    return code


def _shutdown(rt: Runtime) -> int:
    from platform_component.errors import PlatformComponentError
    from platform_component.log_sink import uninstall_bus_logging

    logger.info("Shutting down...")

    # Detach bus logging first, its connection is about to be drained
    if rt.log_handler is not None:
        uninstall_bus_logging(rt.log_handler)
        rt.log_handler = None

    if rt.component is None:
        return 0
    try:
        rt.component.stop()
    except PlatformComponentError as exc:
        logger.error("Error stopping platform component: %s", exc)
        return 1
    logger.info("Platform component stopped")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="platform-component")
    p.add_argument("--version", action="version", version=package_version())

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Register with the control plane and run until signalled")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    if args.cmd == "run":
        from platform_component.log_config import configure_logging

        configure_logging()
        raise SystemExit(run_component())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
