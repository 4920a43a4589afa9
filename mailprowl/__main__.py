"""Async entrypoint running one watcher per configured account.

Loads the INI configuration, configures logging, then hands every account
to a :class:`mailprowl.supervisor.Supervisor`. Shutdown is graceful on
SIGINT/SIGTERM: waits are cancelled, IDLE is ended with DONE and
connections logged out within a short grace period. A second signal forces
exit.

Examples:
    python -m mailprowl
    python -m mailprowl -c /etc/mailprowl.ini --verbose
    python -m mailprowl --check-config
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import List, Optional

from . import __version__
from .asyncio import run_async
from .config import AppConfig, load_config
from .errors import ConfigurationError
from .logging_utils import configure_logging
from .notifier import Notifier
from .supervisor import DEFAULT_GRACE, Supervisor
from .watcher import Watcher

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    """Create the top-level parser."""
    p = argparse.ArgumentParser(description="Send push notifications for new IMAP mail.")
    p.add_argument(
        "-c", "--config",
        help="Path to the INI configuration (default: $MAILPROWL_CONFIG or ./config.ini)",
    )
    p.add_argument("--verbose", action="store_true", help="Verbose logging (DEBUG level)")
    p.add_argument(
        "--tick",
        type=float,
        help="Supervisor check interval in seconds (overrides [general] tick)",
    )
    p.add_argument(
        "--grace",
        type=float,
        default=DEFAULT_GRACE,
        help="Seconds to wait for IDLE/LOGOUT on shutdown (default: 5)",
    )
    p.add_argument(
        "--check-config", action="store_true",
        help="Validate the configuration and exit",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def build_watchers(config: AppConfig) -> List[Watcher]:
    notifier = Notifier(
        api_key=config.api_key,
        endpoint=config.endpoint,
        proxy=config.proxy,
        proxy_user=config.proxy_user,
        proxy_password=config.proxy_password,
    )
    return [Watcher(account, notifier) for account in config.accounts]


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    """Run the supervisor until SIGINT/SIGTERM.

    Returns:
        Exit status code (0 on normal shutdown).
    """
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    interrupt_state = {"count": 0}

    def _sig_handler() -> None:  # first Ctrl+C
        interrupt_state["count"] += 1
        if interrupt_state["count"] == 1:
            stop_event.set()
            logger.info("Graceful shutdown requested (Ctrl+C again to force)")
        else:
            logger.error("Forced exit triggered")
            os._exit(1)

    for sig in (signal.SIGINT, signal.SIGTERM):  # pragma: no cover for signals
        try:
            loop.add_signal_handler(sig, _sig_handler)
        except NotImplementedError:
            pass

    tick = args.tick if args.tick else config.tick
    supervisor = Supervisor(build_watchers(config), tick=tick, grace=args.grace)
    logger.info("Watching %d account(s); supervisor tick %ss", len(config.enabled_accounts), tick)
    await supervisor.run(stop_event)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for module execution.

    Configuration errors are fatal: they are logged and the process exits
    with status 2 before any watcher starts.
    """
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        configure_logging(verbose=args.verbose)
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    configure_logging(verbose=args.verbose or config.debug, log_dir=config.log_dir)
    if args.check_config:
        logger.info("Configuration OK: %d account(s)", len(config.accounts))
        return 0
    return run_async(_run(config, args))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
