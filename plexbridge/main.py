"""Main application entry point for the telephony-to-engine bridge."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from plexbridge import __version__
from plexbridge.config import SystemConfig, config
from plexbridge.server import run_server


def setup_logging(system: SystemConfig, log_to_file: bool = True) -> Optional[Path]:
    """Configure structlog on top of stdlib logging.

    Args:
        system: Log level, renderer and directory
        log_to_file: Also write a timestamped file under ``system.log_dir``

    Returns:
        Path of the log file, if one was opened
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file: Optional[Path] = None
    if log_to_file:
        log_dir = Path(system.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"plexbridge_{datetime.now():%Y%m%d_%H%M%S}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, system.log_level.upper(), logging.INFO),
        handlers=handlers,
        force=True
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if system.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return log_file


async def main() -> None:
    """Serve until SIGINT/SIGTERM (handled by uvicorn)."""
    await run_server(config)


def cli() -> None:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Bridge telephony media streams to a full-duplex speech engine"
    )
    parser.add_argument("--host", help="Listen address (default: SERVER_HOST)")
    parser.add_argument("--port", type=int, help="Listen port (default: SERVER_PORT)")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stdout only")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    args = parser.parse_args()

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.log_level:
        config.system.log_level = args.log_level

    log_file = setup_logging(config.system, log_to_file=not args.no_log_file)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Bridge starting",
        version=__version__,
        engine_url=config.engine.url,
        voice_prompt=config.engine.voice_prompt,
        log_file=str(log_file) if log_file else None
    )

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutdown complete")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)
    logger.info("Shutdown complete")


if __name__ == "__main__":
    cli()
