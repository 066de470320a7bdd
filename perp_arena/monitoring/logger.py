"""
Structured logging setup for the arena simulation.

Uses structlog for JSON-formatted context-aware logging. Every event of a
run carries the run's identity (asset, clock mode, seed) through structlog
contextvars, and a run can write to its own rotating file under a log
directory.
"""
import structlog
import logging
import sys
from pathlib import Path
from typing import Optional


def run_log_file(log_dir: str, asset: str, fast: bool, seed: Optional[int]) -> str:
    """Per-run log path, e.g. logs/arena-mon-fast-seed7.log."""
    mode = "fast" if fast else "live"
    seed_part = f"seed{seed}" if seed is not None else "unseeded"
    return str(Path(log_dir) / f"arena-{asset.lower()}-{mode}-{seed_part}.log")


def bind_run_context(asset: str, fast: bool, seed: Optional[int]) -> dict:
    """Tag every subsequent event with the run identity."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        run_asset=asset,
        run_clock="sim" if fast else "wall",
        run_seed=seed,
    )
    return structlog.contextvars.get_contextvars()


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: Format (json or text)
        log_file: Optional log file path, usually from run_log_file()
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # Repeated runs in one process reuse the file without stacking handlers
        for handler in list(logging.root.handlers):
            if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == log_path.resolve():
                logging.root.removeHandler(handler)
                handler.close()
        file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)

        get_logger(__name__).info("Logging initialized", log_file=str(log_file), log_level=log_level)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)
