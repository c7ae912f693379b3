from __future__ import annotations

import json
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

from btrfs_replicator.storage.exceptions import ConfigurationError

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <12}</cyan> | "
    "<blue>{extra[job_id]: <20}</blue> | "
    "{message}"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]: <12} | "
    "{extra[job_id]: <20} | "
    "{message}"
)

DEFAULT_EXTRA: dict[str, Any] = {"job_id": "-", "tags": [], "source": "app"}

_STREAM_SINKS = {"stderr": sys.stderr, "stdout": sys.stdout}


def resolve_console_level(verbose: int = 0, debug: bool = False) -> str:
    """Map the ``-v`` count and ``--debug`` flag to a loguru level name."""
    if verbose >= 2:
        return "TRACE"
    if verbose == 1 or debug:
        return "DEBUG"
    return "INFO"


def load_log_config(path: Path) -> dict[str, Any]:
    """
    Read a JSON logging configuration for ``logger.configure``.

    The document has the shape ``{"handlers": [...], "extra": {...}}``. Each
    handler is a mapping of ``logger.add`` keyword arguments; its ``sink``
    may be ``"stderr"``, ``"stdout"`` or a file path.

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigurationError(str(path), error.strerror or str(error)) from error
    except json.JSONDecodeError as error:
        raise ConfigurationError(str(path), f"invalid JSON: {error}") from error

    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be an object")
    handlers = data.get("handlers")
    if not isinstance(handlers, list) or not handlers:
        raise ConfigurationError(str(path), "'handlers' must be a non-empty list")

    resolved = []
    for index, handler in enumerate(handlers):
        if not isinstance(handler, dict) or "sink" not in handler:
            raise ConfigurationError(str(path), f"handler #{index} has no sink")
        handler = dict(handler)
        sink = handler["sink"]
        if not isinstance(sink, str):
            raise ConfigurationError(str(path), f"handler #{index} sink must be a string")
        handler["sink"] = _STREAM_SINKS.get(sink, sink)
        resolved.append(handler)

    extra = dict(DEFAULT_EXTRA)
    extra.update(data.get("extra") or {})
    return {"handlers": resolved, "extra": extra}


def setup_logging(
    *,
    verbose: int = 0,
    debug: bool = False,
    log_config: Path | None = None,
) -> Logger:
    """
    Configure loguru sinks for a replication run.

    Without ``log_config`` a single colourised stderr sink is installed whose
    level follows the verbosity:

    - INFO: phases, transfers, dry-run actions, warnings
    - DEBUG (``-v`` or ``--debug``): every external command and its outcome
    - TRACE (``-vv``): command output

    With ``log_config`` the handlers from that JSON file replace the default
    console sink entirely.

    Args:
        verbose: Number of ``-v`` flags given
        debug: Enable DEBUG level and loguru backtrace/diagnose output
        log_config: Optional JSON handler configuration

    Raises:
        ConfigurationError: If ``log_config`` cannot be loaded
    """
    if log_config is not None:
        config = load_log_config(log_config)
        logger.remove()
        logger.configure(**config)
        return logger

    logger.remove()
    logger.configure(extra=dict(DEFAULT_EXTRA))
    logger.add(
        sys.stderr,
        level=resolve_console_level(verbose, debug),
        backtrace=debug,
        diagnose=debug,
        colorize=None,
        format=CONSOLE_FORMAT,
    )
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a run
        tags: Tags for filtering (e.g., ["btrfs", "send"])
        source: Source component (e.g., "mount", "fstab")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str) -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion and failure with the elapsed time. The
    exception, if any, is re-raised.

    Example:
        with operation_context("replicate", source_path="/mnt/a", destination_path="/mnt/b") as log:
            log.debug("Locating volumes")
    """
    job_id = new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.bind(**details).info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source and
    tags of one component of the replicator.
    """

    @staticmethod
    def for_replication(job_id: str | None = None, **details) -> Logger:
        """Logger for the replication executor."""
        if job_id is None:
            job_id = new_job_id("replicate")
        return logger.bind(
            job_id=job_id, source="replicate", tags=["replicate", "btrfs"], **details
        )

    @staticmethod
    def for_btrfs() -> Logger:
        """Logger for btrfs tool invocations."""
        return logger.bind(source="btrfs", tags=["btrfs", "command"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount table queries and remounts."""
        return logger.bind(source="mount", tags=["mount"])

    @staticmethod
    def for_fstab() -> Logger:
        """Logger for mount configuration patching."""
        return logger.bind(source="fstab", tags=["fstab", "config"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for process-level events (startup, arguments, exit)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Keeps the ``event_type`` field and the field names of the common
    replication events consistent across the code base. Fields are bound as
    extra context rather than passed as format arguments, since messages
    carry paths and tool output.
    """

    @staticmethod
    def log_transfer_started(
        log: Logger, subvolume: str, mode: str, parent: str | None = None, **extra
    ) -> None:
        """Log the start of one subvolume transfer."""
        label = f"{mode} from {parent}" if parent else mode
        log.bind(
            event_type="transfer_started",
            subvolume=subvolume,
            transfer_mode=mode,
            parent=parent,
            **extra,
        ).info(f"Transferring {subvolume} ({label})")

    @staticmethod
    def log_step_failed(log: Logger, step: str, target: str, message: str, **extra) -> None:
        """Log a non-fatal step failure."""
        log.bind(
            event_type="step_failed",
            step=step,
            target=target,
            **extra,
        ).warning(f"{step} failed for {target}: {message}")

    @staticmethod
    def log_run_summary(
        log: Logger, attempted: int, failed: int, full: int, incremental: int, **extra
    ) -> None:
        """Log the end-of-run summary."""
        level = "WARNING" if failed else "INFO"
        log.bind(
            event_type="run_summary",
            steps_attempted=attempted,
            steps_failed=failed,
            full_transfers=full,
            incremental_transfers=incremental,
            **extra,
        ).log(
            level,
            f"Replication finished: {attempted} steps, {failed} failed, "
            f"{full} full and {incremental} incremental transfers",
        )
