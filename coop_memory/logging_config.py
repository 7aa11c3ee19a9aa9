"""Logging setup for coop_memory.

Two streams:
- the ``coop_memory`` logger, written to ``<log_dir>/local-<date>.log``
  (plus the console at DEBUG), which every module logs into via
  ``logging.getLogger(__name__)``;
- a one-line-per-event memory log, ``<log_dir>/memory-events-<date>.log``,
  that records writes, searches, reconciliation decisions and maintenance
  runs. Events are only written when a log directory is given.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from coop_memory.config import get_coop_home

LOGGER_NAME = "coop_memory"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

PathLike = Union[str, Path]


def _ensure_dir(log_dir: PathLike) -> Path:
    path = Path(log_dir).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_coop_logging(
    agent_id: str = "default",
    level: str = "INFO",
    log_dir: Optional[PathLike] = None,
) -> logging.Logger:
    """Configure the ``coop_memory`` logger.

    ``log_dir`` defaults to ``logs/`` under the data directory from the
    environment. Unknown level names fall back to INFO. Calling this twice
    does not add duplicate handlers.
    """
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(resolved)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        directory = _ensure_dir(log_dir if log_dir is not None else get_coop_home() / "logs")
        file_handler = logging.FileHandler(directory / f"local-{_today()}.log", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug(f"Logging configured for agent={agent_id} level={logging.getLevelName(resolved)}")
    return logger


def log_memory_event(
    event_type: str,
    details: str,
    agent_id: str = "default",
    log_dir: Optional[PathLike] = None,
) -> None:
    """Append one line to today's memory-events log in ``log_dir``.

    No-op without a directory. Never raises.
    """
    if log_dir is None:
        return
    try:
        path = _ensure_dir(log_dir) / f"memory-events-{_today()}.log"
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} | {event_type} | agent={agent_id} | {details}\n")
    except OSError as e:
        logging.getLogger(LOGGER_NAME).debug(f"Could not write memory event: {e}")


def log_write(
    agent_id: str,
    outcome: str,
    obs_id: Optional[int],
    title: str,
    log_dir: Optional[PathLike] = None,
) -> None:
    summary = title[:60] + "..." if len(title) > 60 else title
    log_memory_event(
        "write",
        f"outcome={outcome}, id={obs_id}, title={summary}",
        agent_id=agent_id,
        log_dir=log_dir,
    )


def log_search(
    agent_id: str,
    query: Optional[str],
    results: int,
    vector: bool,
    log_dir: Optional[PathLike] = None,
) -> None:
    log_memory_event(
        "search",
        f"query={query or ''!r}, results={results}, vector={vector}",
        agent_id=agent_id,
        log_dir=log_dir,
    )


def log_reconcile(
    agent_id: str, decision: str, candidates: int, log_dir: Optional[PathLike] = None
) -> None:
    log_memory_event(
        "reconcile",
        f"decision={decision}, candidates={candidates}",
        agent_id=agent_id,
        log_dir=log_dir,
    )


def log_maintenance(
    agent_id: str,
    compressed: int,
    summaries: int,
    archived: int,
    archive_deleted: int,
    log_dir: Optional[PathLike] = None,
) -> None:
    log_memory_event(
        "maintenance",
        f"compressed={compressed}, summaries={summaries}, "
        f"archived={archived}, archive_deleted={archive_deleted}",
        agent_id=agent_id,
        log_dir=log_dir,
    )
