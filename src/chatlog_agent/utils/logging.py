"""Per-run log files for the chat-log agent.

Every CLI invocation logs to its own ``run-<run id>.log`` in the log directory,
and each line carries the run id so interleaved console output can be matched
to the file. Only the newest ``keep_runs`` run logs are kept.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from datetime import datetime
from pathlib import Path

__all__ = ["LOG_DIR_ENV", "RunIdFilter", "setup_logging"]

LOG_DIR_ENV = "CHATLOG_AGENT_LOG_DIR"
_DEFAULT_LOG_DIR = Path.home() / ".chatlog_agent" / "logs"
_RUN_LOG_PREFIX = "run-"
_LINE_FORMAT = "%(asctime)s %(levelname)-7s [%(run_id)s] %(name)s: %(message)s"
_TRANSPORT_LOGGERS = ("httpx", "httpcore", "openai")

_active_log: Path | None = None


class RunIdFilter(logging.Filter):
    """Stamps ``run_id`` onto every record passing through a handler."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    run_id: str | None = None,
    console: bool = True,
    keep_runs: int = 10,
    max_bytes: int = 2_000_000,
    force: bool = False,
) -> Path:
    """Start a run log and route root logging to it.

    Args:
        level: Root level; the console handler shares it.
        log_dir: Directory for run logs. Defaults to ``$CHATLOG_AGENT_LOG_DIR``
            and then ``~/.chatlog_agent/logs``.
        run_id: Identifier used in the file name and on every line. Defaults to
            a timestamp plus the process id.
        console: Also log to stderr.
        keep_runs: Run logs to keep, the new one included.
        max_bytes: Size at which a single run log rolls over once.
        force: Start a new run log even if one is already active.

    Returns:
        Path of the active run log.
    """

    global _active_log
    if _active_log is not None and not force:
        return _active_log

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    run_id = run_id or f"{datetime.now():%Y%m%d-%H%M%S}-{os.getpid()}"
    log_path = directory / f"{_RUN_LOG_PREFIX}{run_id}.log"
    prune_failures = _prune_run_logs(directory, keep=max(keep_runs - 1, 0))

    run_filter = RunIdFilter(run_id)
    formatter = logging.Formatter(_LINE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=1, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.addFilter(run_filter)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    # httpx and openai log every request at INFO.
    for name in _TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(__name__)
    for stale, exc in prune_failures:
        logger.warning("Could not remove old run log %s: %s", stale, exc)
    logger.debug("Run %s logging to %s", run_id, log_path)

    _active_log = log_path
    return log_path


def _prune_run_logs(directory: Path, *, keep: int) -> list[tuple[Path, OSError]]:
    runs = sorted(
        directory.glob(f"{_RUN_LOG_PREFIX}*.log"),
        key=lambda path: path.stat().st_mtime,
        reverse=True,
    )
    failures: list[tuple[Path, OSError]] = []
    for stale in runs[keep:]:
        for path in (stale, stale.with_name(stale.name + ".1")):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                failures.append((path, exc))
    return failures
