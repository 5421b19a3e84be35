"""
Logging Setup
=============
One root configuration shared by the CLI and the API server:

    console  stderr, level name colored when attached to a terminal
    file     <log_dir>/release_gate_YYYYMMDD.log, plain text

Tool output (make, cargo, docker build, the probe) never goes through these
handlers; it is captured per stage under <log_dir>/<run_id>/.
"""
import logging
import os
import sys
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[31;1m",
}
_RESET = "\x1b[0m"

# third-party loggers that flood DEBUG output with HTTP chatter
_NOISY_LOGGERS = ("docker", "urllib3", "httpx", "httpcore")
_OWN_LOGGERS = ("release_gate", "main", "uvicorn", "uvicorn.error", "uvicorn.access")


class LevelColorFormatter(logging.Formatter):
    """Colors the whole line by log level."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = _LEVEL_COLORS.get(record.levelno)
        return f"{color}{line}{_RESET}" if color else line


def _console_handler(color: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    formatter_cls = LevelColorFormatter if color and sys.stderr.isatty() else logging.Formatter
    handler.setFormatter(formatter_cls(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(log_dir: str) -> logging.Handler:
    os.makedirs(log_dir, exist_ok=True)
    filename = f"release_gate_{datetime.now().strftime('%Y%m%d')}.log"
    handler = logging.FileHandler(os.path.join(log_dir, filename), encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(level=logging.INFO, log_dir: str = "logs", color: bool = True):
    """Install console + file handlers on the root logger, replacing any previous ones."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    root.setLevel(level)
    root.addHandler(_console_handler(color))
    root.addHandler(_file_handler(log_dir))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for name in _OWN_LOGGERS:
        own = logging.getLogger(name)
        own.setLevel(level)
        own.propagate = True

    root.info("Logging initialized (level=%s, log_dir=%s)", logging.getLevelName(level), log_dir)
