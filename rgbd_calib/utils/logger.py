"""
Logging for the calibration pipeline.

Every component logs under the ``rgbd_calib`` namespace, so one
``setup_logger()`` call in a script controls the whole pipeline. Solver
iterations and per-bin fits go to DEBUG, phase changes to INFO.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER = "rgbd_calib"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _qualified(name: str) -> str:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def setup_logger(
    name: str = ROOT_LOGGER,
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    console: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure a calibration logger, replacing any handler it already has.

    Args:
        name: Logger name, nested under ``rgbd_calib`` if needed.
        level: Level name (DEBUG, INFO, ...) or number.
        log_file: Also write to this file; parent directories are created.
        console: Log to stdout.
        format_string: Record format, defaults to ``LOG_FORMAT``.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(_qualified(name))
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(format_string or LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Get a logger of the calibration hierarchy.

    The ``rgbd_calib`` root gets a console handler on first use if no script
    configured it.
    """
    if not logging.getLogger(ROOT_LOGGER).handlers:
        setup_logger()
    return logging.getLogger(_qualified(name))


class LoggerMixin:
    """Gives a class a ``logger`` named after it."""

    @property
    def logger(self) -> logging.Logger:
        if "_logger" not in self.__dict__:
            self._logger = get_logger(type(self).__name__)
        return self._logger


class ProgressLogger:
    """
    Context manager reporting progress of a loop over bins, views or rows.

    Start and end are logged at INFO, intermediate steps at DEBUG every
    ``log_interval`` percent.
    """

    def __init__(
        self,
        total: int,
        logger: Optional[logging.Logger] = None,
        description: str = "Processing",
        log_interval: int = 10,
    ):
        self.total = max(total, 1)
        self.logger = logger or get_logger()
        self.description = description
        self.log_interval = log_interval

        self.done = 0
        self._next_pct = log_interval

    @property
    def percent(self) -> int:
        return int(100 * self.done / self.total)

    def update(self, n: int = 1) -> None:
        self.done += n
        if self.percent >= self._next_pct:
            self.logger.debug("%s: %d/%d (%d%%)", self.description, self.done, self.total, self.percent)
            self._next_pct = self.percent + self.log_interval

    def __enter__(self) -> "ProgressLogger":
        self.logger.info("%s: %d items", self.description, self.total)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.logger.info("%s: done", self.description)
        else:
            self.logger.error("%s: failed after %d/%d (%s)", self.description, self.done, self.total, exc_val)
