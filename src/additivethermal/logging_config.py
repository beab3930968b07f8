"""
Logging Configuration
Routes the 'additivethermal' loggers to stdout and, optionally, a run log file.
"""
import logging
import sys
from typing import Optional, Union

PACKAGE_LOGGER = "additivethermal"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# numba reports every compilation pass at DEBUG
QUIET_LOGGERS = ("numba",)


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configures the package logger used by the solver modules.

    Calling it again replaces the handlers of the previous call, so a driver
    script can switch the log file between runs.

    Args:
        level: Logging level, as a number or a name ("DEBUG", "info", ...).
        log_file: Optional path of a run log, overwritten on every call.

    Returns:
        The configured 'additivethermal' logger.
    """
    if isinstance(level, str):
        name, level = level, logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown logging level: {name}")

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S')

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger.debug(f"Logging initialized at level {logging.getLevelName(level)}"
                 + (f", writing to {log_file}" if log_file else ""))
    return logger
