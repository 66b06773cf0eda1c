"""Centralized logging configuration for pydsm."""

import logging
import sys
from typing import Optional, Union

# Package root logger; library code never configures handlers itself
logger = logging.getLogger('pydsm')
logger.addHandler(logging.NullHandler())

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: Union[int, str] = logging.INFO,
    stream=None,
) -> logging.Handler:
    """Attach a console handler to the pydsm logger.

    Intended for scripts and notebooks; calling it twice replaces the
    previously attached console handler instead of duplicating output.

    Parameters
    ----------
    level : int or str
        Logging level for the handler and the package logger.
    stream : file-like, optional
        Output stream (default: ``sys.stdout``).

    Returns
    -------
    logging.Handler
        The installed handler.
    """
    for handler in list(logger.handlers):
        if getattr(handler, '_pydsm_console', False):
            logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    console_handler._pydsm_console = True

    logger.addHandler(console_handler)
    logger.setLevel(level)
    return console_handler


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance.

    Parameters
    ----------
    name : str, optional
        Logger name (typically __name__). If None, returns the package logger.

    Returns
    -------
    logging.Logger
        Logger in the ``pydsm`` hierarchy.
    """
    if not name:
        return logger
    if name == 'pydsm' or name.startswith('pydsm.'):
        return logging.getLogger(name)
    return logging.getLogger(f'pydsm.{name}')
