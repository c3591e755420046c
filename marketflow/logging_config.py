"""Logging setup for marketflow.

Modules log through ``logging.getLogger(__name__)``; this module only
installs a handler on the package logger when an application asks for it.
"""

import logging
from typing import Optional, Union

PACKAGE_LOGGER = "marketflow"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(
    level: Union[int, str, None] = None, handler: Optional[logging.Handler] = None
) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Calling it again replaces the level but does not stack handlers.
    """
    if level is None:
        from marketflow.config import get_settings

        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if handler is not None:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    elif not logger.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream)
    return logger
