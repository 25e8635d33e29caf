"""
Console logging setup.

Coloured level tags for terminal log output, built on colorama so they
render on Windows consoles as well.
"""

import logging
import sys
from typing import Optional, TextIO

from colorama import Fore, Style, init as colorama_init


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LEVEL_COLORS = {
    logging.DEBUG: Fore.CYAN,
    logging.INFO: Fore.BLUE,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}

LEVEL_TAGS = {
    logging.DEBUG: "[.]",
    logging.INFO: "[i]",
    logging.WARNING: "[!]",
    logging.ERROR: "[✗]",
    logging.CRITICAL: "[✗]",
}


class ColoredFormatter(logging.Formatter):
    """Formatter that prefixes each record with a coloured level tag."""

    def __init__(self, fmt: str = LOG_FORMAT, use_colors: bool = True):
        super().__init__(fmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        tag = LEVEL_TAGS.get(record.levelno, "[?]")
        if not self.use_colors:
            return f"{tag} {message}"
        color = LEVEL_COLORS.get(record.levelno, "")
        return f"{color}{tag} {message}{Style.RESET_ALL}"


def setup_logging(level: int = logging.INFO,
                  use_colors: bool = True,
                  stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Attach a coloured stream handler to the ``hostprobe`` logger.

    Calling it again replaces the handler installed by a previous call.

    Args:
        level: Logging level for the package logger
        use_colors: Disable for log files or dumb terminals
        stream: Output stream (stderr by default)

    Returns:
        The installed handler
    """
    colorama_init()

    package_logger = logging.getLogger("hostprobe")
    for handler in list(package_logger.handlers):
        if getattr(handler, "_hostprobe_console", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    handler._hostprobe_console = True
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return handler


__all__ = [
    'ColoredFormatter',
    'setup_logging',
    'LOG_FORMAT',
]
