import logging
import os
import re
import sys
from typing import Any, Dict, List, Optional

LOGGER_NAME = "scan_lifecycle"

COLORS = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
    "light_black": "\033[90m",
    "light_cyan": "\033[96m",
    "bold": "\033[1m",
}

_ANSI = re.compile(r"\033\[[0-9;]+m")


class ColoredFormatter(logging.Formatter):
    """Colorizes the level name of each record."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["light_black"],
        logging.INFO: COLORS["green"],
        logging.WARNING: COLORS["yellow"],
        logging.ERROR: COLORS["red"],
        logging.CRITICAL: COLORS["bold"] + COLORS["red"],
    }

    def format(self, record):
        levelname = record.levelname
        message = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno, COLORS["reset"])
        return message.replace(levelname, f"{color}{levelname}{COLORS['reset']}", 1)


class PrettyLogger:
    """Wrapper around logging.Logger with helpers for CLI summaries."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def __getattr__(self, name):
        return getattr(self.logger, name)

    def success(self, msg, *args, **kwargs):
        self.logger.info(f"{COLORS['green']}{msg}{COLORS['reset']}", *args, **kwargs)

    def pretty_dict(self, data: Dict[str, Any], title: Optional[str] = None, level: str = "info"):
        """Log a (one level nested) dictionary, one key per line."""
        log = getattr(self.logger, level)
        if title:
            log(f"{COLORS['bold']}{title}{COLORS['reset']}")

        for key, value in data.items():
            formatted_key = f"{COLORS['cyan']}{key}{COLORS['reset']}"
            if isinstance(value, dict):
                log(f"  {formatted_key}:")
                for k, v in value.items():
                    log(f"    {COLORS['light_cyan']}{k}{COLORS['reset']}: {v}")
            elif isinstance(value, (list, tuple)):
                log(f"  {formatted_key}: {len(value)} item(s)")
            else:
                log(f"  {formatted_key}: {value}")

    def pretty_table(self, headers: List[str], rows: List[List[Any]], title: Optional[str] = None, level: str = "info"):
        if not rows:
            return
        log = getattr(self.logger, level)
        if title:
            log(f"{COLORS['bold']}{title}{COLORS['reset']}")

        col_widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                col_widths[i] = max(col_widths[i], len(_ANSI.sub("", str(cell))))

        log("  " + "  ".join(h.ljust(col_widths[i]) for i, h in enumerate(headers)))
        log("  " + "  ".join("-" * width for width in col_widths))
        for row in rows:
            log("  " + "  ".join(str(cell).ljust(col_widths[i]) for i, cell in enumerate(row)))


def setup_logger(log_level: str = "INFO", log_file: Optional[str] = None, enable_colors: bool = True) -> PrettyLogger:
    """Configure the package logger. Module loggers propagate into it.

    Handlers are rebuilt on every call so the console handler always writes
    to the current ``sys.stderr``.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    if enable_colors and sys.stderr.isatty():
        console_handler.setFormatter(ColoredFormatter(fmt, datefmt=datefmt))
    else:
        console_handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    logger.addHandler(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
        logger.addHandler(file_handler)

    return PrettyLogger(logger)
