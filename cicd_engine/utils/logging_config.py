import logging
import sys
import os
from datetime import datetime
from typing import Optional

class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to console output."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno)
        if not log_fmt:
            log_fmt = self.format_str
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)

# Chatty client libraries used by the deploy strategies and sinks
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "docker", "httpx", "httpcore")


def _env_level(default: int) -> int:
    name = os.getenv("LOG_LEVEL", "").upper()
    return getattr(logging, name, default) if name else default


def setup_logging(level: Optional[int] = None, log_dir: Optional[str] = None, to_file: Optional[bool] = None):
    """
    Configure the root logger for the engine and the HTTP server.

    Unset arguments come from LOG_LEVEL, LOG_DIR (default "logs") and
    LOG_TO_FILE (default true). One log file per day.
    """
    level = level if level is not None else _env_level(logging.INFO)
    log_dir = log_dir or os.getenv("LOG_DIR", "logs")
    if to_file is None:
        to_file = os.getenv("LOG_TO_FILE", "true").lower() not in ("0", "false", "no")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level)

    # stderr keeps uvicorn's own output interleaved correctly
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if to_file:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"engine_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(ColoredFormatter.format_str, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    for logger_name in ("cicd_engine", "uvicorn", "uvicorn.error", "uvicorn.access", "main"):
        named = logging.getLogger(logger_name)
        named.setLevel(level)
        named.propagate = True
    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(level, logging.WARNING))

    root_logger.info("Logging initialized | level=%s | file=%s",
                     logging.getLevelName(level), log_dir if to_file else "off")
