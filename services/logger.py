import logging
import sys
import os
from datetime import datetime

# ANSI color codes
COLORS = {
    'DBG': '\033[36m',   # cyan
    'INF': '\033[32m',   # green
    'WRN': '\033[33m',   # yellow
    'ERR': '\033[31m',   # red
    'CRT': '\033[91m\033[1m',  # bold bright red
    'RST': '\033[0m'
}

IS_TTY = sys.stdout.isatty()

# BRIDGE_LOG_PATH="" disables the debug log file entirely.
LOG_DIR = os.environ.get("BRIDGE_LOG_PATH", "logs")
CONSOLE_LEVEL = os.environ.get("BRIDGE_LOG_LEVEL", "INFO").upper()


# Secrets to redact from all log output, filled by register_sensitive()
# once the config has been loaded.
_sensitive: set[str] = set()


def register_sensitive(values: frozenset[str]) -> None:
    """Register secret strings that must never appear in log output."""
    _sensitive.clear()
    # Short values would mask common substrings
    _sensitive.update(v for v in values if len(v) >= 8)


class MaskingFilter(logging.Filter):
    """Redacts sensitive values from every log record before emission."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _sensitive:
            msg = record.getMessage()
            for secret in _sensitive:
                if secret in msg:
                    msg = msg.replace(secret, "***")
            record.msg = msg
            record.args = ()
        return True


class CustomFormatter(logging.Formatter):
    replaces = {
        'DEBUG': '[DBG]',
        'INFO': '[INF]',
        'WARNING': '[WRN]',
        'ERROR': '[ERR]',
        'CRITICAL': '[CRT]'
    }

    def format(self, record):
        timestamp = datetime.now().strftime('[%Y-%m-%d %H:%M:%S]')
        level = self.replaces.get(record.levelname, f'[{record.levelname}]')
        color_key = level[1:4]

        if IS_TTY and color_key in COLORS:
            level = COLORS[color_key] + level + COLORS['RST']

        try:
            file = os.path.relpath(record.pathname)
        except ValueError:
            file = record.pathname

        text = f"{timestamp} {level} | {file}:{record.lineno} | {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


logger = logging.getLogger('segbridge')
logger.setLevel(logging.DEBUG)
logger.addFilter(MaskingFilter())

if logger.handlers:
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
logger.propagate = False

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(CustomFormatter())
console_handler.setLevel(getattr(logging, CONSOLE_LEVEL, logging.INFO))
logger.addHandler(console_handler)

if LOG_DIR:
    os.makedirs(LOG_DIR, exist_ok=True)
    # e.g. 20250915-150316061.log, millisecond precision
    _log_filename = datetime.now().strftime("%Y%m%d-%H%M%S%f")[:-3] + ".log"
    LOG_FILE_PATH = os.path.join(LOG_DIR, _log_filename)

    file_handler = logging.FileHandler(LOG_FILE_PATH, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    file_handler.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)


def get_logger(name=None):
    """Return the shared bridge logger (one instance for the whole process)."""
    return logger
