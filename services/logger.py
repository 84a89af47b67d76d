import logging
import sys
import os
from datetime import datetime

import services.util as u

# ANSI colour codes per level tag
COLORS = {
    'DBG': '\033[36m',
    'INF': '\033[32m',
    'WRN': '\033[33m',
    'ERR': '\033[31m',
    'CRT': '\033[91m\033[1m',
    'RST': '\033[0m'
}

IS_TTY = sys.stdout.isatty()

# Log files go to $BRIDGE_LOG_PATH (default "logs"), one file per run:
# 20250915-150316060.log
LOG_DIR = u.get_log_path()
os.makedirs(LOG_DIR, exist_ok=True)
_log_filename = datetime.now().strftime("%Y%m%d-%H%M%S%f")[:-3] + ".log"
LOG_FILE_PATH = os.path.join(LOG_DIR, _log_filename)

# Config keys whose values are credentials.  Matched as substrings against
# lower-cased key names.
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "password", "webhook_url")

# Sensitive strings to redact from all log output.
_sensitive: set[str] = set()


def register_sensitive(values: frozenset[str]) -> None:
    """Register secret strings that must never appear in log output."""
    _sensitive.clear()
    # Skip values shorter than 8 chars to avoid masking common substrings
    _sensitive.update(v for v in values if len(v) >= 8)


def _collect_sensitive(obj, found: set[str]) -> None:
    if isinstance(obj, dict):
        for k, v in obj.items():
            if isinstance(v, str) and v and any(p in k.lower() for p in _SENSITIVE_KEY_PATTERNS):
                found.add(v)
            else:
                _collect_sensitive(v, found)
    elif isinstance(obj, list):
        for item in obj:
            _collect_sensitive(item, found)


def register_sensitive_config(config: dict) -> int:
    """Walk a raw config dict and mask every credential value found in it.

    Returns the number of values registered.
    """
    found: set[str] = set()
    _collect_sensitive(config, found)
    register_sensitive(frozenset(found))
    return len(_sensitive)


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
            colored_level = COLORS[color_key] + level + COLORS['RST']
        else:
            colored_level = level

        try:
            file = os.path.relpath(record.pathname)
        except Exception:
            file = record.pathname

        return f"{timestamp} {colored_level} | {file}:{record.lineno} | {record.getMessage()}"


logger = logging.getLogger('mmbridge')
logger.setLevel(logging.DEBUG)
logger.addFilter(MaskingFilter())

# Drop handlers left over from a previous import
if logger.handlers:
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
logger.propagate = False

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(CustomFormatter())
console_handler.setLevel(logging.DEBUG if u.get_env('BRIDGE_DEBUG') else logging.INFO)
logger.addHandler(console_handler)

# The file always gets everything from DEBUG up
file_handler = logging.FileHandler(LOG_FILE_PATH, encoding='utf-8')
file_handler.setFormatter(logging.Formatter(
    '[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
file_handler.setLevel(logging.DEBUG)
logger.addHandler(file_handler)


def get_logger(name=None):
    """Return the shared bridge logger."""
    return logger
