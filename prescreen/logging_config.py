"""
Structured logging configuration.

Called once from create_app(). LOG_FORMAT picks text or JSON output,
LOG_LEVEL the level (default INFO).

Pipeline code logs lead and batch ids only. The handler also carries a
redaction filter that masks anything shaped like an SSN, in case a remote
error body echoes one back.
"""
import json
import logging
import os
import re
import sys
from datetime import datetime, timezone

SSN_PATTERN = re.compile(r'\b(?:\d{3}-\d{2}-|\d{5})(\d{4})\b')


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


class PiiRedactingFilter(logging.Filter):
    """Rewrites SSN-shaped digits in the rendered message to XXX-XX-1234."""

    def filter(self, record):
        message = record.getMessage()
        redacted = SSN_PATTERN.sub(r'XXX-XX-\1', message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'requests',
    'sqlalchemy.engine',
    'werkzeug',
    'alembic',
]


def configure_logging(app=None):
    """
    Set up the root logger from LOG_LEVEL / LOG_FORMAT.

    Safe to call more than once: existing root handlers are replaced.
    """
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(PiiRedactingFilter())

    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
