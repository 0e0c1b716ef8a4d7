import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

TEXT_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s%(recovery_context)s'

# Extra attributes attached by log_recovery_operation, in output order
RECOVERY_FIELDS = ('session_id', 'module_id', 'phase', 'attempt', 'strategy', 'status', 'duration')

LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in RECOVERY_FIELDS
        if getattr(record, field, None) is not None
    }


class TextFormatter(logging.Formatter):
    """Plain text lines with recovery context appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        context = _record_context(record)
        record.recovery_context = (
            ' ' + ' '.join(f'{key}={value}' for key, value in context.items()) if context else ''
        )
        return super().format(record)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; recovery context becomes top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(_record_context(record))
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    structured: Optional[bool] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Install console and optional rotating file handlers on the root logger.

    MODREC_LOG_LEVEL, MODREC_LOG_FORMAT (``text`` or ``json``) and
    MODREC_LOG_FILE override the arguments when set.
    """
    env_level = os.getenv('MODREC_LOG_LEVEL', '').upper()
    if env_level in LEVELS:
        level = getattr(logging, env_level)
    if structured is None:
        structured = os.getenv('MODREC_LOG_FORMAT', 'text').lower() == 'json'
    if os.getenv('MODREC_LOG_FILE'):
        log_file = Path(os.environ['MODREC_LOG_FILE'])

    formatter: logging.Formatter = StructuredFormatter() if structured else TextFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def log_recovery_operation(
    logger: logging.Logger,
    operation: str,
    module_id: Optional[str] = None,
    session_id: Optional[str] = None,
    phase: Optional[str] = None,
    attempt: Optional[int] = None,
    strategy: Optional[str] = None,
    status: Optional[str] = None,
    duration: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    """Log a recovery event; only the context values that are set are attached."""
    extra = {
        'module_id': module_id,
        'session_id': session_id,
        'phase': phase,
        'attempt': attempt,
        'strategy': strategy,
        'status': status,
        'duration': duration,
    }
    logger.log(level, operation, extra={k: v for k, v in extra.items() if v is not None})
