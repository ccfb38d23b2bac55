import json
import logging
import os
import hashlib
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, Any, Iterable, Optional

import structlog

from .config import get_settings

# Request-scoped fields copied from ``extra`` into every JSON line when present
CONTEXT_FIELDS = ('request_id', 'timeframe', 'chain', 'tier')

CORRECTIONS_LOGGER = 'corrections'


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per line: operation fields, request context, then the message."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "component": getattr(record, 'component', record.name),
            "operation": getattr(record, 'operation', record.funcName or 'unknown'),
            "params_hash": getattr(record, 'params_hash', ''),
            "status": getattr(record, 'status', 'info'),
            "duration_ms": getattr(record, 'duration_ms', 0),
            "error": getattr(record, 'error', ''),
        }
        for field in CONTEXT_FIELDS:
            data[field] = getattr(record, field, None)
        data["level"] = record.levelname
        data["message"] = record.getMessage()

        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
            data["status"] = "error"

        return json.dumps({k: v for k, v in data.items() if v != '' and v is not None})


def hash_params(params: Optional[Dict[str, Any]]) -> str:
    """Short stable digest so wallets are traceable across lines without being logged verbatim."""
    if not params:
        return ""
    params_str = json.dumps(params, sort_keys=True, default=str)
    return hashlib.md5(params_str.encode()).hexdigest()[:8]


def get_logger(name: str) -> "StructuredLogger":
    return StructuredLogger(logging.getLogger(name))


class StructuredLogger:
    """Wrapper around logger that adds structured logging methods"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log_operation(self,
                      operation: str,
                      params: Optional[Dict[str, Any]] = None,
                      status: str = "started",
                      duration_ms: int = 0,
                      error: str = "",
                      message: str = "",
                      context: Optional[Dict[str, Any]] = None) -> None:
        """Log one step of an operation.

        Args:
            operation: Operation name, e.g. ``get_historical_portfolio``
            params: Request parameters; only their hash is logged
            status: started, completed, error, ...
            duration_ms: Elapsed time for completed or failed steps
            error: Error text; switches the record to ERROR level
            message: Human readable message (a default is derived from the status)
            context: Request context (request_id, timeframe, chain, tier)
        """
        extra = {
            'component': self._logger.name,
            'operation': operation,
            'params_hash': hash_params(params),
            'status': status,
            'duration_ms': duration_ms,
            'error': error,
        }
        for field in CONTEXT_FIELDS:
            if context and context.get(field) is not None:
                extra[field] = context[field]

        if error:
            self._logger.error(message or f"Operation {operation} failed", extra=extra)
        else:
            self._logger.info(message or f"Operation {operation} {status}", extra=extra)

    def __getattr__(self, name):
        return getattr(self._logger, name)


def _configure_corrections_logger(log_dir: str) -> None:
    # Interpolation repairs go to their own file for later tuning of the thresholds
    corrections_logger = logging.getLogger(CORRECTIONS_LOGGER)
    for handler in list(corrections_logger.handlers):
        corrections_logger.removeHandler(handler)
        handler.close()

    corrections_handler = logging.FileHandler(os.path.join(log_dir, 'corrections.log'), encoding='utf-8')
    corrections_handler.setFormatter(StructuredJsonFormatter())
    corrections_logger.addHandler(corrections_handler)
    corrections_logger.setLevel(logging.INFO)
    corrections_logger.propagate = False


def setup_logging(log_dir: Optional[str] = None, log_level: Optional[str] = None) -> None:
    """Install JSON console and daily-rotating file handlers on the root logger.

    Args:
        log_dir: Directory for ``history_YYYYMMDD.log`` and ``corrections.log`` (LOG_DIR)
        log_level: Root level name (LOG_LEVEL)
    """
    if log_dir is None or log_level is None:
        settings = get_settings()
        log_dir = log_dir or settings.log_dir
        log_level = log_level or settings.log_level
    level = getattr(logging, log_level.upper(), logging.INFO)
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(console_handler)

    file_handler = TimedRotatingFileHandler(
        filename=os.path.join(log_dir, f"history_{datetime.now().strftime('%Y%m%d')}.log"),
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    file_handler.suffix = "%Y%m%d.log"
    file_handler.setLevel(level)
    file_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(file_handler)

    # Provider clients log through structlog; route them into the same handlers
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _configure_corrections_logger(log_dir)


def log_summary(component: str,
                wallet: str,
                points: int,
                duration_seconds: float,
                chains_with_data: Optional[Iterable[str]] = None,
                context: Optional[Dict[str, Any]] = None) -> None:
    """Log a summary line for one reconstructed history"""
    chains = ', '.join(chains_with_data or []) or 'none'
    get_logger(component).log_operation(
        operation="history_summary",
        params={"wallet": wallet},
        status="completed",
        duration_ms=int(duration_seconds * 1000),
        message=f"Reconstructed {points} data points for {wallet[:10]}... (chains: {chains})",
        context=context,
    )
