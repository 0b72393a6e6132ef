"""
Structured JSON logging for the ledger.

Every log line is JSON with: timestamp, level, module, message and any of the
ledger extras (account_id, referral_code, error_code, event) passed via
``logger.info(..., extra={...})``.
"""
import json
import logging
import sys
from datetime import datetime, timezone

EXTRA_FIELDS = ("event", "account_id", "referral_code", "error_code")


class StructuredJsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.
    Call once at application startup before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root_logger.addHandler(handler)

    # SQL echo is controlled by the engine, keep the library quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
