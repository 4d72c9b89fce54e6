"""
Logging configuration for the command-line runner.

Library modules only create loggers; handlers are installed here, by the
program embedding the flow:
- JSON lines on stderr (default), so runs can be piped into log tooling
- Plain text when LOG_FORMAT=text, for interactive use
"""

import json
import logging
import os
from datetime import UTC, datetime

# Attributes every LogRecord has; anything else came in through `extra=`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """
    Custom JSON log formatter.

    Emits one JSON object per record, merging the fields passed via
    ``extra=`` into the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A JSON string representing the log record.
        """
        log_object = {
            "timestamp": datetime.now(UTC).isoformat(),
            "severity": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_object:
                log_object[key] = value

        if record.exc_info:
            log_object["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_object, default=str)


def setup_global_logging(level: str | None = None) -> None:
    """
    Configure global logging.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    handler = logging.StreamHandler()
    if os.getenv("LOG_FORMAT", "json").lower() == "text":
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # uvicorn's error logger is chatty at INFO for a one-shot listener
    logging.getLogger("uvicorn.error").setLevel(max(root_logger.level, logging.WARNING))
