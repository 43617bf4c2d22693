"""
goveed Logging Configuration

structlog on top of stdlib logging. The daemon logs JSON unless running at
DEBUG, optionally mirrors records to a JSON file, and never writes the
cloud API key to either.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

SECRET_KEYS = frozenset({"api_key", "govee-api-key", "authorization"})
REDACTED = "***"

# Per-request chatter from the HTTP stack
NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor that masks credential fields (including nested header dicts)"""
    for key, value in list(event_dict.items()):
        if key.lower() in SECRET_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if isinstance(k, str) and k.lower() in SECRET_KEYS and v else v
                for k, v in value.items()
            }
    return event_dict


def setup_logging(
    log_level: str = "INFO", json_logs: bool = False, log_file: Optional[str] = None
) -> None:
    """
    Configure daemon logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: JSON lines on stdout instead of the colored console renderer
        log_file: Optional path for an additional JSON log file
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(get_file_handler(log_file, log_level))
    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    if json_logs:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
        )
    else:
        processors.extend(
            [
                structlog.processors.ExceptionRenderer(),
                structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, numeric_level))


def get_file_handler(log_file: str, log_level: str = "INFO") -> logging.FileHandler:
    """
    JSON file handler for the daemon log

    Each line carries timestamp, level, logger and message.
    """
    handler = logging.FileHandler(log_file)
    handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    return handler
