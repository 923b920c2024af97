"""
Loguru setup for the lending service.

Every record carries the service name. Records written inside ``trace_context``
also carry the request's trace id, and fields bound with ``logger.bind`` or
passed as keyword arguments (loan ids, amounts, users) are emitted as
top-level JSON keys.
"""

import json
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from loguru import logger

from cryptolend.config import MonitoringSettings, settings

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
)

FILE_ROTATION = "100 MB"
FILE_RETENTION = "7 days"


def record_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a loguru record into the JSON document we ship."""
    payload = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "service": settings.service_name,
        "message": record["message"],
        "source": f"{record['name']}:{record['function']}:{record['line']}",
    }
    payload.update(
        (key, value) for key, value in record["extra"].items() if key not in payload
    )

    error = record["exception"]
    if error is not None and error.type is not None:
        payload["exception"] = {"type": error.type.__name__, "value": str(error.value)}
    return payload


def serialize(record: Dict[str, Any]) -> str:
    line = json.dumps(record_payload(record), default=str)
    # loguru formats the returned string once more
    return line.replace("{", "{{").replace("}", "}}") + "\n"


def format_text(record: Dict[str, Any]) -> str:
    template = TEXT_FORMAT
    if "trace_id" in record["extra"]:
        template += " | <yellow>{extra[trace_id]}</yellow>"
    template += " - <level>{message}</level>\n"
    if record["exception"] is not None:
        template += "{exception}\n"
    return template


def sink_options(monitoring: MonitoringSettings) -> List[Dict[str, Any]]:
    """Keyword arguments for each ``logger.add`` call the settings ask for."""
    common = {"level": monitoring.log_level, "backtrace": True, "diagnose": False}

    if monitoring.log_format == "json":
        sinks = [{"sink": sys.stdout, "format": serialize, **common}]
    else:
        sinks = [{"sink": sys.stdout, "format": format_text, "colorize": True, **common}]

    # The file always gets JSON, whatever the console shows
    if monitoring.log_file:
        sinks.append({
            "sink": monitoring.log_file,
            "format": serialize,
            "rotation": FILE_ROTATION,
            "retention": FILE_RETENTION,
            "compression": "gz",
            **common,
        })
    return sinks


def configure_logging(monitoring: Optional[MonitoringSettings] = None) -> List[int]:
    """Replace every loguru handler with the configured sinks and return their ids."""
    monitoring = monitoring or settings.monitoring

    logger.remove()
    handler_ids = [logger.add(**options) for options in sink_options(monitoring)]

    logger.info(
        "Logging configured",
        environment=settings.environment.value,
        log_level=monitoring.log_level,
        log_format=monitoring.log_format,
        log_file=monitoring.log_file,
    )
    return handler_ids


@contextmanager
def trace_context(trace_id: Optional[str] = None):
    """Tag every record logged inside the block with one trace id."""
    trace_id = trace_id or str(uuid.uuid4())
    with logger.contextualize(trace_id=trace_id):
        yield trace_id


def get_logger(name: str):
    return logger.bind(component=name)


configure_logging()


__all__ = ["logger", "get_logger", "trace_context", "configure_logging"]
