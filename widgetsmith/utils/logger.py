# widgetsmith/utils/logger.py
import json
import os
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from widgetsmith.core.config import settings

# --- Configuration for General Application Logger ---
LOGS_DIR = settings.LOG_DIR
os.makedirs(LOGS_DIR, exist_ok=True)

APP_LOG_FILE_PATH = os.path.join(LOGS_DIR, "app_log.log")
TRACE_LOG_FILE_PATH = os.path.join(LOGS_DIR, "trace_log.jsonl")

# General application logger: lifecycle events and errors that are not traces.
app_logger = logging.getLogger("widgetsmith")
app_logger.setLevel(settings.LOG_LEVEL)

if not any(isinstance(h, logging.FileHandler) for h in app_logger.handlers):
    app_file_handler = logging.FileHandler(APP_LOG_FILE_PATH)
    app_file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    app_logger.addHandler(app_file_handler)


# --- Custom JSON Formatter for Trace Logs ---
class JsonFormatter(logging.Formatter):
    """Formats log records as JSON, specifically for trace logs."""
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
            # Custom 'context' attribute attached through `extra`
            "context": getattr(record, 'context', None)
        }
        return json.dumps(log_entry, default=str)


# --- Configuration for Structured Trace Logger ---
# One JSON line per tool lifecycle event (created, generated, executed, ...).
trace_logger_instance = logging.getLogger("widgetsmith.trace")
trace_logger_instance.setLevel(logging.INFO)

# Trace records only go to the JSONL file, never to the console handlers.
trace_logger_instance.propagate = False

if not trace_logger_instance.handlers:
    trace_file_handler = logging.FileHandler(TRACE_LOG_FILE_PATH)
    trace_file_handler.setFormatter(JsonFormatter())
    trace_logger_instance.addHandler(trace_file_handler)


class TraceLogger:
    """
    A utility class to simplify logging structured events to the trace logger.
    """
    def __init__(self, logger_instance: logging.Logger):
        self.logger = logger_instance

    async def log_event(self, event_name: str, context: Optional[Dict[str, Any]] = None):
        """
        Logs a structured event with a name and optional context dictionary.
        The context ends up in the 'context' field of the JSON log entry.
        """
        extra_data = {'context': context} if context is not None else {}
        self.logger.info(event_name, extra=extra_data)
        app_logger.debug(f"[TRACE] {event_name}: {json.dumps(context, default=str)}")


trace_logger_service = TraceLogger(trace_logger_instance)

logger = app_logger
