import logging
import sys
import os
import json
from datetime import datetime, timezone

# Passed through `extra=` by the pipeline and search code
CONTEXT_FIELDS = ("screenshot_id", "task_id", "task_type", "search_type")

class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)

def setup_logger():
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger = logging.getLogger("screenshot_search")
    logger.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    if not logger.handlers:
        logger.addHandler(handler)

    return logger

logger = setup_logger()
