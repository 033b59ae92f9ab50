"""JSON log formatter for the inventory tracker.

Emits one object per line. Request attributes are set by
``core.middleware.RequestContextFilter``; ``AppLogger`` context (place id,
stage counters, error names) is merged at the top level.
"""

import json
import logging
from datetime import datetime, timezone

REQUEST_ATTRIBUTES = ("request_id", "user_id", "ip", "path", "http_method")


class StructuredJSONFormatter(logging.Formatter):
    """Render log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(self._request_fields(record))
        self._merge_context(entry, getattr(record, "context", None))

        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)

    @staticmethod
    def _request_fields(record):
        return {
            name: getattr(record, name)
            for name in REQUEST_ATTRIBUTES
            if getattr(record, name, None) not in (None, "")
        }

    @staticmethod
    def _merge_context(entry, context):
        """A context key that clashes with an existing field is kept as ``context_<key>``."""
        if not isinstance(context, dict):
            return
        for key, value in context.items():
            target = key if entry.get(key, value) == value else f"context_{key}"
            entry[target] = value
