from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys

from relayq.core.config import get_settings


_HANDLER_NAME = "relayq"


class JsonLineFormatter(logging.Formatter):
    # Keep one JSON object per line so log shippers can parse without multiline rules.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging() -> None:
    # Install a single stream handler; repeated calls from API and workers stay idempotent.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    if settings.log_json:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


def mask_destination(destination: str | None) -> str:
    # Mask recipients in log lines while keeping enough to correlate support tickets.
    if not destination:
        return ""
    if "@" in destination:
        local, _, domain = destination.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(destination) <= 6:
        return "***"
    return f"{destination[:5]}***{destination[-4:]}"
