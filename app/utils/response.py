"""Envelope shared by every JSON endpoint, and the event framing used by the
progress stream."""
import json
from typing import Any


def success_response(data: Any = None, message: str | None = None) -> dict:
    return {"status": "success", "data": data, "message": message}


def error_response(message: str, data: Any = None) -> dict:
    return {"status": "error", "data": data, "message": message}


def sse_event(data: dict, event: str | None = None) -> str:
    """Frame ``data`` as one server-sent event."""
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, separators=(',', ':'))}\n\n"
