"""Structured JSON logging to stdout.

Low overhead, minimal dependencies, safe for production stdout collectors.
"""

from typing import Any, Dict
from datetime import datetime, timezone
import json

from flightfinder.config import settings
from flightfinder.obs.context import request_id_var, client_ip_var


def _should_emit(level: str) -> bool:
    # Debug chatter (cache hits, sets) is only useful outside production
    return not (level == "DEBUG" and settings.APP_ENV == "prod")


def log_event(event: str, **fields: Any) -> None:
    level = str(fields.pop("level", "INFO")).upper()
    if not _should_emit(level):
        return

    now = datetime.now(timezone.utc).isoformat()
    payload: Dict[str, Any] = {
        "ts": now,
        "level": level,
        "event": event,
        "request_id": request_id_var.get(),
    }
    client_ip = client_ip_var.get()
    if client_ip:
        payload["client_ip"] = client_ip

    # Merge remaining fields
    for k, v in fields.items():
        if isinstance(v, BaseException):
            payload[k] = f"{type(v).__name__}: {v}"
        else:
            payload[k] = v

    try:
        print(json.dumps(payload, separators=(",", ":"), default=str))
    except Exception:
        # As a last resort, avoid crashing the app due to logging
        pass
