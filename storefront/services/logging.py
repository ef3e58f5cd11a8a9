import json
import sys
from datetime import datetime


def log_event(level: str, event: str, **fields) -> None:
    """Write one JSON line per domain event to stdout.

    Decimal amounts and datetimes in ``fields`` are rendered with ``str``.
    """
    payload = {
        "ts": datetime.utcnow().isoformat() + "Z",
        "level": level.lower(),
        "event": event,
    }
    payload.update(fields or {})
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()
