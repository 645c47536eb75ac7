from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_event(event: str, **fields: Any) -> None:
    record: dict[str, Any] = {"event": event, "ts": _now_iso()}
    record.update(fields)
    print(json.dumps(record, separators=(",", ":"), sort_keys=True, default=str))
