from __future__ import annotations

import json
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

_SECRET_MARKERS = ("password", "token", "secret")


@dataclass
class AuditEvent:
    ts: float
    tool: str
    ok: bool
    duration_ms: float
    args: Dict[str, Any]
    error: Optional[str] = None
    host: Optional[str] = None
    role: Optional[str] = None


def redact(value: Any) -> Any:
    """Mask credential-like keys, including those nested in staging descriptions."""
    if isinstance(value, dict):
        return {
            k: "***" if any(m in str(k).lower() for m in _SECRET_MARKERS) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class Auditor:
    """Writes one JSON line per tool invocation."""

    def __init__(self, path: Optional[str] = None):
        self._sink = open(path, "a", buffering=1) if path else sys.stdout

    def log(self, event: AuditEvent) -> None:
        data = asdict(event)
        data["args"] = redact(data.get("args", {}))
        self._sink.write(json.dumps(data, default=str) + "\n")
