from __future__ import annotations

import threading
import time
from typing import Dict, Optional

from .config import AuthConfig, RateLimitConfig


class Authorizer:
    """Maps bearer tokens to roles and roles to the tools they may call."""

    def __init__(self, auth: AuthConfig):
        self._tokens = auth.tokens_to_roles
        self._roles = auth.roles_to_tools
        self._enforce = auth.enforce

    def resolve_role(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self._tokens.get(token)

    def is_allowed(self, tool_name: str, role: Optional[str]) -> bool:
        if not self._enforce:
            return True
        if not role:
            return False
        return tool_name in self._roles.get(role, set())

    def check(self, tool_name: str, role: Optional[str]) -> None:
        if not self.is_allowed(tool_name, role):
            raise PermissionError(f"Tool '{tool_name}' not allowed for role '{role or 'none'}'")


class TokenBucketLimiter:
    def __init__(self, cfg: RateLimitConfig, clock=time.monotonic):
        self.enabled = cfg.enabled
        self.rate = cfg.rate_per_sec
        self.burst = cfg.burst
        self._clock = clock
        self._buckets: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        if not self.enabled:
            return True
        now = self._clock()
        with self._lock:
            b = self._buckets.setdefault(key, {"tokens": float(self.burst), "ts": now})
            b["tokens"] = min(self.burst, b["tokens"] + (now - b["ts"]) * self.rate)
            b["ts"] = now
            if b["tokens"] >= 1.0:
                b["tokens"] -= 1.0
                return True
            return False
