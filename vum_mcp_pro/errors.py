from __future__ import annotations

from typing import Optional


class VumError(Exception):
    """Base class for Update Manager automation errors."""


class VumConnectionError(VumError):
    """Raised when a VUM session cannot be established."""


class VumNotFoundError(VumError):
    """A named baseline, baseline group, image or inventory object does not exist."""

    def __init__(self, kind: str, name: str, detail: Optional[str] = None):
        self.kind = kind
        self.name = name
        msg = f"{kind[:1].upper()}{kind[1:]} '{name}' not found"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class ScanExhaustedError(VumNotFoundError):
    """Key scan reached its bound without finding a matching name."""

    def __init__(self, kind: str, name: str, limit: int):
        self.limit = limit
        super().__init__(kind, name, detail=f"scanned keys 0..{limit - 1}")


class VumPreconditionError(VumError):
    """Operation refused before any remote mutation was attempted."""


class VumTaskError(VumError):
    """A remote task ended in the error state."""

    def __init__(self, message: str, task: Optional[str] = None):
        self.task = task
        super().__init__(message)


class TaskTimeoutError(VumTaskError):
    pass


class TaskCancelledError(VumTaskError):
    pass
