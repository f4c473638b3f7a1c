"""Error types for powerlock.

Only configuration problems are modelled as exceptions.  Transport
failures (broker outages, failing shell commands) never travel past a
mode strategy; they are logged at the lock's verbosity and the virtual
state carries on optimistically.

See Also:
    :func:`powerlock._settings.load_lock_configs` — per-lock validation.
"""

from __future__ import annotations

from typing import Self

from pydantic import ValidationError


class PowerLockError(Exception):
    """Base class for all powerlock errors."""


class LockConfigError(PowerLockError, ValueError):
    """A single lock entry failed validation.

    Carries the lock name (or a positional placeholder when the entry
    has none) so the message can be logged on its own and the
    remaining locks processed normally.
    """

    def __init__(self, lock_name: str, reason: str) -> None:
        super().__init__(f'Lock "{lock_name}": {reason}')
        self.lock_name = lock_name
        self.reason = reason

    @classmethod
    def from_validation_error(cls, lock_name: str, exc: ValidationError) -> Self:
        """Collapse a pydantic ``ValidationError`` into one readable line.

        Each error becomes ``location: message``; entries are joined
        with ``"; "``.
        """
        parts: list[str] = []
        for error in exc.errors():
            location = ".".join(str(item) for item in error["loc"])
            message = error["msg"]
            parts.append(f"{location}: {message}" if location else message)
        return cls(lock_name, "; ".join(parts))
