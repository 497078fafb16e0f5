from __future__ import annotations

from typing import Any, Dict, Optional


class CleanerError(Exception):
    """Base class for queue cleaner failures surfaced to callers."""

    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'error': self.message}
        if self.details:
            out['details'] = self.details
        return out


class ConfigurationError(CleanerError):
    """A config field is invalid or out of range. ``details`` maps field -> problem."""

    status = 400


class NotFoundError(CleanerError):
    status = 404


class ConflictError(CleanerError):
    status = 409


class CooldownError(CleanerError):
    status = 429

    def __init__(self, instance_id: str, wait_seconds: float) -> None:
        wait = max(1, int(round(wait_seconds)))
        super().__init__(
            f'Manual clean for {instance_id} is cooling down; try again in {wait}s',
            {'instanceId': instance_id, 'retryAfterSeconds': wait},
        )
        self.wait_seconds = wait


class DataQualityError(CleanerError):
    """A queue record (or stored detail) could not be parsed."""

    status = 422


class DispatchError(CleanerError):
    """The arr rejected or failed a remove/import call for one item."""

    status = 502


class RunError(CleanerError):
    pass
