"""Fatal run errors.

Each carries the HTTP status the API answers with; the API renders them as
``{"error": message, **extra}``.
"""
from typing import Any, Dict, Optional


class RunError(Exception):
    status_code = 500

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class InvalidRunRequest(RunError):
    status_code = 400


class PaymentRequired(RunError):
    status_code = 402


class HeroesUnavailable(RunError):
    status_code = 409


class RunCreationFailed(RunError):
    status_code = 500


class HeroLockVerificationFailed(RunError):
    """The double-booking guard. Never downgraded to a warning."""

    status_code = 500


class DungeonNotFound(RunError):
    status_code = 404


class RunNotFound(RunError):
    status_code = 404
