from __future__ import annotations

from typing import Any


class ExpenseScanError(Exception):
    pass


class ValidationError(ExpenseScanError, ValueError):
    """Bad or missing input. Never retried."""


class NotFoundError(ExpenseScanError, LookupError):
    pass


class RecognitionServiceError(ExpenseScanError):
    """Raised by recognition backends. `code` is the service's status name."""

    def __init__(self, message: str, code: str = "UNKNOWN"):
        super().__init__(message)
        self.code = code


class TransientServiceError(ExpenseScanError):
    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class PermanentServiceError(ExpenseScanError):
    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class PersistenceError(ExpenseScanError):
    """A store write failed. `result` keeps the pipeline output so the write can be retried."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class InvalidTransitionError(ExpenseScanError):
    pass
