from __future__ import annotations

from typing import Optional


class BackendError(Exception):
    """The backend did not confirm the requested operation."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExecutorError(BackendError):
    """No liquidation transaction was submitted for the loan."""
