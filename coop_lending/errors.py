"""
Lending Error Types

Every failure is raised synchronously to the caller; the surrounding unit of
work is rolled back. The concrete classes also derive from the built-in
exception a caller would naturally catch (ValueError, LookupError, RuntimeError).
"""

from typing import Optional


class LendingError(Exception):
    """Base class for all lending core errors"""


class LoanValidationError(LendingError, ValueError):
    """Malformed or out-of-domain input, rejected before any state is touched"""


class IllegalTransitionError(LendingError, ValueError):
    """Operation attempted from a status that does not permit it"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class IntegrityViolationError(LendingError, ValueError):
    """A mutation would drive a running balance negative"""


class RecordNotFoundError(LendingError, LookupError):
    """Referenced loan, payment, penalty, product or member does not exist"""


class ConcurrencyConflictError(LendingError, RuntimeError):
    """Stored record changed underneath the operation; re-read and retry"""
