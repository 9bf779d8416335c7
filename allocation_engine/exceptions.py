"""
Exception hierarchy for the allocation engine.

Every error carries the error type used when it is recorded against an
upload row, and optionally the name of the input field that caused it.
"""

from typing import Optional


class AllocationError(ValueError):
    """Base class for allocation engine errors"""
    error_type = "PROCESSING"

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field_name = field_name


class ValidationError(AllocationError):
    """Input is missing, malformed or out of range"""
    error_type = "VALIDATION"


class NotFoundError(AllocationError):
    """A referenced case, agent, rule, batch or job does not exist"""
    error_type = "DATA_INTEGRITY"


class DataIntegrityError(AllocationError):
    """Stored data contradicts an invariant (duplicates, broken counters)"""
    error_type = "DATA_INTEGRITY"


class BusinessRuleError(AllocationError):
    """Request is well-formed but not allowed in the current state"""
    error_type = "BUSINESS_RULE"


class ConflictError(BusinessRuleError):
    """Case ownership changed concurrently; the caller lost the race"""


class StorageError(AllocationError):
    """Backend failure while reading or writing records"""
    error_type = "SYSTEM"
