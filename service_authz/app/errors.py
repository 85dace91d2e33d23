"""
Error taxonomy for the policy store and the policy evaluation engine.

Every failure surfaced to callers is a ``PolicyError`` subclass whose
``kind`` is one member of the closed ``PolicyErrorKind`` enum, so callers can
either catch a concrete class or switch on ``error.kind``. Raw driver errors
never leave the store; they are chained as ``__cause__``.
"""

from enum import Enum
from typing import Dict, Any, Optional

from shared.errors import AuthzException


class PolicyErrorKind(str, Enum):
    """Kinds of policy errors."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_EXISTS = "already_exists"
    NO_MATCHING_RECORDS = "no_matching_records"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INTERNAL_READ_ERROR = "internal_read_error"
    INVALID_INPUT = "invalid_input"


class PolicyError(AuthzException):
    """Base class for every policy store and evaluation error."""
    
    kind: PolicyErrorKind = PolicyErrorKind.INTERNAL_READ_ERROR
    description: str = "An unknown failure has occurred"
    
    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(self.kind.value, message or self.description, details)


class GroupNotFoundError(PolicyError):
    """The referenced group does not exist."""
    
    kind = PolicyErrorKind.NOT_FOUND
    description = "The group was not found"


class PermissionNotFoundError(PolicyError):
    """The referenced permission does not exist."""
    
    kind = PolicyErrorKind.NOT_FOUND
    description = "The permission was not found"


class ConcurrencyError(PolicyError):
    """The version read before the mutation is stale."""
    
    kind = PolicyErrorKind.CONFLICT
    description = "The operation failed due to a concurrency issue"


class NameExistsError(PolicyError):
    """A group or permission with the same name already exists."""
    
    kind = PolicyErrorKind.ALREADY_EXISTS
    description = "The name already exists"


class NoUserRecordsDeletedError(PolicyError):
    """Deleting a user removed no membership rows."""
    
    kind = PolicyErrorKind.NO_MATCHING_RECORDS
    description = "No user records were deleted"


class DatabaseError(PolicyError):
    """Any failure talking to the database."""
    
    kind = PolicyErrorKind.STORAGE_UNAVAILABLE
    description = "An error occurred while interacting with the database"


class PolicyReadError(PolicyError):
    """Rows were received but could not be turned into a policy."""
    
    kind = PolicyErrorKind.INTERNAL_READ_ERROR
    description = "An unknown failure has occurred while reading the policy"


class InvalidInputError(PolicyError):
    """A required evaluation argument is empty or missing."""
    
    kind = PolicyErrorKind.INVALID_INPUT
    description = "A required input is empty"
