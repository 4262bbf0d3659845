"""Error taxonomy for isbnscout storage.

Store adapters (SQLite and cloud) translate driver/HTTP errors into these
types at the point where the real cause is known. The sync engine only
looks at the type, never at message text.
"""

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """How the sync engine should treat a failed mutation."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    IDENTITY_CONFLICT = "identity_conflict"


class StoreError(Exception):
    """Base class for store failures."""

    def __init__(self, message: str, *, entity_type: Optional[str] = None):
        super().__init__(message)
        self.entity_type = entity_type


class TransientStoreError(StoreError):
    """Retryable failure: timeout, rate limit, temporary unavailability."""

    def __init__(
        self,
        message: str,
        *,
        entity_type: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, entity_type=entity_type)
        self.status_code = status_code


class PermanentStoreError(StoreError):
    """Non-retryable failure. Replaying the mutation will not help."""


class IdentityConflictError(PermanentStoreError):
    """A record with the same identity (primary or unique key) already exists."""


class ReferentialIntegrityError(PermanentStoreError):
    """The mutation references a parent record the store does not have."""


class RecordNotFoundError(PermanentStoreError):
    """An update targeted a record the store does not have."""

    def __init__(self, entity_type: str, key: str):
        super().__init__(f"No {entity_type} record with key {key!r}", entity_type=entity_type)
        self.key = key


class UnknownMutationError(PermanentStoreError):
    """No handler is registered for an (entity type, operation) pair."""

    def __init__(self, entity_type: str, operation: str):
        super().__init__(
            f"No handler registered for {entity_type}/{operation}", entity_type=entity_type
        )
        self.operation = operation


class ConfigurationError(ValueError):
    """Raised for invalid settings."""


def classify_failure(exc: BaseException) -> FailureKind:
    """Classify an exception raised while replaying a mutation.

    Anything that is not explicitly permanent is treated as transient, so an
    unexpected error costs a retry instead of freezing the entry.
    """
    if isinstance(exc, IdentityConflictError):
        return FailureKind.IDENTITY_CONFLICT
    if isinstance(exc, PermanentStoreError):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT
