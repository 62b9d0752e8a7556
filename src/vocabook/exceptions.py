"""Error taxonomy for vocabook."""
from typing import Optional


class VocabookError(Exception):
    """Base exception for vocabook."""
    pass


class InvalidInput(VocabookError, ValueError):
    """Raised when a caller passes a malformed rating or settings value."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(message)


class TransientStorageFailure(VocabookError):
    """Raised by a key/value store when a write could not be persisted."""
    def __init__(self, key: str, message: str = "Storage write failed"):
        self.key = key
        self.message = message
        super().__init__(f"{message}: {key}")


class RemoteUnavailable(VocabookError):
    """Raised when the remote store cannot be reached. Safe to retry."""
    pass


class DuplicateKey(VocabookError):
    """Raised when a conditional insert hits an existing natural key."""
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"Duplicate {entity}: {key}")


class PartialMigrationFailure(VocabookError):
    """One row that could not be migrated; recorded, not raised."""
    def __init__(self, entity: str, local_id: int, cause: Exception):
        self.entity = entity
        self.local_id = local_id
        self.cause = cause
        super().__init__(f"Failed to migrate {entity} {local_id}: {cause}")
