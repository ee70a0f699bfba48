# src/turtleops/errors.py
"""
Error taxonomy for turtleops.

- ValidationError: a required precondition is missing (organization, observer,
  tag values). Raised before any mutation.
- NotFoundError: a referenced record does not exist in the caller's
  organization.
- ConflictError: name uniqueness violation on an explicit name assignment.
- PersistenceError: the backing store rejected a write.
- AuditWriteFailure: the tag-history write failed after the turtle mutation
  succeeded. Callers log it; the encounter stays recorded.
"""

from __future__ import annotations


class TurtleOpsError(Exception):
    """Base class for all turtleops errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TurtleOpsError):
    status_code = 400


class NotFoundError(ValidationError):
    status_code = 404


class ConflictError(TurtleOpsError):
    status_code = 409


class PersistenceError(TurtleOpsError):
    status_code = 503


class AuditWriteFailure(TurtleOpsError):
    pass
