"""
GradeLab - Exceptions
Every error raised on purpose by the service layer derives from GradeLabError.
api.py maps each subclass to an HTTP status and a {"success": false, "error": ...} body.
"""

from typing import Any, Optional


class GradeLabError(Exception):
    """Base exception for all GradeLab errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(GradeLabError):
    """A required service (LLM, storage) is not configured."""

    status_code = 503


class ValidationError(GradeLabError):
    """Request data is missing or malformed."""

    status_code = 400


class NotFoundError(GradeLabError):
    """A referenced row does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", {"id": str(entity_id)})
        self.entity = entity


class StorageError(GradeLabError):
    """Supabase or Appwrite storage call failed."""


class ExtractionError(GradeLabError):
    """Text extraction produced nothing or could not start."""


class EvaluationError(GradeLabError):
    """Grading or answer key generation failed."""
