"""
Error types raised by the arrears engine.

ValidationError and ConflictError only share the ArrearsError base.
"""

from typing import Dict, Optional


class ArrearsError(Exception):
    """Base exception for all arrears engine errors."""


class ValidationError(ArrearsError):
    """Raised when input or policy rules reject an operation before any write."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors: Dict[str, str] = dict(errors or {})

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        details = "; ".join(f"{field}: {error}" for field, error in self.errors.items())
        return f"{self.message} ({details})"


class ConflictError(ArrearsError):
    """Raised when the presented version token no longer matches the stored one."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int]
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity_type} {entity_id} was modified by another operation "
            f"(expected version {expected_version}, found {actual_version})"
        )


class ComputationError(ArrearsError):
    """Raised when a calculation cannot be completed, e.g. malformed configuration."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class EntityNotFoundError(ArrearsError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")
