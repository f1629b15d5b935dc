from __future__ import annotations

__all__ = [
    "AttributeNotLoaded",
    "InvalidQuery",
    "LazyLoadViolation",
    "NotFound",
    "ReadOnlyViolation",
    "RelationError",
    "StaleWrite",
    "ValidationFailed",
]

from django.core.exceptions import ObjectDoesNotExist


class RelationError(Exception):
    """Base class for every error raised by the relation builder."""


class NotFound(RelationError, ObjectDoesNotExist):
    pass


class ValidationFailed(RelationError):
    """
    Raised by Record.save when required fields are blank. The write never reaches the database.

    `errors` maps field names to lists of messages.
    """

    def __init__(self, message: str, errors: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.errors = errors or {}


class StaleWrite(RelationError):
    """The optimistic lock token no longer matches the stored one, the record has to be reloaded."""


class ReadOnlyViolation(RelationError):
    pass


class AttributeNotLoaded(RelationError, AttributeError):
    pass


class LazyLoadViolation(RelationError):
    pass


class InvalidQuery(RelationError, ValueError):
    pass
