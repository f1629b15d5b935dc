from ._conditions import Range, Raw
from ._config import RelationConfig
from ._enums import EnumField
from ._exceptions import (
    AttributeNotLoaded,
    InvalidQuery,
    LazyLoadViolation,
    NotFound,
    ReadOnlyViolation,
    RelationError,
    StaleWrite,
    ValidationFailed,
)
from ._records import Record, RecordForeignKey, RecordManager
from ._registry import AssociationOptions, register, registry
from ._relation import Relation

__all__ = [
    "AssociationOptions",
    "AttributeNotLoaded",
    "EnumField",
    "InvalidQuery",
    "LazyLoadViolation",
    "NotFound",
    "Range",
    "Raw",
    "ReadOnlyViolation",
    "Record",
    "RecordForeignKey",
    "RecordManager",
    "Relation",
    "RelationConfig",
    "RelationError",
    "StaleWrite",
    "ValidationFailed",
    "register",
    "registry",
]
