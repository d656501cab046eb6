"""Resource model: declarations, references and kind schemas."""

from .schema import (
    KindSchema,
    LifecyclePolicy,
    Mutability,
    ResourceKind,
    SCHEMAS,
    get_schema,
)
from .models import (
    Reference,
    Resource,
    UNKNOWN,
    Unknown,
    contains_unknown,
    iter_references,
    resource_address,
    split_address,
    substitute_references,
)

__all__ = [
    "KindSchema",
    "LifecyclePolicy",
    "Mutability",
    "ResourceKind",
    "SCHEMAS",
    "get_schema",
    "Reference",
    "Resource",
    "UNKNOWN",
    "Unknown",
    "contains_unknown",
    "iter_references",
    "resource_address",
    "split_address",
    "substitute_references",
]
