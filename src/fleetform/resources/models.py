"""Declared resource model with typed references."""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetform.resources.schema import (
    KindSchema,
    LifecyclePolicy,
    Mutability,
    ResourceKind,
    get_schema,
)


NAME_PATTERN = r"^[A-Za-z0-9_-]+$"


def resource_address(kind: str, name: str) -> str:
    """Build the ``kind.name`` key that identifies a resource."""
    return f"{ResourceKind(kind).value}.{name}"


def split_address(address: str) -> Tuple[str, str]:
    """Split a ``kind.name`` key into its parts."""
    kind, _, name = address.partition('.')
    if not kind or not name:
        raise ValueError(f"Invalid resource address: {address!r}")
    return kind, name


class Unknown:
    """Value that is only known once its producer has been applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __eq__(self, other) -> bool:
        # Never equal to anything, including itself, so a diff always shows it
        return False

    def __hash__(self) -> int:
        return id(self)


UNKNOWN = Unknown()


class Reference(BaseModel):
    """Pointer to a computed output of another resource."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str = Field(..., pattern=NAME_PATTERN)
    attribute: str = Field(..., min_length=1, description="Output name, dotted for nested values")

    @property
    def address(self) -> str:
        """Address of the producing resource."""
        return resource_address(self.kind, self.name)

    @classmethod
    def parse(cls, expression: str) -> "Reference":
        """Parse ``kind.name.attribute`` into a Reference."""
        parts = expression.split('.', 2)
        if len(parts) != 3 or not all(parts):
            raise ValueError(
                f"Reference must look like 'kind.name.attribute': {expression!r}"
            )
        return cls(kind=parts[0], name=parts[1], attribute=parts[2])

    def __str__(self) -> str:
        return f"{self.address}.{self.attribute}"


def iter_references(value: Any, path: str = "") -> Iterator[Tuple[str, Reference]]:
    """Yield (attribute path, Reference) for every reference in a value tree."""
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_references(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_references(item, f"{path}[{index}]")


def substitute_references(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of a value tree with every Reference replaced by ``resolve(ref)``."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, dict):
        return {key: substitute_references(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute_references(item, resolve) for item in value]
    return value


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value tree still holds unknown parts."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


class Resource(BaseModel):
    """A declared resource or data lookup."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ResourceKind
    name: str = Field(..., pattern=NAME_PATTERN)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    mutability: Dict[str, Mutability] = Field(
        default_factory=dict, description="Per-attribute overrides of the kind defaults"
    )
    lifecycle: Optional[LifecyclePolicy] = None
    depends_on: List[str] = Field(
        default_factory=list, description="Extra dependencies by address"
    )

    @field_validator("attributes")
    @classmethod
    def validate_attribute_names(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Attribute names must be non-empty strings."""
        for key in v:
            if not isinstance(key, str) or not key:
                raise ValueError(f"Attribute name must be a non-empty string: {key!r}")
        return v

    @model_validator(mode="after")
    def apply_kind_defaults(self):
        """Fill the lifecycle policy from the kind schema when not declared."""
        if self.lifecycle is None:
            self.lifecycle = self.schema.lifecycle
        return self

    @property
    def schema(self) -> KindSchema:
        """Schema of this resource's kind."""
        return get_schema(self.kind)

    @property
    def address(self) -> str:
        """Unique ``kind.name`` key."""
        return resource_address(self.kind, self.name)

    @property
    def is_data_source(self) -> bool:
        """Data lookups are read, never created."""
        return self.schema.data_source

    def attribute_mutability(self, attribute: str) -> Mutability:
        """Resolve mutability of one attribute: declaration first, then kind schema."""
        if attribute in self.mutability:
            return self.mutability[attribute]
        if attribute in self.schema.immutable:
            return Mutability.IMMUTABLE
        return Mutability.MUTABLE

    def is_immutable(self, attribute: str) -> bool:
        """Check whether changing ``attribute`` forces replacement."""
        return self.attribute_mutability(attribute) == Mutability.IMMUTABLE

    def references(self) -> List[Tuple[str, Reference]]:
        """All references in this resource's attributes."""
        return list(iter_references(self.attributes))
