"""State record data models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from fleetform.resources.schema import LifecyclePolicy, ResourceKind


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class StateRecord(BaseModel):
    """Last applied snapshot of one resource."""

    address: str = Field(..., description="Resource key (kind.name)")
    kind: ResourceKind = Field(..., description="Resource kind")
    identifier: Optional[str] = Field(None, description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Last applied attribute values, references resolved"
    )
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Computed outputs")
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses this resource depended on when applied"
    )
    lifecycle: LifecyclePolicy = LifecyclePolicy.DESTROY_THEN_CREATE
    token: Optional[str] = Field(None, description="Version token assigned by the store")
    deposed: List[str] = Field(
        default_factory=list,
        description="Identifiers of replaced instances that still await deletion"
    )
    updated_at: datetime = Field(default_factory=utcnow)

    def output(self, path: str) -> Any:
        """Look up a computed output, dotted for nested values.

        The provider identifier is always available as ``id``.

        Raises:
            KeyError: If the output does not exist
        """
        head, _, rest = path.partition('.')
        if head in self.outputs:
            value = self.outputs[head]
        elif head == 'id' and self.identifier is not None:
            value = self.identifier
        else:
            raise KeyError(path)

        for part in rest.split('.') if rest else []:
            value = value[part]
        return value


class LockInfo(BaseModel):
    """Holder of a scope lock."""

    scope: str
    owner: str
    acquired_at: float = Field(..., description="Epoch seconds")
    stale_after: float = Field(..., description="Seconds after which the lock may be taken over")

    def is_stale(self, now: float) -> bool:
        """Check whether the holder has gone quiet for too long."""
        return now - self.acquired_at >= self.stale_after


class StateDocument(BaseModel):
    """Serialized form of a whole state store."""

    version: str = Field("1", description="State file format version")
    records: Dict[str, StateRecord] = Field(default_factory=dict)
    locks: Dict[str, LockInfo] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
