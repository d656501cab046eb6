"""Provider adapter capability interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple


Outputs = Dict[str, Any]


class HealthStatus(str, Enum):
    """Target health as reported by a load balancer."""
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"
    UNUSED = "unused"


class MemberLifecycle(str, Enum):
    """Lifecycle of a fleet member as reported by its autoscaling group."""
    PENDING = "pending"
    IN_SERVICE = "in_service"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass
class FleetMember:
    """One unit of capacity in an autoscaling group."""
    member_id: str
    lifecycle: MemberLifecycle
    metadata: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Remote create/read/update/delete for one resource kind.

    Implementations raise ``ProviderError`` (or any exception the error
    handler can classify) on failure and ``ResourceNotFoundError`` when the
    remote object is gone.
    """

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        """Create the remote object. Returns (identifier, computed outputs)."""
        pass

    @abstractmethod
    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        """Read the remote object. Returns (attributes, outputs)."""
        pass

    @abstractmethod
    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        """Update mutable attributes in place. Returns computed outputs."""
        pass

    @abstractmethod
    def delete(self, identifier: str) -> None:
        """Delete the remote object. Deleting a missing object is not an error."""
        pass


class DataSourceAdapter(ABC):
    """Read-only lookup of existing platform objects."""

    @abstractmethod
    def lookup(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        """Resolve a query. Returns (identifier, outputs)."""
        pass


class HealthCheckCapable(ABC):
    """Kinds that track target health (target groups)."""

    @abstractmethod
    def register_target(self, identifier: str, member_id: str) -> None:
        """Start routing traffic to a member."""
        pass

    @abstractmethod
    def deregister_target(self, identifier: str, member_id: str) -> None:
        """Stop routing new traffic to a member."""
        pass

    @abstractmethod
    def poll_health(self, identifier: str, member_id: str) -> HealthStatus:
        """Report the health of one registered member."""
        pass


class FleetCapable(ABC):
    """Kinds that own a fleet of members (autoscaling groups)."""

    @abstractmethod
    def list_members(self, identifier: str) -> List[FleetMember]:
        """List the group's current members."""
        pass

    @abstractmethod
    def terminate_member(self, identifier: str, member_id: str) -> None:
        """Terminate one member."""
        pass
