"""Data models for fleet membership and target registration."""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from fleetform.providers.base import HealthStatus


class MemberPhase(str, Enum):
    """Where a fleet member is in its traffic lifecycle."""
    PROVISIONING = "provisioning"
    REGISTERING = "registering"
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DRAINING = "draining"
    TERMINATED = "terminated"


class TargetRegistration(BaseModel):
    """Registration of one member with one target group."""

    member_id: str
    target_group: str = Field(..., description="Target group address")
    status: HealthStatus = HealthStatus.INITIAL
    consecutive_passes: int = 0
    consecutive_fails: int = 0

    def record_pass(self, healthy_threshold: int) -> None:
        self.consecutive_passes += 1
        self.consecutive_fails = 0
        if self.consecutive_passes >= healthy_threshold and self.status in (
            HealthStatus.INITIAL, HealthStatus.UNHEALTHY
        ):
            self.status = HealthStatus.HEALTHY

    def record_fail(self, unhealthy_threshold: int) -> None:
        self.consecutive_fails += 1
        self.consecutive_passes = 0
        if self.consecutive_fails >= unhealthy_threshold and self.status in (
            HealthStatus.INITIAL, HealthStatus.HEALTHY
        ):
            self.status = HealthStatus.UNHEALTHY


class MemberState(BaseModel):
    """Tracked state of one fleet member."""

    member_id: str
    group: str = Field(..., description="Autoscaling group address")
    phase: MemberPhase = MemberPhase.PROVISIONING
    registrations: Dict[str, TargetRegistration] = Field(default_factory=dict)
    scale_in_requested: bool = False
    drain_started: Optional[float] = None
    deregistered: bool = False

    def aggregate_phase(self) -> MemberPhase:
        """Phase implied by the registrations' health."""
        statuses = [registration.status for registration in self.registrations.values()]
        if any(status == HealthStatus.UNHEALTHY for status in statuses):
            return MemberPhase.UNHEALTHY
        if statuses and all(status == HealthStatus.HEALTHY for status in statuses):
            return MemberPhase.HEALTHY
        return MemberPhase.INITIAL


class FleetBinding(BaseModel):
    """An autoscaling group and the target groups it feeds."""

    group: str = Field(..., description="Autoscaling group address")
    group_id: str = Field(..., description="Provider identifier of the group")
    target_groups: Dict[str, str] = Field(
        default_factory=dict, description="Target group address -> provider identifier"
    )
    replace_unhealthy: bool = False


class PhaseTransition(BaseModel):
    """A member moving between phases."""

    member_id: str
    group: str
    from_phase: MemberPhase
    to_phase: MemberPhase


class ReconcileReport(BaseModel):
    """What one reconciliation tick did."""

    transitions: List[PhaseTransition] = Field(default_factory=list)
    registered: List[str] = Field(default_factory=list)
    deregistered: List[str] = Field(default_factory=list)
    terminated: List[str] = Field(default_factory=list)
    poll_failures: int = 0
    errors: List[str] = Field(default_factory=list)

    def transitions_for(self, member_id: str) -> List[MemberPhase]:
        return [t.to_phase for t in self.transitions if t.member_id == member_id]
