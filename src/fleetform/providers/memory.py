"""Simulated platform for local dry runs and tests.

The platform keeps every object in memory, logs each call, can inject
failures per kind and operation, and simulates autoscaling fleets and
target health.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Set, Tuple, Union

from fleetform.providers.base import (
    DataSourceAdapter,
    FleetCapable,
    FleetMember,
    HealthCheckCapable,
    HealthStatus,
    MemberLifecycle,
    Outputs,
    ProviderAdapter,
)
from fleetform.providers.registry import ProviderRegistry
from fleetform.resources.schema import ResourceKind
from fleetform.utils.errors import ErrorContext, ProviderError, ResourceNotFoundError


ID_PREFIXES = {
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.LAUNCH_TEMPLATE: "lt",
    ResourceKind.AUTOSCALING_GROUP: "asg",
    ResourceKind.LOAD_BALANCER: "lb",
    ResourceKind.TARGET_GROUP: "tg",
    ResourceKind.LISTENER: "listener",
    ResourceKind.LISTENER_RULE: "rule",
    ResourceKind.DATA_LOOKUP: "lookup",
}


@dataclass
class PlatformCall:
    """One call made against the platform."""
    operation: str
    kind: ResourceKind
    identifier: Optional[str]
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlatformObject:
    """A remote object held by the platform."""
    identifier: str
    kind: ResourceKind
    attributes: Dict[str, Any]
    outputs: Outputs


@dataclass
class FailureRule:
    """Injected failure for matching calls."""
    kind: ResourceKind
    operation: str
    times: int
    error: Exception
    name: Optional[str] = None


HealthResult = Union[HealthStatus, Exception]


class InMemoryPlatform:
    """In-memory stand-in for the remote platform."""

    def __init__(self, latency: float = 0.0):
        """Initialize platform.

        Args:
            latency: Seconds each call takes, to exercise concurrency
        """
        self.latency = latency
        self.objects: Dict[str, PlatformObject] = {}
        self.calls: List[PlatformCall] = []
        self.members: Dict[str, Dict[str, FleetMember]] = defaultdict(dict)
        self.registrations: Dict[str, Set[str]] = defaultdict(set)
        self.health: Dict[str, HealthStatus] = {}
        self.health_script: Dict[str, Deque[HealthResult]] = defaultdict(deque)
        self.lookup_results: Dict[str, Outputs] = {}
        self.active_calls = 0
        self.peak_calls = 0
        self._failures: List[FailureRule] = []
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()

    def fail(
        self,
        kind: ResourceKind,
        operation: str,
        times: int = 1,
        error: Optional[Exception] = None,
        name: Optional[str] = None
    ) -> None:
        """Make the next ``times`` matching calls raise ``error``.

        ``name`` restricts the rule to objects whose ``name`` attribute matches.
        """
        with self._lock:
            self._failures.append(FailureRule(
                kind=ResourceKind(kind),
                operation=operation,
                times=times,
                error=error or ProviderError(f"injected {operation} failure"),
                name=name,
            ))

    def calls_for(self, operation: Optional[str] = None, kind: Optional[ResourceKind] = None) -> List[PlatformCall]:
        """Filter the call log."""
        with self._lock:
            return [
                call for call in self.calls
                if (operation is None or call.operation == operation)
                and (kind is None or call.kind == ResourceKind(kind))
            ]

    def call_index(self, operation: str, identifier: str) -> int:
        """Position of the first call with this operation and identifier."""
        with self._lock:
            for index, call in enumerate(self.calls):
                if call.operation == operation and call.identifier == identifier:
                    return index
        raise ValueError(f"No {operation} call for {identifier}")

    def objects_of(self, kind: ResourceKind) -> List[PlatformObject]:
        """Objects of one kind currently present."""
        with self._lock:
            return [obj for obj in self.objects.values() if obj.kind == ResourceKind(kind)]

    # Remote operations

    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        kind = ResourceKind(kind)
        with self._call("create", kind, None, attributes) as tracked:
            with self._lock:
                self._counters[kind.value] += 1
                identifier = f"{ID_PREFIXES[kind]}-{self._counters[kind.value]:04d}"
                outputs = self._outputs(kind, identifier, attributes)
                self.objects[identifier] = PlatformObject(identifier, kind, dict(attributes), outputs)
                tracked.call.identifier = identifier
                return identifier, dict(outputs)

    def read(self, kind: ResourceKind, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        kind = ResourceKind(kind)
        with self._call("read", kind, identifier, {}):
            obj = self._get(kind, identifier)
            return dict(obj.attributes), dict(obj.outputs)

    def update(self, kind: ResourceKind, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        kind = ResourceKind(kind)
        with self._call("update", kind, identifier, attributes):
            with self._lock:
                obj = self._get(kind, identifier)
                outputs = self._outputs(kind, identifier, attributes)
                if 'latest_version' in obj.outputs:
                    outputs['latest_version'] = obj.outputs['latest_version'] + 1
                obj.attributes = dict(attributes)
                obj.outputs = outputs
                return dict(obj.outputs)

    def delete(self, kind: ResourceKind, identifier: str) -> None:
        kind = ResourceKind(kind)
        with self._call("delete", kind, identifier, {}):
            with self._lock:
                self.objects.pop(identifier, None)
                self.members.pop(identifier, None)
                self.registrations.pop(identifier, None)

    def lookup(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        with self._call("lookup", ResourceKind.DATA_LOOKUP, None, attributes):
            query = str(attributes.get('query', ''))
            outputs = dict(self.lookup_results.get(query, attributes))
            identifier = str(outputs.get('id', f"lookup-{query or 'default'}"))
            outputs.setdefault('id', identifier)
            return identifier, outputs

    # Fleet simulation

    def add_member(
        self,
        group_id: str,
        lifecycle: MemberLifecycle = MemberLifecycle.IN_SERVICE,
        member_id: Optional[str] = None
    ) -> FleetMember:
        """Launch a member into a group."""
        with self._lock:
            if member_id is None:
                self._counters['member'] += 1
                member_id = f"i-{self._counters['member']:05d}"
            member = FleetMember(member_id=member_id, lifecycle=lifecycle)
            self.members[group_id][member_id] = member
            return member

    def set_member_lifecycle(self, group_id: str, member_id: str, lifecycle: MemberLifecycle) -> None:
        with self._lock:
            self.members[group_id][member_id].lifecycle = lifecycle

    def set_health(self, member_id: str, status: HealthStatus) -> None:
        """Set the steady health a member reports."""
        with self._lock:
            self.health[member_id] = status

    def script_health(self, member_id: str, *results: HealthResult) -> None:
        """Queue health results (or exceptions) returned before the steady value."""
        with self._lock:
            self.health_script[member_id].extend(results)

    def list_members(self, group_id: str) -> List[FleetMember]:
        with self._call("list_members", ResourceKind.AUTOSCALING_GROUP, group_id, {}):
            with self._lock:
                self._get(ResourceKind.AUTOSCALING_GROUP, group_id)
                return [
                    FleetMember(m.member_id, m.lifecycle, dict(m.metadata))
                    for m in self.members[group_id].values()
                ]

    def terminate_member(self, group_id: str, member_id: str) -> None:
        with self._call("terminate_member", ResourceKind.AUTOSCALING_GROUP, group_id, {'member_id': member_id}):
            with self._lock:
                self.members[group_id].pop(member_id, None)

    def register_target(self, group_id: str, member_id: str) -> None:
        with self._call("register_target", ResourceKind.TARGET_GROUP, group_id, {'member_id': member_id}):
            with self._lock:
                self._get(ResourceKind.TARGET_GROUP, group_id)
                self.registrations[group_id].add(member_id)

    def deregister_target(self, group_id: str, member_id: str) -> None:
        with self._call("deregister_target", ResourceKind.TARGET_GROUP, group_id, {'member_id': member_id}):
            with self._lock:
                self.registrations[group_id].discard(member_id)

    def poll_health(self, group_id: str, member_id: str) -> HealthStatus:
        with self._call("poll_health", ResourceKind.TARGET_GROUP, group_id, {'member_id': member_id}):
            with self._lock:
                if member_id not in self.registrations[group_id]:
                    return HealthStatus.UNUSED
                script = self.health_script[member_id]
                if script:
                    result = script.popleft()
                    if isinstance(result, Exception):
                        raise result
                    return result
                return self.health.get(member_id, HealthStatus.HEALTHY)

    # Internals

    def _call(self, operation: str, kind: ResourceKind, identifier: Optional[str], attributes: Dict[str, Any]):
        return _TrackedCall(self, PlatformCall(operation, kind, identifier, dict(attributes)))

    def _check_failure(self, call: PlatformCall) -> None:
        with self._lock:
            for rule in self._failures:
                if rule.times <= 0 or rule.kind != call.kind or rule.operation != call.operation:
                    continue
                if rule.name is not None and self._name_of(call) != rule.name:
                    continue
                rule.times -= 1
                raise rule.error

    def _name_of(self, call: PlatformCall) -> Optional[str]:
        if 'name' in call.attributes:
            return call.attributes['name']
        obj = self.objects.get(call.identifier or '')
        return obj.attributes.get('name') if obj else None

    def _get(self, kind: ResourceKind, identifier: str) -> PlatformObject:
        obj = self.objects.get(identifier)
        if obj is None or obj.kind != kind:
            raise ResourceNotFoundError(
                f"{kind.value} {identifier} not found",
                context=ErrorContext(resource_type=kind.value)
            )
        return obj

    def _outputs(self, kind: ResourceKind, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        outputs: Outputs = {
            'id': identifier,
            'arn': f"arn:memory:{kind.value}:{identifier}",
            'name': attributes.get('name', identifier),
        }
        if kind == ResourceKind.LOAD_BALANCER:
            outputs['dns_name'] = f"{outputs['name']}.lb.memory.internal"
            outputs['zone_id'] = "ZMEMORY"
        if kind == ResourceKind.LAUNCH_TEMPLATE:
            outputs['latest_version'] = 1
        return outputs


class _TrackedCall:
    """Logs a call, applies latency and injected failures, tracks concurrency."""

    def __init__(self, platform: InMemoryPlatform, call: PlatformCall):
        self.platform = platform
        self.call = call

    def __enter__(self):
        platform = self.platform
        with platform._lock:
            platform.calls.append(self.call)
            platform.active_calls += 1
            platform.peak_calls = max(platform.peak_calls, platform.active_calls)
        try:
            if platform.latency:
                time.sleep(platform.latency)
            platform._check_failure(self.call)
        except Exception:
            self._leave()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._leave()

    def _leave(self):
        with self.platform._lock:
            self.platform.active_calls -= 1


class MemoryResourceAdapter(ProviderAdapter):
    """Managed resource adapter backed by the simulated platform."""

    def __init__(self, platform: InMemoryPlatform, kind: ResourceKind):
        self.platform = platform
        self.kind = ResourceKind(kind)

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        return self.platform.create(self.kind, attributes)

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        return self.platform.read(self.kind, identifier)

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        return self.platform.update(self.kind, identifier, attributes)

    def delete(self, identifier: str) -> None:
        self.platform.delete(self.kind, identifier)


class MemoryTargetGroupAdapter(MemoryResourceAdapter, HealthCheckCapable):
    """Target groups with simulated registration and health."""

    def __init__(self, platform: InMemoryPlatform):
        super().__init__(platform, ResourceKind.TARGET_GROUP)

    def register_target(self, identifier: str, member_id: str) -> None:
        self.platform.register_target(identifier, member_id)

    def deregister_target(self, identifier: str, member_id: str) -> None:
        self.platform.deregister_target(identifier, member_id)

    def poll_health(self, identifier: str, member_id: str) -> HealthStatus:
        return self.platform.poll_health(identifier, member_id)


class MemoryAutoscalingAdapter(MemoryResourceAdapter, FleetCapable):
    """Autoscaling groups that launch simulated members up to desired capacity."""

    def __init__(self, platform: InMemoryPlatform, launch_members: bool = True):
        super().__init__(platform, ResourceKind.AUTOSCALING_GROUP)
        self.launch_members = launch_members

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        identifier, outputs = super().create(attributes)
        self._scale(identifier, attributes)
        return identifier, outputs

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        outputs = super().update(identifier, attributes)
        self._scale(identifier, attributes)
        return outputs

    def list_members(self, identifier: str) -> List[FleetMember]:
        return self.platform.list_members(identifier)

    def terminate_member(self, identifier: str, member_id: str) -> None:
        self.platform.terminate_member(identifier, member_id)

    def _scale(self, identifier: str, attributes: Dict[str, Any]) -> None:
        if not self.launch_members:
            return
        desired = int(attributes.get('desired_capacity', attributes.get('min_size', 0)) or 0)
        with self.platform._lock:
            live = [
                m for m in self.platform.members[identifier].values()
                if m.lifecycle in (MemberLifecycle.PENDING, MemberLifecycle.IN_SERVICE)
            ]
            for _ in range(desired - len(live)):
                self.platform.add_member(identifier)
            for member in live[desired:]:
                member.lifecycle = MemberLifecycle.TERMINATING


class MemoryDataLookupAdapter(DataSourceAdapter):
    """Lookups answered from ``InMemoryPlatform.lookup_results``."""

    def __init__(self, platform: InMemoryPlatform):
        self.platform = platform

    def lookup(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        return self.platform.lookup(attributes)


def memory_registry(platform: InMemoryPlatform, launch_members: bool = True) -> ProviderRegistry:
    """Build a registry with simulated adapters for every kind."""
    adapters = {
        kind: MemoryResourceAdapter(platform, kind)
        for kind in (
            ResourceKind.SECURITY_GROUP,
            ResourceKind.LAUNCH_TEMPLATE,
            ResourceKind.LOAD_BALANCER,
            ResourceKind.LISTENER,
            ResourceKind.LISTENER_RULE,
        )
    }
    adapters[ResourceKind.TARGET_GROUP] = MemoryTargetGroupAdapter(platform)
    adapters[ResourceKind.AUTOSCALING_GROUP] = MemoryAutoscalingAdapter(platform, launch_members)
    adapters[ResourceKind.DATA_LOOKUP] = MemoryDataLookupAdapter(platform)
    return ProviderRegistry(adapters)
