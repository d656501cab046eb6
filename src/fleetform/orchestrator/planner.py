"""Planner: diffs desired resources against recorded state."""

from typing import Any, Dict, Iterable, List, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
import heapq

from fleetform.orchestrator.dependency_graph import DependencyGraph, GraphNode, build_graph
from fleetform.orchestrator.resolver import resolve_attributes
from fleetform.resources.models import UNKNOWN, Reference, Resource, contains_unknown
from fleetform.resources.schema import LifecyclePolicy, ResourceKind, get_schema
from fleetform.state.base import StateStore
from fleetform.state.models import StateRecord, utcnow
from fleetform.utils.errors import EngineError, ErrorContext
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


class Action(str, Enum):
    """Action required to bring one resource to its desired state."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"
    REPLACE_CREATE_BEFORE_DESTROY = "replace-create-before-destroy"
    REPLACE_DESTROY_THEN_CREATE = "replace-destroy-then-create"
    DESTROY_DEPOSED = "destroy-deposed"

    @property
    def is_replace(self) -> bool:
        return self in (Action.REPLACE_CREATE_BEFORE_DESTROY, Action.REPLACE_DESTROY_THEN_CREATE)

    @property
    def produces_new_outputs(self) -> bool:
        """Outputs of these actions are unknown until apply."""
        return self in (Action.CREATE, Action.READ) or self.is_replace


class StepOperation(str, Enum):
    """A single remote operation of a planned node."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_DEPOSED = "delete-deposed"


_MISSING = object()


@dataclass
class AttributeDiff:
    """Change of one attribute."""

    name: str
    before: Any
    after: Any
    forces_replacement: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attribute': self.name,
            'before': _render(self.before),
            'after': _render(self.after),
            'forces_replacement': self.forces_replacement,
        }


@dataclass
class ResourceChange:
    """Planned action for one resource."""

    address: str
    kind: ResourceKind
    action: Action
    resource: Optional[Resource] = None
    record: Optional[StateRecord] = None
    planned_attributes: Dict[str, Any] = field(default_factory=dict)
    diffs: List[AttributeDiff] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def expected_token(self) -> Optional[str]:
        """Token of the record observed while planning."""
        return self.record.token if self.record else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_key': self.address,
            'action': self.action.value,
            'diff': [diff.to_dict() for diff in self.diffs],
            'reason': self.reason,
        }


@dataclass
class PlanStep:
    """One remote operation with the steps it must wait for."""

    address: str
    operation: StepOperation
    depends_on: Set[str] = field(default_factory=set)
    identifiers: List[str] = field(default_factory=list)  # Objects a delete step removes
    replacement: bool = False

    @property
    def step_id(self) -> str:
        suffix = "deposed" if self.operation == StepOperation.DELETE_DEPOSED else self.operation.value
        if self.replacement and self.operation == StepOperation.DELETE:
            suffix = "delete-old"
        return f"{self.address}:{suffix}"


@dataclass
class Plan:
    """Ordered changes, the DAG they were computed from, and the step graph."""

    changes: List[ResourceChange]
    graph: DependencyGraph
    steps: Dict[str, PlanStep] = field(default_factory=dict)
    step_order: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def get_change(self, address: str) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def changes_by_action(self, action: Action) -> List[ResourceChange]:
        return [change for change in self.changes if change.action == action]

    def actions(self) -> Dict[str, Action]:
        return {change.address: change.action for change in self.changes}

    def has_changes(self) -> bool:
        """Check if any change needs remote work."""
        return any(change.action != Action.NOOP for change in self.changes)

    def steps_for(self, address: str) -> List[PlanStep]:
        return [self.steps[step_id] for step_id in self.step_order if self.steps[step_id].address == address]

    def get_summary(self) -> Dict[str, int]:
        """Count changes by action."""
        summary = {action.value: 0 for action in Action}
        for change in self.changes:
            summary[change.action.value] += 1
        return summary

    def to_dict(self) -> List[Dict[str, Any]]:
        """Operator-facing representation: ordered resource_key / action / diff entries."""
        return [change.to_dict() for change in self.changes]


class Planner:
    """Creates plans. Never writes to the state store."""

    def __init__(self, state_store: StateStore):
        """Initialize planner.

        Args:
            state_store: Store read for the recorded state
        """
        self.state_store = state_store
        self.logger = get_logger(__name__)

    def plan(self, resources: Iterable[Resource]) -> Plan:
        """Plan the changes that make recorded state match ``resources``.

        Raises:
            ConfigurationError: For cycles, unresolved references or invalid attributes
        """
        records = self.state_store.list()
        graph = build_graph(resources, records)
        return self._plan_graph(graph)

    def plan_destroy(self) -> Plan:
        """Plan destroying every recorded resource."""
        records = self.state_store.list()
        graph = build_graph([], records)
        return self._plan_graph(graph)

    def _plan_graph(self, graph: DependencyGraph) -> Plan:
        self.logger.info(f"Planning {graph.size()} resources...")

        order = graph.topological_sort()
        by_address: Dict[str, ResourceChange] = {}

        for address in order:
            node = graph.nodes[address]
            by_address[address] = self._classify(node, by_address)

        changes = [by_address[address] for address in order]
        steps = _build_steps(graph, by_address, order)
        step_order = _order_steps(steps, {address: i for i, address in enumerate(order)})

        plan = Plan(changes=changes, graph=graph, steps=steps, step_order=step_order)
        summary = plan.get_summary()
        self.logger.info(
            "Plan: " + ", ".join(f"{count} {name}" for name, count in summary.items() if count)
        )
        return plan

    def _classify(self, node: GraphNode, planned: Dict[str, ResourceChange]) -> ResourceChange:
        resource = node.resource
        record = node.record

        if resource is None:
            return ResourceChange(
                address=node.address,
                kind=record.kind,
                action=Action.DESTROY,
                record=record,
                diffs=[AttributeDiff(name, value, None) for name, value in sorted(record.attributes.items())],
                reason="Resource is no longer declared",
            )

        def lookup(ref: Reference) -> Any:
            producer = planned[ref.address]
            if producer.action.produces_new_outputs or producer.record is None:
                return UNKNOWN
            if producer.action == Action.UPDATE:
                if ref.attribute.split('.')[0] in get_schema(producer.kind).update_outputs:
                    return UNKNOWN
            try:
                return producer.record.output(ref.attribute)
            except (KeyError, IndexError, TypeError):
                return UNKNOWN

        attributes = resolve_attributes(resource.attributes, lookup)
        change = ResourceChange(
            address=node.address,
            kind=resource.kind,
            action=Action.NOOP,
            resource=resource,
            record=record,
            planned_attributes=attributes,
        )

        if record is None:
            change.action = Action.READ if resource.is_data_source else Action.CREATE
            change.diffs = [AttributeDiff(name, None, value) for name, value in sorted(attributes.items())]
            change.reason = "Data lookup has not been read" if resource.is_data_source else "Resource does not exist"
            return change

        change.diffs = _diff(record.attributes, attributes, resource)

        if resource.is_data_source:
            if change.diffs:
                change.action = Action.READ
                change.reason = "Lookup query changed"
            return change

        if not change.diffs:
            if record.deposed:
                change.action = Action.DESTROY_DEPOSED
                change.reason = f"{len(record.deposed)} replaced instance(s) still await deletion"
            else:
                change.reason = "No changes detected"
            return change

        forcing = [diff.name for diff in change.diffs if diff.forces_replacement]
        if forcing:
            if resource.lifecycle == LifecyclePolicy.CREATE_BEFORE_DESTROY:
                change.action = Action.REPLACE_CREATE_BEFORE_DESTROY
            else:
                change.action = Action.REPLACE_DESTROY_THEN_CREATE
            change.reason = f"Immutable attribute(s) changed: {', '.join(forcing)}"
        else:
            change.action = Action.UPDATE
            change.reason = f"Attribute(s) changed: {', '.join(diff.name for diff in change.diffs)}"

        return change


def _values_equal(resource: Resource, name: str, before: Any, after: Any) -> bool:
    if contains_unknown(after):
        return False
    return resource.schema.equivalent(name, before, after)


def _diff(before: Dict[str, Any], after: Dict[str, Any], resource: Resource) -> List[AttributeDiff]:
    diffs = []
    for name in sorted(set(before) | set(after)):
        old = before.get(name, _MISSING)
        new = after.get(name, _MISSING)
        if old is not _MISSING and new is not _MISSING and _values_equal(resource, name, old, new):
            continue
        diffs.append(AttributeDiff(
            name=name,
            before=None if old is _MISSING else old,
            after=None if new is _MISSING else new,
            forces_replacement=resource.is_immutable(name),
        ))
    return diffs


def _render(value: Any) -> Any:
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {key: _render(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(item) for item in value]
    return value


def _build_steps(
    graph: DependencyGraph,
    changes: Dict[str, ResourceChange],
    order: List[str]
) -> Dict[str, PlanStep]:
    """Expand node actions into remote operations and their ordering edges.

    - Consumers wait for the step that makes each producer ready.
    - Create-before-destroy: the old instance goes only after the new one
      exists and every dependent has been rewired.
    - Destroy-then-create: dependents being torn down go first, then the old
      instance, then the new one.
    - A destroyed resource goes after every recorded consumer is done with it.
    """
    steps: Dict[str, PlanStep] = {}
    ready_step: Dict[str, str] = {}
    teardown_step: Dict[str, str] = {}
    node_steps: Dict[str, List[str]] = {address: [] for address in order}

    def add(step: PlanStep) -> PlanStep:
        steps[step.step_id] = step
        node_steps[step.address].append(step.step_id)
        return step

    for address in order:
        change = changes[address]
        record = change.record
        action = change.action

        if action in (Action.CREATE, Action.UPDATE, Action.READ):
            operation = {
                Action.CREATE: StepOperation.CREATE,
                Action.UPDATE: StepOperation.UPDATE,
                Action.READ: StepOperation.READ,
            }[action]
            ready_step[address] = add(PlanStep(address, operation)).step_id
        elif action == Action.DESTROY:
            teardown_step[address] = add(PlanStep(
                address, StepOperation.DELETE, identifiers=_identifiers(record) + list(record.deposed)
            )).step_id
        elif action == Action.REPLACE_CREATE_BEFORE_DESTROY:
            ready_step[address] = add(PlanStep(address, StepOperation.CREATE, replacement=True)).step_id
            add(PlanStep(address, StepOperation.DELETE, identifiers=_identifiers(record), replacement=True))
        elif action == Action.REPLACE_DESTROY_THEN_CREATE:
            teardown_step[address] = add(PlanStep(
                address, StepOperation.DELETE, identifiers=_identifiers(record) + list(record.deposed), replacement=True
            )).step_id
            create = add(PlanStep(address, StepOperation.CREATE, replacement=True))
            create.depends_on.add(teardown_step[address])
            ready_step[address] = create.step_id

        if record is not None and record.deposed and action not in (Action.DESTROY, Action.REPLACE_DESTROY_THEN_CREATE):
            add(PlanStep(address, StepOperation.DELETE_DEPOSED, identifiers=list(record.deposed)))

    # Dependents recorded in state, including ones no longer declared
    recorded_dependents: Dict[str, Set[str]] = {address: set() for address in order}
    for address in order:
        record = changes[address].record
        if record is not None:
            for dep in record.dependencies:
                if dep in recorded_dependents:
                    recorded_dependents[dep].add(address)

    for address in order:
        change = changes[address]
        node = graph.nodes[address]

        # Consumers wait for their producers to be ready
        if node.is_declared:
            for producer in node.dependencies:
                if producer in ready_step:
                    for step_id in node_steps[address]:
                        step = steps[step_id]
                        if step.operation in (StepOperation.CREATE, StepOperation.UPDATE, StepOperation.READ):
                            step.depends_on.add(ready_step[producer])

        consumers = recorded_dependents[address] | {d for d in node.dependents if d in node_steps}
        consumers.discard(address)

        for step_id in node_steps[address]:
            step = steps[step_id]
            if step.operation not in (StepOperation.DELETE, StepOperation.DELETE_DEPOSED):
                continue

            if change.action == Action.REPLACE_DESTROY_THEN_CREATE:
                # Only consumers that are themselves torn down go first
                for consumer in consumers:
                    if consumer in teardown_step:
                        step.depends_on.add(teardown_step[consumer])
                continue

            if change.action == Action.REPLACE_CREATE_BEFORE_DESTROY and step.operation == StepOperation.DELETE:
                step.depends_on.add(ready_step[address])

            for consumer in consumers:
                step.depends_on.update(node_steps[consumer])

    return steps


def _identifiers(record: Optional[StateRecord]) -> List[str]:
    if record is None or record.identifier is None:
        return []
    return [record.identifier]


def _order_steps(steps: Dict[str, PlanStep], rank: Dict[str, int]) -> List[str]:
    """Topologically order steps; ties follow the node order."""
    op_rank = {op: i for i, op in enumerate(StepOperation)}
    dependents: Dict[str, Set[str]] = {step_id: set() for step_id in steps}
    in_degree = {step_id: 0 for step_id in steps}

    for step_id, step in steps.items():
        for dep in step.depends_on:
            dependents[dep].add(step_id)
            in_degree[step_id] += 1

    def key(step_id: str):
        step = steps[step_id]
        return (rank[step.address], op_rank[step.operation], step_id)

    heap = [key(step_id) for step_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(heap)
    ordered = []

    while heap:
        _, _, step_id = heapq.heappop(heap)
        ordered.append(step_id)
        for dependent in dependents[step_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(heap, key(dependent))

    if len(ordered) != len(steps):
        stuck = sorted(set(steps) - set(ordered))
        raise EngineError(
            f"Plan steps cannot be ordered: {', '.join(stuck)}",
            context=ErrorContext(operation='plan')
        )

    return ordered
