"""Apply executor: runs the step graph with a bounded worker pool."""

from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
import heapq
import threading

from fleetform.orchestrator.planner import Action, Plan, PlanStep, ResourceChange, StepOperation
from fleetform.orchestrator.resolver import resolve_attributes
from fleetform.providers.registry import ProviderRegistry
from fleetform.resources.models import Reference
from fleetform.resources.schema import get_schema
from fleetform.state.base import StateStore
from fleetform.state.models import StateRecord, utcnow
from fleetform.utils.errors import (
    EngineError,
    ErrorContext,
    ProviderError,
    ResourceNotFoundError,
    error_handler,
)
from fleetform.utils.logging import get_logger
from fleetform.utils.retry import RetryStrategy

logger = get_logger(__name__)


class NodeStatus(str, Enum):
    """Outcome of one planned resource."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    UNCHANGED = "unchanged"


class StepStatus(str, Enum):
    """Status of one step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation signal shared with a running apply.

    In-flight provider calls finish; no new steps start.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class StepResult:
    """Result of executing a single step."""

    step_id: str
    address: str
    operation: StepOperation
    status: StepStatus = StepStatus.PENDING
    error: Optional[EngineError] = None
    message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds


@dataclass
class NodeResult:
    """Result of all steps of one resource."""

    address: str
    action: Action
    status: NodeStatus
    error: Optional[EngineError] = None
    identifier: Optional[str] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status in (NodeStatus.SUCCEEDED, NodeStatus.UNCHANGED)


@dataclass
class ApplyReport:
    """Complete apply result."""

    nodes: Dict[str, NodeResult] = field(default_factory=dict)
    steps: Dict[str, StepResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    cancelled: bool = False

    def is_success(self) -> bool:
        """Check if every node succeeded or was unchanged."""
        return all(node.is_success() for node in self.nodes.values())

    def nodes_with(self, status: NodeStatus) -> List[str]:
        return [address for address, node in self.nodes.items() if node.status == status]

    def errors(self) -> Dict[str, EngineError]:
        return {address: node.error for address, node in self.nodes.items() if node.error is not None}

    def get_summary(self) -> Dict[str, int]:
        """Count nodes by outcome."""
        summary = {status.value: 0 for status in NodeStatus}
        for node in self.nodes.values():
            summary[node.status.value] += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.is_success(),
            'cancelled': self.cancelled,
            'duration': self.duration,
            'summary': self.get_summary(),
            'nodes': {
                address: {
                    'action': node.action.value,
                    'status': node.status.value,
                    'identifier': node.identifier,
                    'error': node.error.message if node.error else None,
                }
                for address, node in self.nodes.items()
            },
        }


# Type alias for progress callback: (step id, status, message)
ProgressCallback = Callable[[str, StepStatus, Optional[str]], None]


@dataclass
class _StepOutcome:
    identifier: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)


class ApplyExecutor:
    """Executes plans with parallelization bounded by ``max_workers``.

    Provider calls run on worker threads. State writes, output publication
    and scheduling happen on the coordinating thread.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: StateStore,
        max_workers: int = 10,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize apply executor.

        Args:
            registry: Provider adapters by kind
            state_store: Store updated after every successful step
            max_workers: Maximum number of concurrent provider calls
            retry_strategy: Retry policy for provider calls
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.registry = registry
        self.state_store = state_store
        self.max_workers = max_workers
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.logger = get_logger(__name__)

    def apply(
        self,
        plan: Plan,
        cancellation: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyReport:
        """Execute a plan.

        Args:
            plan: Plan to execute
            cancellation: Optional token to stop starting new steps
            progress_callback: Optional callback for progress updates

        Returns:
            ApplyReport with per-node and per-step outcomes
        """
        run = _ApplyRun(self, plan, cancellation or CancellationToken(), progress_callback)
        return run.execute()

    def _call(self, func: Callable, *args):
        return self.retry_strategy.execute_with_retry(func, *args)

    def run_step(self, step: PlanStep, change: ResourceChange, record: Optional[StateRecord],
                 attributes: Dict[str, Any]) -> _StepOutcome:
        """Perform the provider calls of one step. Runs on a worker thread."""
        kind = change.kind
        extra = {'resource_id': step.address, 'resource_type': kind.value, 'operation': step.operation.value}
        self.logger.info(f"{step.operation.value} {step.address}", extra=extra)

        if step.operation in (StepOperation.CREATE, StepOperation.READ):
            if get_schema(kind).data_source:
                identifier, outputs = self._call(self.registry.data_source(kind).lookup, attributes)
            else:
                identifier, outputs = self._call(self.registry.resource(kind).create, attributes)
            return _StepOutcome(identifier, attributes, outputs)

        if step.operation == StepOperation.UPDATE:
            outputs = self._call(self.registry.resource(kind).update, record.identifier, attributes)
            return _StepOutcome(record.identifier, attributes, outputs)

        # Delete steps; data lookups own nothing remote
        if not get_schema(kind).data_source:
            adapter = self.registry.resource(kind)
            for identifier in step.identifiers:
                try:
                    self._call(adapter.delete, identifier)
                except ResourceNotFoundError:
                    self.logger.warning(f"{step.address}: {identifier} was already gone", extra=extra)
        return _StepOutcome()


class _ApplyRun:
    """State of a single apply."""

    def __init__(
        self,
        executor: ApplyExecutor,
        plan: Plan,
        cancellation: CancellationToken,
        progress_callback: Optional[ProgressCallback]
    ):
        self.executor = executor
        self.plan = plan
        self.store = executor.state_store
        self.cancellation = cancellation
        self.progress_callback = progress_callback
        self.logger = executor.logger

        self.changes = {change.address: change for change in plan.changes}
        self.rank = {step_id: i for i, step_id in enumerate(plan.step_order)}
        self.results = {
            step_id: StepResult(step_id, step.address, step.operation)
            for step_id, step in plan.steps.items()
        }
        self.waiting = {step_id: set(step.depends_on) for step_id, step in plan.steps.items()}
        self.dependents: Dict[str, Set[str]] = {step_id: set() for step_id in plan.steps}
        for step_id, step in plan.steps.items():
            for dep in step.depends_on:
                self.dependents[dep].add(step_id)

        # Published records: what dependents resolve their references against
        self.published: Dict[str, StateRecord] = {
            change.address: change.record for change in plan.changes if change.record is not None
        }
        self.tokens: Dict[str, Optional[str]] = {
            change.address: change.expected_token for change in plan.changes
        }
        self.ready: List[tuple] = []

    def execute(self) -> ApplyReport:
        start_time = utcnow()
        self.logger.info(
            f"Starting apply of {len(self.plan.steps)} steps "
            f"(max_workers={self.executor.max_workers})..."
        )

        for step_id, deps in self.waiting.items():
            if not deps:
                heapq.heappush(self.ready, (self.rank[step_id], step_id))

        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.executor.max_workers) as pool:
            while True:
                while self.ready and len(running) < self.executor.max_workers:
                    if self.cancellation.is_cancelled:
                        break
                    _, step_id = heapq.heappop(self.ready)
                    future = self._start(pool, step_id)
                    if future is not None:
                        running[future] = step_id

                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: self.rank[running[f]]):
                    step_id = running.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        self._fail(step_id, e)
                        continue
                    self._complete(step_id, outcome)

        for result in self.results.values():
            if result.status == StepStatus.PENDING:
                result.status = StepStatus.CANCELLED
                result.message = "Apply was cancelled before this step started"
                self._notify(result)

        end_time = utcnow()
        report = ApplyReport(
            nodes=self._node_results(),
            steps=self.results,
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
            cancelled=self.cancellation.is_cancelled,
        )

        summary = ", ".join(f"{count} {name}" for name, count in report.get_summary().items() if count)
        if report.is_success():
            self.logger.info(f"Apply completed in {report.duration:.1f}s: {summary}")
        else:
            self.logger.error(f"Apply finished with problems: {summary}")
        return report

    def _start(self, pool: ThreadPoolExecutor, step_id: str) -> Optional[Future]:
        step = self.plan.steps[step_id]
        change = self.changes[step.address]
        result = self.results[step_id]
        result.status = StepStatus.RUNNING
        result.start_time = utcnow()
        self._notify(result)

        try:
            attributes = {}
            if step.operation in (StepOperation.CREATE, StepOperation.UPDATE, StepOperation.READ):
                attributes = resolve_attributes(change.resource.attributes, self._lookup_output)
        except Exception as e:
            self._fail(step_id, e)
            return None

        return pool.submit(
            self.executor.run_step, step, change, self.published.get(step.address), attributes
        )

    def _lookup_output(self, ref: Reference) -> Any:
        record = self.published.get(ref.address)
        if record is None:
            raise ProviderError(f"Outputs of '{ref.address}' are not available")
        try:
            return record.output(ref.attribute)
        except (KeyError, IndexError, TypeError):
            raise ProviderError(
                f"'{ref.address}' did not produce output '{ref.attribute}'",
                context=ErrorContext(resource_id=ref.address)
            )

    def _complete(self, step_id: str, outcome: _StepOutcome) -> None:
        step = self.plan.steps[step_id]
        try:
            self._commit(step, outcome)
        except Exception as e:
            # The remote change happened but could not be recorded
            self._fail(step_id, e)
            return

        result = self.results[step_id]
        self._finish(result, StepStatus.SUCCEEDED)

        for dependent in self.dependents[step_id]:
            self.waiting[dependent].discard(step_id)
            if not self.waiting[dependent] and self.results[dependent].status == StepStatus.PENDING:
                heapq.heappush(self.ready, (self.rank[dependent], dependent))

    def _commit(self, step: PlanStep, outcome: _StepOutcome) -> None:
        """Write the State Store and publish outputs for a successful step."""
        address = step.address
        change = self.changes[address]
        current = self.published.get(address)

        if step.operation in (StepOperation.CREATE, StepOperation.READ, StepOperation.UPDATE):
            deposed = list(current.deposed) if current is not None else []
            if change.action == Action.REPLACE_CREATE_BEFORE_DESTROY and current is not None:
                deposed.append(current.identifier)
            record = StateRecord(
                address=address,
                kind=change.kind,
                identifier=outcome.identifier,
                attributes=outcome.attributes,
                outputs=outcome.outputs,
                dependencies=sorted(self.plan.graph.get_dependencies(address)),
                lifecycle=change.resource.lifecycle,
                deposed=deposed,
            )
            self._put(address, record)
            return

        if step.operation == StepOperation.DELETE and change.action != Action.REPLACE_CREATE_BEFORE_DESTROY:
            self.store.delete(address, self.tokens[address])
            self.tokens[address] = None
            self.published.pop(address, None)
            return

        # Old or deposed instances removed; the record itself stays
        if current is not None:
            remaining = [identifier for identifier in current.deposed if identifier not in step.identifiers]
            self._put(address, current.model_copy(update={'deposed': remaining, 'updated_at': utcnow()}))

    def _put(self, address: str, record: StateRecord) -> None:
        token = self.store.put(address, record, self.tokens[address])
        record = record.model_copy(update={'token': token})
        self.tokens[address] = token
        self.published[address] = record

    def _fail(self, step_id: str, error: Exception) -> None:
        step = self.plan.steps[step_id]
        context = ErrorContext(
            resource_id=step.address,
            resource_type=self.changes[step.address].kind.value,
            operation=step.operation.value
        )
        engine_error = error_handler.handle_exception(error, context)
        error_handler.log_error(engine_error)

        result = self.results[step_id]
        result.error = engine_error
        self._finish(result, StepStatus.FAILED, engine_error.message)

        # Skip everything downstream
        queue = list(self.dependents[step_id])
        while queue:
            dependent = queue.pop()
            skipped = self.results[dependent]
            if skipped.status != StepStatus.PENDING:
                continue
            skipped.status = StepStatus.SKIPPED
            skipped.message = f"Upstream step {step_id} failed"
            self._notify(skipped)
            queue.extend(self.dependents[dependent])

    def _finish(self, result: StepResult, status: StepStatus, message: Optional[str] = None) -> None:
        result.status = status
        result.message = message
        result.end_time = utcnow()
        if result.start_time:
            result.duration = (result.end_time - result.start_time).total_seconds()
        self._notify(result)

    def _notify(self, result: StepResult) -> None:
        if self.progress_callback:
            self.progress_callback(result.step_id, result.status, result.message)

    def _is_cleanup(self, result: StepResult) -> bool:
        """Removal of a replaced or deposed instance; the live one is untouched."""
        step = self.plan.steps[result.step_id]
        if step.operation == StepOperation.DELETE_DEPOSED:
            return True
        return (
            step.operation == StepOperation.DELETE
            and self.changes[step.address].action == Action.REPLACE_CREATE_BEFORE_DESTROY
        )

    def _only_cleanup_skipped(self, results: List[StepResult]) -> bool:
        """The node's new state was applied and only cleanup waits on a failed consumer.

        Instances left behind stay deposed and are removed by the next plan.
        """
        live = [result for result in results if not self._is_cleanup(result)]
        return bool(live) and all(result.status == StepStatus.SUCCEEDED for result in live) and all(
            self._is_cleanup(result) for result in results if result.status == StepStatus.SKIPPED
        )

    def _node_results(self) -> Dict[str, NodeResult]:
        by_address: Dict[str, List[StepResult]] = {change.address: [] for change in self.plan.changes}
        for result in self.results.values():
            by_address[result.address].append(result)

        nodes = {}
        for change in self.plan.changes:
            results = by_address[change.address]
            statuses = {result.status for result in results}
            if not results:
                status = NodeStatus.UNCHANGED
            elif StepStatus.FAILED in statuses:
                status = NodeStatus.FAILED
            elif StepStatus.SKIPPED in statuses and not self._only_cleanup_skipped(results):
                status = NodeStatus.SKIPPED
            elif StepStatus.CANCELLED in statuses:
                status = NodeStatus.CANCELLED
            else:
                status = NodeStatus.SUCCEEDED

            error = next((result.error for result in results if result.error is not None), None)
            record = self.published.get(change.address)
            nodes[change.address] = NodeResult(
                address=change.address,
                action=change.action,
                status=status,
                error=error,
                identifier=record.identifier if record else None,
                duration=sum(result.duration for result in results),
            )
        return nodes
