"""Main orchestrator that coordinates planning and apply."""

from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Tuple

from fleetform.orchestrator.executor import (
    ApplyExecutor,
    ApplyReport,
    CancellationToken,
    ProgressCallback,
)
from fleetform.orchestrator.planner import Plan, Planner
from fleetform.providers.registry import ProviderRegistry
from fleetform.resources.models import Resource
from fleetform.resources.schema import get_schema
from fleetform.state.base import StateStore, new_token
from fleetform.utils.errors import ErrorContext, ResourceNotFoundError, error_handler
from fleetform.utils.logging import LogContext, get_logger
from fleetform.utils.retry import RetryStrategy

logger = get_logger(__name__)


class ProvisioningOrchestrator:
    """Coordinates locking, refresh, planning and apply against one state scope."""

    def __init__(
        self,
        state_store: StateStore,
        registry: ProviderRegistry,
        max_workers: int = 10,
        retry_strategy: Optional[RetryStrategy] = None,
        scope: str = "default",
        lock_timeout: float = 30.0
    ):
        """Initialize orchestrator.

        Args:
            state_store: Store holding the applied state
            registry: Provider adapters by kind
            max_workers: Maximum concurrent provider calls
            retry_strategy: Retry policy for provider calls
            scope: Lock scope guarding concurrent runs (usually the workspace)
            lock_timeout: Seconds to wait for the scope lock
        """
        self.state_store = state_store
        self.registry = registry
        self.scope = scope
        self.lock_timeout = lock_timeout
        self.retry_strategy = retry_strategy or RetryStrategy()
        self._lock_owner: Optional[str] = None

        self.planner = Planner(state_store)
        self.executor = ApplyExecutor(
            registry=registry,
            state_store=state_store,
            max_workers=max_workers,
            retry_strategy=self.retry_strategy
        )

        self.logger = get_logger(__name__)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the scope lock for a block; nested blocks reuse the held lock.

        Wrap refresh, plan and apply in one block so no other run can change
        the state between planning and applying.

        Raises:
            LockBusyError: If another run holds the scope lock
        """
        if self._lock_owner is not None:
            yield
            return

        owner = new_token()
        with self.state_store.locked(self.scope, self.lock_timeout, owner):
            self._lock_owner = owner
            try:
                yield
            finally:
                self._lock_owner = None

    def plan(self, resources: Iterable[Resource]) -> Plan:
        """Plan without taking the lock. Never writes state."""
        return self.planner.plan(resources)

    def plan_destroy(self) -> Plan:
        return self.planner.plan_destroy()

    def refresh(self) -> Dict[str, str]:
        """Re-read every recorded resource from the provider.

        Records whose remote object is gone are dropped so the next plan
        recreates them. Tracked attributes and outputs are updated from the
        remote values so drift shows up as a diff.

        Returns:
            Mapping of address to "removed", "changed" or "unchanged"
        """
        results = {}
        for address, record in sorted(self.state_store.list().items()):
            if get_schema(record.kind).data_source or record.identifier is None:
                continue

            adapter = self.registry.resource(record.kind)
            try:
                remote_attributes, outputs = self.retry_strategy.execute_with_retry(
                    adapter.read, record.identifier
                )
            except ResourceNotFoundError:
                self.logger.warning(f"{address} no longer exists remotely; dropping its record")
                self.state_store.delete(address, record.token)
                results[address] = "removed"
                continue
            except Exception as e:
                raise error_handler.handle_exception(
                    e, ErrorContext(resource_id=address, resource_type=record.kind.value, operation='refresh')
                )

            schema = get_schema(record.kind)
            attributes = {}
            for name, value in record.attributes.items():
                remote = remote_attributes.get(name, value)
                attributes[name] = value if schema.equivalent(name, value, remote) else remote
            if attributes == record.attributes and outputs == record.outputs:
                results[address] = "unchanged"
                continue

            self.logger.info(f"{address} drifted from its recorded state")
            self.state_store.put(
                address,
                record.model_copy(update={'attributes': attributes, 'outputs': outputs}),
                record.token
            )
            results[address] = "changed"

        return results

    def apply(
        self,
        plan: Plan,
        cancellation: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyReport:
        """Apply a previously computed plan under the scope lock.

        A plan computed before another run changed the state fails its
        writes with ConflictError; re-plan and apply again.
        """
        with self.locked():
            with LogContext(self.logger, operation='apply'):
                return self.executor.apply(plan, cancellation, progress_callback)

    def deploy(
        self,
        resources: Iterable[Resource],
        refresh: bool = True,
        cancellation: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, ApplyReport]:
        """Lock, optionally refresh, plan and apply in one run.

        Raises:
            LockBusyError: If another run holds the scope lock
            ConfigurationError: If the declarations are invalid; nothing is applied
        """
        resources = list(resources)
        with self.locked():
            with LogContext(self.logger, operation='deploy'):
                if refresh:
                    self.refresh()
                plan = self.planner.plan(resources)
                report = self.executor.apply(plan, cancellation, progress_callback)
        return plan, report

    def destroy(
        self,
        cancellation: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> Tuple[Plan, ApplyReport]:
        """Destroy every recorded resource, consumers first."""
        with self.locked():
            with LogContext(self.logger, operation='destroy'):
                plan = self.planner.plan_destroy()
                report = self.executor.apply(plan, cancellation, progress_callback)
        return plan, report
