"""Fleet reconciler: keeps target registration in step with live, healthy members."""

import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from fleetform.fleet.models import (
    FleetBinding,
    MemberPhase,
    MemberState,
    PhaseTransition,
    ReconcileReport,
    TargetRegistration,
)
from fleetform.providers.base import FleetMember, HealthStatus, MemberLifecycle
from fleetform.providers.registry import ProviderRegistry
from fleetform.resources.schema import ResourceKind
from fleetform.state.base import StateStore
from fleetform.utils.errors import ConfigurationError, ErrorContext, error_handler
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)

_ACTIVE_PHASES = (MemberPhase.INITIAL, MemberPhase.HEALTHY, MemberPhase.UNHEALTHY)


class FleetReconciler:
    """Continuously reconciles autoscaling membership against target groups.

    Each tick lists the members of every bound autoscaling group, registers
    members that came into service, polls the health of every registration,
    and drains members that left, are terminating, were requested for
    scale-in, or (with ``replace_unhealthy``) turned unhealthy. Draining
    members are deregistered, kept for ``deregistration_delay`` seconds, then
    terminated.

    The reconciler only reads the State Store, so it can run alongside
    plan and apply.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: Optional[StateStore] = None,
        bindings: Optional[List[FleetBinding]] = None,
        interval: float = 10.0,
        healthy_threshold: int = 3,
        unhealthy_threshold: int = 2,
        deregistration_delay: float = 30.0,
        replace_unhealthy: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize reconciler.

        Args:
            registry: Provider adapters by kind
            state_store: Store the bindings are derived from when none are given
            bindings: Explicit group/target-group bindings
            interval: Seconds between ticks in ``run``
            healthy_threshold: Consecutive passes before a target is healthy
            unhealthy_threshold: Consecutive fails before a target is unhealthy
            deregistration_delay: Seconds a draining member keeps before termination
            replace_unhealthy: Drain unhealthy members; None defers to each group's
                ``health_check_type`` (ELB means replace)
            clock: Monotonic time source
        """
        if state_store is None and bindings is None:
            raise ConfigurationError("FleetReconciler needs either a state store or explicit bindings")
        if healthy_threshold < 1 or unhealthy_threshold < 1:
            raise ConfigurationError("Health thresholds must be at least 1")

        self.registry = registry
        self.state_store = state_store
        self.explicit_bindings = bindings
        self.interval = interval
        self.healthy_threshold = healthy_threshold
        self.unhealthy_threshold = unhealthy_threshold
        self.deregistration_delay = deregistration_delay
        self.replace_unhealthy = replace_unhealthy
        self.clock = clock

        self.members: Dict[Tuple[str, str], MemberState] = {}
        self._scale_in: Dict[str, set] = {}
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    # Bindings

    def bindings(self) -> List[FleetBinding]:
        """Current bindings: explicit ones, or derived from the State Store."""
        if self.explicit_bindings is not None:
            return list(self.explicit_bindings)
        return self.bindings_from_state()

    def bindings_from_state(self) -> List[FleetBinding]:
        """Derive bindings from applied autoscaling group records.

        A group feeds the target groups whose ARNs appear in its
        ``target_group_arns`` attribute.
        """
        records = self.state_store.list()
        target_groups = {}
        for address, record in records.items():
            if record.kind == ResourceKind.TARGET_GROUP and record.identifier:
                arn = record.outputs.get('arn', record.identifier)
                target_groups[arn] = (address, record.identifier)

        bindings = []
        for address, record in sorted(records.items()):
            if record.kind != ResourceKind.AUTOSCALING_GROUP or not record.identifier:
                continue
            bound = {}
            for arn in record.attributes.get('target_group_arns') or []:
                if arn in target_groups:
                    tg_address, tg_id = target_groups[arn]
                    bound[tg_address] = tg_id
                else:
                    self.logger.warning(f"{address} feeds unknown target group {arn}")
            bindings.append(FleetBinding(
                group=address,
                group_id=record.identifier,
                target_groups=bound,
                replace_unhealthy=record.attributes.get('health_check_type') == 'ELB',
            ))
        return bindings

    # Control

    def mark_for_termination(self, group: str, member_id: str) -> None:
        """Request scale-in of one member; it drains on the next tick."""
        with self._lock:
            self._scale_in.setdefault(group, set()).add(member_id)
        self.logger.info(f"Member {member_id} of {group} marked for termination", extra={'member_id': member_id})

    def stop(self) -> None:
        """Stop ``run`` after the current tick."""
        self._stop.set()

    def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick every ``interval`` seconds until ``stop`` is called."""
        self._stop.clear()
        self.logger.info(f"Fleet reconciler started (interval={self.interval}s)")
        ticks = 0
        while not self._stop.is_set():
            self.reconcile_once()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self._stop.wait(self.interval)
        self.logger.info("Fleet reconciler stopped")

    # Tick

    def reconcile_once(self) -> ReconcileReport:
        """Perform one reconciliation tick across every binding."""
        report = ReconcileReport()
        bindings = self.bindings()
        self._forget_unbound({binding.group for binding in bindings})
        for binding in bindings:
            try:
                self._reconcile_binding(binding, report)
            except Exception as e:
                error = error_handler.handle_exception(
                    e, ErrorContext(resource_id=binding.group, operation='reconcile')
                )
                error_handler.log_error(error)
                report.errors.append(f"{binding.group}: {error.message}")
        return report

    def _forget_unbound(self, groups: Set[str]) -> None:
        """Drop tracking for groups that no longer have a binding."""
        for group, member_id in [key for key in self.members if key[0] not in groups]:
            self.logger.debug(
                f"Forgetting member {member_id} of unbound group {group}", extra={'member_id': member_id}
            )
            del self.members[(group, member_id)]

    def _reconcile_binding(self, binding: FleetBinding, report: ReconcileReport) -> None:
        fleet = self.registry.fleet(ResourceKind.AUTOSCALING_GROUP)
        listed: Dict[str, FleetMember] = {
            member.member_id: member for member in fleet.list_members(binding.group_id)
        }
        with self._lock:
            scale_in = set(self._scale_in.get(binding.group, set()))

        for member_id, member in listed.items():
            state = self.members.get((binding.group, member_id))
            if state is None:
                state = MemberState(member_id=member_id, group=binding.group)
                self.members[(binding.group, member_id)] = state
                self.logger.debug(f"Tracking new member {member_id}", extra={'member_id': member_id})
            if member_id in scale_in:
                state.scale_in_requested = True

            leaving = member.lifecycle in (MemberLifecycle.TERMINATING, MemberLifecycle.TERMINATED)
            if (leaving or state.scale_in_requested) and state.phase not in (
                MemberPhase.DRAINING, MemberPhase.TERMINATED
            ):
                self._start_drain(binding, state, report)
            elif member.lifecycle == MemberLifecycle.IN_SERVICE and state.phase in (
                MemberPhase.PROVISIONING, MemberPhase.REGISTERING
            ):
                self._register(binding, state, report)

        # Members that left the group
        for (group, member_id), state in list(self.members.items()):
            if group != binding.group or member_id in listed:
                continue
            if state.phase == MemberPhase.TERMINATED:
                del self.members[(group, member_id)]
            elif state.phase != MemberPhase.DRAINING:
                self._start_drain(binding, state, report)

        for (group, _), state in list(self.members.items()):
            if group != binding.group:
                continue
            if state.phase in _ACTIVE_PHASES:
                self._poll(binding, state, report)
                if state.phase == MemberPhase.UNHEALTHY and binding_replaces(binding, self.replace_unhealthy):
                    self.logger.warning(
                        f"Replacing unhealthy member {state.member_id}", extra={'member_id': state.member_id}
                    )
                    self._start_drain(binding, state, report)
            if state.phase == MemberPhase.DRAINING:
                self._advance_drain(binding, state, report)

    def _register(self, binding: FleetBinding, state: MemberState, report: ReconcileReport) -> None:
        self._transition(state, MemberPhase.REGISTERING, report)
        health = self.registry.health(ResourceKind.TARGET_GROUP)

        for tg_address, tg_id in sorted(binding.target_groups.items()):
            if tg_address in state.registrations:
                continue
            try:
                health.register_target(tg_id, state.member_id)
            except Exception as e:
                error = error_handler.handle_exception(
                    e, ErrorContext(resource_id=tg_address, operation='register_target')
                )
                self.logger.warning(
                    f"Registering {state.member_id} with {tg_address} failed, retrying next tick: {error.message}",
                    extra={'member_id': state.member_id}
                )
                return
            state.registrations[tg_address] = TargetRegistration(
                member_id=state.member_id, target_group=tg_address
            )
            report.registered.append(f"{state.member_id}@{tg_address}")

        self._transition(state, MemberPhase.INITIAL, report)

    def _poll(self, binding: FleetBinding, state: MemberState, report: ReconcileReport) -> None:
        health = self.registry.health(ResourceKind.TARGET_GROUP)

        for tg_address, registration in sorted(state.registrations.items()):
            tg_id = binding.target_groups.get(tg_address)
            if tg_id is None:
                continue
            try:
                status = health.poll_health(tg_id, state.member_id)
            except Exception as e:
                # A failed poll counts as a failing check
                error = error_handler.handle_exception(
                    e, ErrorContext(resource_id=tg_address, operation='poll_health')
                )
                self.logger.warning(
                    f"Health poll of {state.member_id} in {tg_address} failed: {error.message}",
                    extra={'member_id': state.member_id}
                )
                report.poll_failures += 1
                registration.record_fail(self.unhealthy_threshold)
                continue

            if status == HealthStatus.HEALTHY:
                registration.record_pass(self.healthy_threshold)
            elif status == HealthStatus.UNHEALTHY:
                registration.record_fail(self.unhealthy_threshold)

        phase = state.aggregate_phase()
        if phase != state.phase:
            self._transition(state, phase, report)

    def _start_drain(self, binding: FleetBinding, state: MemberState, report: ReconcileReport) -> None:
        self._transition(state, MemberPhase.DRAINING, report)
        state.drain_started = self.clock()
        self._deregister(binding, state, report)

    def _deregister(self, binding: FleetBinding, state: MemberState, report: ReconcileReport) -> None:
        health = self.registry.health(ResourceKind.TARGET_GROUP)
        for tg_address, registration in sorted(state.registrations.items()):
            if registration.status == HealthStatus.DRAINING:
                continue
            tg_id = binding.target_groups.get(tg_address)
            if tg_id is not None:
                try:
                    health.deregister_target(tg_id, state.member_id)
                except Exception as e:
                    error = error_handler.handle_exception(
                        e, ErrorContext(resource_id=tg_address, operation='deregister_target')
                    )
                    self.logger.warning(
                        f"Deregistering {state.member_id} from {tg_address} failed: {error.message}",
                        extra={'member_id': state.member_id}
                    )
                    continue
            registration.status = HealthStatus.DRAINING
            report.deregistered.append(f"{state.member_id}@{tg_address}")

        state.deregistered = all(
            registration.status == HealthStatus.DRAINING for registration in state.registrations.values()
        )

    def _advance_drain(self, binding: FleetBinding, state: MemberState, report: ReconcileReport) -> None:
        if not state.deregistered:
            self._deregister(binding, state, report)
            if not state.deregistered:
                return

        if self.clock() - state.drain_started < self.deregistration_delay:
            return

        fleet = self.registry.fleet(ResourceKind.AUTOSCALING_GROUP)
        try:
            fleet.terminate_member(binding.group_id, state.member_id)
        except Exception as e:
            error = error_handler.handle_exception(
                e, ErrorContext(resource_id=binding.group, operation='terminate_member')
            )
            self.logger.warning(
                f"Terminating {state.member_id} failed, retrying next tick: {error.message}",
                extra={'member_id': state.member_id}
            )
            return

        report.terminated.append(state.member_id)
        with self._lock:
            self._scale_in.get(binding.group, set()).discard(state.member_id)
        self._transition(state, MemberPhase.TERMINATED, report)

    def _transition(self, state: MemberState, phase: MemberPhase, report: ReconcileReport) -> None:
        if state.phase == phase:
            return
        self.logger.info(
            f"{state.member_id}: {state.phase.value} -> {phase.value}", extra={'member_id': state.member_id}
        )
        report.transitions.append(PhaseTransition(
            member_id=state.member_id, group=state.group, from_phase=state.phase, to_phase=phase
        ))
        state.phase = phase


def binding_replaces(binding: FleetBinding, override: Optional[bool]) -> bool:
    """Whether unhealthy members of a binding are drained and replaced."""
    return binding.replace_unhealthy if override is None else override
