"""Fleet reconciliation between autoscaling groups and target groups."""

from fleetform.fleet.models import (
    FleetBinding,
    MemberPhase,
    MemberState,
    PhaseTransition,
    ReconcileReport,
    TargetRegistration,
)
from fleetform.fleet.reconciler import FleetReconciler

__all__ = [
    'FleetBinding',
    'FleetReconciler',
    'MemberPhase',
    'MemberState',
    'PhaseTransition',
    'ReconcileReport',
    'TargetRegistration',
]
