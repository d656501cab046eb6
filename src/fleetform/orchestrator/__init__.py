"""Orchestrator module for planning and apply."""

from fleetform.orchestrator.resolver import ReferenceResolver, resolve_attributes
from fleetform.orchestrator.dependency_graph import DependencyGraph, GraphNode, build_graph
from fleetform.orchestrator.planner import (
    Action,
    AttributeDiff,
    Plan,
    PlanStep,
    Planner,
    ResourceChange,
    StepOperation,
)
from fleetform.orchestrator.executor import (
    ApplyExecutor,
    ApplyReport,
    CancellationToken,
    NodeResult,
    NodeStatus,
    ProgressCallback,
    StepResult,
    StepStatus,
)
from fleetform.orchestrator.orchestrator import ProvisioningOrchestrator

__all__ = [
    # Resolution and graph
    'ReferenceResolver',
    'resolve_attributes',
    'DependencyGraph',
    'GraphNode',
    'build_graph',
    # Planner
    'Action',
    'AttributeDiff',
    'Plan',
    'PlanStep',
    'Planner',
    'ResourceChange',
    'StepOperation',
    # Executor
    'ApplyExecutor',
    'ApplyReport',
    'CancellationToken',
    'NodeResult',
    'NodeStatus',
    'ProgressCallback',
    'StepResult',
    'StepStatus',
    # Orchestrator
    'ProvisioningOrchestrator',
]
