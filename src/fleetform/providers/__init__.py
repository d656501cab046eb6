"""Provider adapters: capability interfaces, registry and implementations."""

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
from fleetform.providers.memory import InMemoryPlatform, memory_registry
from fleetform.providers.aws import aws_registry

__all__ = [
    'DataSourceAdapter',
    'FleetCapable',
    'FleetMember',
    'HealthCheckCapable',
    'HealthStatus',
    'MemberLifecycle',
    'Outputs',
    'ProviderAdapter',
    'ProviderRegistry',
    'InMemoryPlatform',
    'memory_registry',
    'aws_registry',
]
