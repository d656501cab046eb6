"""Selection of provider adapters by resource kind."""

from typing import Dict, Iterable, Union

from fleetform.providers.base import (
    DataSourceAdapter,
    FleetCapable,
    HealthCheckCapable,
    ProviderAdapter,
)
from fleetform.resources.schema import ResourceKind
from fleetform.utils.errors import ConfigurationError, ErrorContext


Adapter = Union[ProviderAdapter, DataSourceAdapter]


class ProviderRegistry:
    """Maps each resource kind to the adapter that manages it."""

    def __init__(self, adapters: Dict[ResourceKind, Adapter]):
        self._adapters = {ResourceKind(kind): adapter for kind, adapter in adapters.items()}

    def kinds(self) -> Iterable[ResourceKind]:
        """Kinds with a registered adapter."""
        return self._adapters.keys()

    def get(self, kind: ResourceKind) -> Adapter:
        """Get the adapter for a kind.

        Raises:
            ConfigurationError: If no adapter handles the kind
        """
        adapter = self._adapters.get(ResourceKind(kind))
        if adapter is None:
            raise ConfigurationError(
                f"No provider adapter registered for kind: {ResourceKind(kind).value}",
                context=ErrorContext(resource_type=ResourceKind(kind).value)
            )
        return adapter

    def resource(self, kind: ResourceKind) -> ProviderAdapter:
        """Get a managed-resource adapter."""
        return self._require(kind, ProviderAdapter, "create/read/update/delete")

    def data_source(self, kind: ResourceKind) -> DataSourceAdapter:
        """Get a data lookup adapter."""
        return self._require(kind, DataSourceAdapter, "lookup")

    def health(self, kind: ResourceKind) -> HealthCheckCapable:
        """Get a health-check capable adapter."""
        return self._require(kind, HealthCheckCapable, "health checks")

    def fleet(self, kind: ResourceKind) -> FleetCapable:
        """Get a fleet capable adapter."""
        return self._require(kind, FleetCapable, "fleet membership")

    def _require(self, kind: ResourceKind, capability: type, label: str):
        adapter = self.get(kind)
        if not isinstance(adapter, capability):
            raise ConfigurationError(
                f"Adapter for {ResourceKind(kind).value} does not support {label}",
                context=ErrorContext(resource_type=ResourceKind(kind).value)
            )
        return adapter
