"""Reference resolution: references become graph edges and, later, values."""

from typing import Any, Callable, Dict, Iterable, Set

from fleetform.resources.models import Reference, Resource, substitute_references
from fleetform.utils.errors import (
    ConfigurationError,
    ErrorContext,
    InvalidAttributeError,
    UnresolvedReferenceError,
)
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)


class ReferenceResolver:
    """Indexes declared resources and turns their references into edges."""

    def __init__(self, resources: Iterable[Resource]):
        """Index resources by address.

        Raises:
            ConfigurationError: If two declarations share an address
        """
        self.index: Dict[str, Resource] = {}
        for resource in resources:
            if resource.address in self.index:
                raise ConfigurationError(
                    f"Resource '{resource.address}' is declared more than once",
                    context=ErrorContext(resource_id=resource.address)
                )
            self.index[resource.address] = resource

    def dependencies_of(self, resource: Resource) -> Set[str]:
        """Addresses of every producer ``resource`` consumes.

        Raises:
            UnresolvedReferenceError: If a producer is not declared
            InvalidAttributeError: If a referenced output does not exist on the producer's kind
        """
        producers: Set[str] = set()

        for path, ref in resource.references():
            producer = self.index.get(ref.address)
            if producer is None:
                raise UnresolvedReferenceError(resource.address, ref.address)
            self._check_output(resource, path, ref, producer)
            producers.add(ref.address)

        for address in resource.depends_on:
            if address not in self.index:
                raise UnresolvedReferenceError(resource.address, address)
            producers.add(address)

        if resource.address in producers:
            raise ConfigurationError(
                f"Resource '{resource.address}' references itself",
                context=ErrorContext(resource_id=resource.address)
            )

        return producers

    def edges(self) -> Dict[str, Set[str]]:
        """Map every address to the addresses it depends on."""
        return {address: self.dependencies_of(resource) for address, resource in self.index.items()}

    def _check_output(self, consumer: Resource, path: str, ref: Reference, producer: Resource) -> None:
        outputs = producer.schema.outputs
        head = ref.attribute.split('.', 1)[0]
        if outputs is not None and head not in outputs:
            raise InvalidAttributeError(
                f"'{consumer.address}.{path}' references unknown output '{ref.attribute}' "
                f"of {producer.kind.value} (available: {', '.join(sorted(outputs))})",
                context=ErrorContext(resource_id=consumer.address, resource_type=consumer.kind.value)
            )


def resolve_attributes(attributes: Dict[str, Any], lookup: Callable[[Reference], Any]) -> Dict[str, Any]:
    """Replace every reference in an attribute mapping with ``lookup(ref)``."""
    return substitute_references(attributes, lookup)
