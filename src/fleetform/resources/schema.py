"""Per-kind attribute schemas: immutability, outputs and default lifecycle."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class ResourceKind(str, Enum):
    """Resource kinds the engine understands."""
    LAUNCH_TEMPLATE = "launch-template"
    AUTOSCALING_GROUP = "autoscaling-group"
    LOAD_BALANCER = "load-balancer"
    TARGET_GROUP = "target-group"
    LISTENER = "listener"
    LISTENER_RULE = "listener-rule"
    SECURITY_GROUP = "security-group"
    DATA_LOOKUP = "data-lookup"


class Mutability(str, Enum):
    """Whether an attribute can be changed in place."""
    MUTABLE = "mutable"
    IMMUTABLE = "immutable"


class LifecyclePolicy(str, Enum):
    """Ordering used when a resource has to be replaced."""
    DESTROY_THEN_CREATE = "destroy-then-create"
    CREATE_BEFORE_DESTROY = "create-before-destroy"


@dataclass(frozen=True)
class KindSchema:
    """Attribute model for one resource kind.

    Attributes not listed in ``immutable`` are mutable. ``outputs`` of None
    means any output name may be referenced. ``update_outputs`` are the
    outputs an in-place update can change. ``unordered`` lists compare as
    sets, since the remote API returns them in its own order.
    """
    kind: ResourceKind
    immutable: FrozenSet[str] = field(default_factory=frozenset)
    outputs: Optional[FrozenSet[str]] = None
    update_outputs: FrozenSet[str] = field(default_factory=frozenset)
    unordered: FrozenSet[str] = field(default_factory=frozenset)
    lifecycle: LifecyclePolicy = LifecyclePolicy.DESTROY_THEN_CREATE
    data_source: bool = False

    def equivalent(self, name: str, before: Any, after: Any) -> bool:
        if name in self.unordered and isinstance(before, list) and isinstance(after, list):
            return sorted(before, key=repr) == sorted(after, key=repr)
        return before == after


SCHEMAS: Dict[ResourceKind, KindSchema] = {
    ResourceKind.SECURITY_GROUP: KindSchema(
        kind=ResourceKind.SECURITY_GROUP,
        immutable=frozenset({'name', 'name_prefix', 'description', 'vpc_id'}),
        outputs=frozenset({'id', 'arn', 'name'}),
    ),
    # Launch templates are versioned remotely but treated as immutable here;
    # every change rolls a new template in before the old one goes away.
    ResourceKind.LAUNCH_TEMPLATE: KindSchema(
        kind=ResourceKind.LAUNCH_TEMPLATE,
        immutable=frozenset({
            'name', 'name_prefix', 'image_id', 'instance_type', 'security_groups',
            'user_data', 'key_name', 'iam_instance_profile',
        }),
        outputs=frozenset({'id', 'name', 'latest_version'}),
        update_outputs=frozenset({'latest_version'}),
        unordered=frozenset({'security_groups'}),
        lifecycle=LifecyclePolicy.CREATE_BEFORE_DESTROY,
    ),
    ResourceKind.AUTOSCALING_GROUP: KindSchema(
        kind=ResourceKind.AUTOSCALING_GROUP,
        immutable=frozenset({'name'}),
        outputs=frozenset({'id', 'name', 'arn'}),
        unordered=frozenset({'target_group_arns'}),
    ),
    ResourceKind.LOAD_BALANCER: KindSchema(
        kind=ResourceKind.LOAD_BALANCER,
        immutable=frozenset({'name', 'internal', 'load_balancer_type'}),
        outputs=frozenset({'id', 'arn', 'dns_name', 'zone_id'}),
        unordered=frozenset({'security_groups'}),
    ),
    ResourceKind.TARGET_GROUP: KindSchema(
        kind=ResourceKind.TARGET_GROUP,
        immutable=frozenset({'name', 'port', 'protocol', 'vpc_id', 'target_type'}),
        outputs=frozenset({'id', 'arn', 'name'}),
    ),
    ResourceKind.LISTENER: KindSchema(
        kind=ResourceKind.LISTENER,
        immutable=frozenset({'load_balancer_arn'}),
        outputs=frozenset({'id', 'arn'}),
    ),
    ResourceKind.LISTENER_RULE: KindSchema(
        kind=ResourceKind.LISTENER_RULE,
        immutable=frozenset({'listener_arn'}),
        outputs=frozenset({'id', 'arn'}),
    ),
    ResourceKind.DATA_LOOKUP: KindSchema(
        kind=ResourceKind.DATA_LOOKUP,
        data_source=True,
    ),
}


def get_schema(kind: ResourceKind) -> KindSchema:
    """Get the schema for a kind."""
    return SCHEMAS[ResourceKind(kind)]
