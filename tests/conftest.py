"""Shared fixtures: simulated platform, stores and the load-balanced fleet scenario."""

import logging

import pytest

from fleetform.orchestrator.executor import ApplyExecutor
from fleetform.orchestrator.planner import Planner
from fleetform.providers.memory import InMemoryPlatform, memory_registry
from fleetform.resources.models import Reference, Resource
from fleetform.resources.schema import ResourceKind
from fleetform.state.memory import InMemoryStateStore
from fleetform.utils.retry import no_retry


def ref(expression: str) -> Reference:
    """Shorthand for a typed reference."""
    return Reference.parse(expression)


def declare(kind: str, name: str, /, **attributes) -> Resource:
    lifecycle = attributes.pop('lifecycle', None)
    depends_on = attributes.pop('depends_on', [])
    return Resource(
        kind=ResourceKind(kind),
        name=name,
        attributes=attributes,
        lifecycle=lifecycle,
        depends_on=depends_on,
    )


def scenario_resources(include_rule: bool = False, **overrides):
    """Two security groups, launch template, autoscaling group, load balancer,
    target group and HTTP listener with a 404 default action.

    ``overrides`` maps an address to attribute updates for that declaration.
    """
    declarations = {
        "security-group.alb": dict(name="alb", description="Load balancer ingress"),
        "security-group.instance": dict(name="instance", description="Instance ingress"),
        "launch-template.example": dict(
            name="example",
            image_id="ami-0abc",
            instance_type="t3.micro",
            security_groups=[ref("security-group.instance.id")],
        ),
        "autoscaling-group.example": dict(
            name="example",
            launch_template={"id": ref("launch-template.example.id")},
            min_size=2,
            max_size=10,
            target_group_arns=[ref("target-group.asg.arn")],
        ),
        "load-balancer.example": dict(
            name="example",
            security_groups=[ref("security-group.alb.id")],
        ),
        "target-group.asg": dict(name="asg", port=80, protocol="HTTP"),
        "listener.http": dict(
            load_balancer_arn=ref("load-balancer.example.arn"),
            port=80,
            default_action={"type": "fixed-response", "status_code": 404},
        ),
    }
    if include_rule:
        declarations["listener-rule.asg"] = dict(
            listener_arn=ref("listener.http.arn"),
            priority=100,
            conditions=[{"path_pattern": ["*"]}],
            action={"type": "forward", "target_group_arn": ref("target-group.asg.arn")},
        )

    resources = []
    for address, attributes in declarations.items():
        kind, name = address.split(".")
        attributes = dict(attributes)
        attributes.update(overrides.get(address, {}))
        resources.append(declare(kind, name, **attributes))
    return resources


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI commands install root handlers; drop them between tests."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture
def platform():
    return InMemoryPlatform()


@pytest.fixture
def registry(platform):
    return memory_registry(platform)


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def planner(store):
    return Planner(store)


@pytest.fixture
def executor(registry, store):
    return ApplyExecutor(registry, store, max_workers=4, retry_strategy=no_retry())


@pytest.fixture
def scenario():
    return scenario_resources()


@pytest.fixture
def applied(planner, executor, scenario):
    """The scenario applied once; returns the apply report."""
    report = executor.apply(planner.plan(scenario))
    assert report.is_success()
    return report


SCENARIO_YAML = """\
settings:
  workspace: default
  state_path: state.json
  log_dir: null
  log_level: error
  retry:
    max_retries: 0
  fleet:
    healthy_threshold: 1
resources:
  security-group:
    alb:
      name: alb
      description: Load balancer ingress
    instance:
      name: instance
      description: Instance ingress
  launch-template:
    example:
      name: example
      image_id: ami-0abc
      instance_type: t3.micro
      security_groups:
        - ref: security-group.instance.id
  autoscaling-group:
    example:
      name: example
      launch_template:
        id: {ref: launch-template.example.id}
      min_size: 2
      max_size: 10
      target_group_arns:
        - ref: target-group.asg.arn
  load-balancer:
    example:
      name: example
      security_groups:
        - ref: security-group.alb.id
  target-group:
    asg:
      name: asg
      port: 80
      protocol: HTTP
  listener:
    http:
      load_balancer_arn: {ref: load-balancer.example.arn}
      port: 80
      default_action:
        type: fixed-response
        status_code: 404
"""


@pytest.fixture
def config_file(tmp_path):
    """The scenario written as a fleetform.yaml in a temporary directory."""
    path = tmp_path / "fleetform.yaml"
    path.write_text(SCENARIO_YAML)
    return path
