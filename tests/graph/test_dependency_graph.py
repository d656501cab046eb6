"""Tests for reference resolution and the dependency graph."""

import pytest

from conftest import declare, ref, scenario_resources
from fleetform.orchestrator.dependency_graph import build_graph
from fleetform.orchestrator.resolver import ReferenceResolver
from fleetform.state.models import StateRecord
from fleetform.resources.schema import ResourceKind
from fleetform.utils.errors import (
    ConfigurationError,
    CycleError,
    InvalidAttributeError,
    UnresolvedReferenceError,
)


class TestBuildGraph:
    """Test graph construction from declarations."""

    def test_every_resource_sorted_exactly_once(self):
        graph = build_graph(scenario_resources())

        order = graph.topological_sort()
        assert len(order) == 7
        assert len(set(order)) == 7
        assert set(order) == set(graph.nodes)

    def test_references_become_edges(self):
        graph = build_graph(scenario_resources())

        assert graph.get_dependencies("launch-template.example") == {"security-group.instance"}
        assert graph.get_dependencies("autoscaling-group.example") == {
            "launch-template.example", "target-group.asg"
        }
        assert "listener.http" in graph.get_dependents("load-balancer.example")

    def test_transitive_dependencies(self):
        graph = build_graph(scenario_resources())

        assert graph.get_all_dependencies("autoscaling-group.example") == {
            "launch-template.example", "security-group.instance", "target-group.asg"
        }
        assert graph.get_all_dependents("security-group.alb") == {"load-balancer.example", "listener.http"}

    def test_declaration_order_is_irrelevant(self):
        resources = scenario_resources()
        forward = build_graph(resources).topological_sort()
        backward = build_graph(list(reversed(resources))).topological_sort()

        assert forward == backward

    def test_depends_on_adds_edge(self):
        resources = [
            declare("security-group", "a", name="a"),
            declare("security-group", "b", name="b", depends_on=["security-group.a"]),
        ]
        graph = build_graph(resources)

        assert graph.get_dependencies("security-group.b") == {"security-group.a"}

    def test_waves_group_independent_nodes(self):
        graph = build_graph(scenario_resources())
        waves = graph.get_waves()

        assert waves[0] == ["security-group.alb", "security-group.instance", "target-group.asg"]
        assert waves[1] == ["launch-template.example", "load-balancer.example"]
        assert sorted(waves[2]) == ["autoscaling-group.example", "listener.http"]

    def test_destruction_order_reverses_dependencies(self):
        graph = build_graph(scenario_resources())
        order = graph.get_destruction_order()

        assert order.index("listener.http") < order.index("load-balancer.example")
        assert order.index("autoscaling-group.example") < order.index("launch-template.example")

    def test_recorded_only_resources_keep_dependencies(self):
        records = {
            "security-group.old": StateRecord(
                address="security-group.old",
                kind=ResourceKind.SECURITY_GROUP,
                identifier="sg-9",
                dependencies=["security-group.base"],
            ),
        }
        graph = build_graph([declare("security-group", "base", name="base")], records)

        node = graph.get_node("security-group.old")
        assert not node.is_declared
        assert graph.get_dependents("security-group.base") == {"security-group.old"}


class TestGraphErrors:
    """Test rejection of invalid declarations."""

    def test_two_node_cycle(self):
        resources = [
            declare("security-group", "a", name="a", peer=ref("security-group.b.id")),
            declare("security-group", "b", name="b", peer=ref("security-group.a.id")),
        ]

        with pytest.raises(CycleError) as exc_info:
            build_graph(resources)

        cycle = exc_info.value.cycle
        assert set(cycle) == {"security-group.a", "security-group.b"}
        assert cycle[0] == cycle[-1]

    def test_cycle_through_depends_on(self):
        resources = [
            declare("security-group", "a", name="a", depends_on=["security-group.c"]),
            declare("security-group", "b", name="b", peer=ref("security-group.a.id")),
            declare("security-group", "c", name="c", peer=ref("security-group.b.id")),
        ]

        with pytest.raises(CycleError):
            build_graph(resources)

    def test_cycle_is_a_configuration_error(self):
        resources = [
            declare("security-group", "a", name="a", peer=ref("security-group.b.id")),
            declare("security-group", "b", name="b", peer=ref("security-group.a.id")),
        ]

        with pytest.raises(ConfigurationError):
            build_graph(resources)

    def test_unresolved_reference(self):
        resources = [declare("launch-template", "lt", name="lt", security_groups=[ref("security-group.missing.id")])]

        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_graph(resources)

        assert exc_info.value.target == "security-group.missing"

    def test_unresolved_depends_on(self):
        resources = [declare("security-group", "a", name="a", depends_on=["load-balancer.gone"])]

        with pytest.raises(UnresolvedReferenceError):
            build_graph(resources)

    def test_unknown_output(self):
        resources = [
            declare("security-group", "a", name="a"),
            declare("launch-template", "lt", name="lt", security_groups=[ref("security-group.a.dns_name")]),
        ]

        with pytest.raises(InvalidAttributeError, match="dns_name"):
            build_graph(resources)

    def test_self_reference(self):
        resources = [declare("security-group", "a", name="a", peer=ref("security-group.a.id"))]

        with pytest.raises(ConfigurationError, match="references itself"):
            build_graph(resources)

    def test_duplicate_declaration(self):
        resources = [declare("security-group", "a", name="a"), declare("security-group", "a", name="b")]

        with pytest.raises(ConfigurationError, match="more than once"):
            ReferenceResolver(resources)
