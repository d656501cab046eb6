"""Tests for concurrent apply, failure isolation and cancellation."""

import pytest

from conftest import scenario_resources
from fleetform.orchestrator.executor import (
    ApplyExecutor,
    CancellationToken,
    NodeStatus,
    StepStatus,
)
from fleetform.providers.memory import InMemoryPlatform, memory_registry
from fleetform.resources.schema import ResourceKind
from fleetform.state.models import StateRecord
from fleetform.utils.errors import ConflictError, ProviderError
from fleetform.utils.retry import RetryStrategy, no_retry


class TestApply:
    """Test successful applies."""

    def test_first_apply_records_every_resource(self, planner, executor, store, scenario):
        report = executor.apply(planner.plan(scenario))

        assert report.is_success()
        assert len(report.nodes_with(NodeStatus.SUCCEEDED)) == 7
        assert set(store.list()) == {resource.address for resource in scenario}

    def test_outputs_flow_into_consumers(self, planner, executor, store, platform, scenario):
        executor.apply(planner.plan(scenario))

        sg_id = store.get("security-group.instance").identifier
        lt_id = store.get("launch-template.example").identifier
        tg_arn = store.get("target-group.asg").outputs["arn"]
        asg = store.get("autoscaling-group.example")
        assert store.get("launch-template.example").attributes["security_groups"] == [sg_id]
        assert asg.attributes["launch_template"] == {"id": lt_id}
        assert asg.attributes["target_group_arns"] == [tg_arn]
        assert asg.dependencies == ["launch-template.example", "target-group.asg"]

    def test_producers_called_before_consumers(self, planner, executor, platform, scenario):
        executor.apply(planner.plan(scenario))

        creates = [call.kind for call in platform.calls_for("create")]
        asg = creates.index(ResourceKind.AUTOSCALING_GROUP)
        assert creates.index(ResourceKind.LAUNCH_TEMPLATE) < asg
        assert creates.index(ResourceKind.TARGET_GROUP) < asg
        assert creates.index(ResourceKind.LOAD_BALANCER) < creates.index(ResourceKind.LISTENER)

    def test_noop_plan_runs_nothing(self, planner, executor, platform, scenario, applied):
        calls = len(platform.calls)
        report = executor.apply(planner.plan(scenario))

        assert report.is_success()
        assert len(platform.calls) == calls
        assert report.nodes_with(NodeStatus.UNCHANGED) == [change.address for change in planner.plan(scenario).changes]

    def test_create_before_destroy_call_order(self, planner, executor, platform, store, applied):
        old_id = store.get("launch-template.example").identifier
        asg_id = store.get("autoscaling-group.example").identifier
        resources = scenario_resources(**{"launch-template.example": {"image_id": "ami-0def"}})

        report = executor.apply(planner.plan(resources))

        assert report.is_success()
        new_id = store.get("launch-template.example").identifier
        assert new_id != old_id
        assert platform.call_index("create", new_id) < platform.call_index("update", asg_id)
        assert platform.call_index("update", asg_id) < platform.call_index("delete", old_id)
        assert platform.calls_for("update", ResourceKind.AUTOSCALING_GROUP)[-1].attributes["launch_template"] == {
            "id": new_id
        }
        assert store.get("launch-template.example").deposed == []

    def test_destroy_then_create_call_order(self, planner, executor, platform, store, applied):
        old_id = store.get("target-group.asg").identifier
        resources = scenario_resources(**{"target-group.asg": {"port": 8080}})

        report = executor.apply(planner.plan(resources))

        assert report.is_success()
        new_id = store.get("target-group.asg").identifier
        assert platform.call_index("delete", old_id) < platform.call_index("create", new_id)
        assert store.get("autoscaling-group.example").attributes["target_group_arns"] == [
            store.get("target-group.asg").outputs["arn"]
        ]

    def test_destroy_removes_records_consumers_first(self, planner, executor, platform, store, applied):
        lb_id = store.get("load-balancer.example").identifier
        listener_id = store.get("listener.http").identifier

        report = executor.apply(planner.plan_destroy())

        assert report.is_success()
        assert store.list() == {}
        assert platform.objects == {}
        assert platform.call_index("delete", listener_id) < platform.call_index("delete", lb_id)

    def test_progress_callback_sees_every_step(self, planner, executor, scenario):
        events = []
        executor.apply(planner.plan(scenario), progress_callback=lambda *event: events.append(event))

        running = [step_id for step_id, status, _ in events if status == StepStatus.RUNNING]
        succeeded = [step_id for step_id, status, _ in events if status == StepStatus.SUCCEEDED]
        assert len(running) == 7
        assert sorted(running) == sorted(succeeded)

    def test_report_to_dict(self, planner, executor, scenario):
        data = executor.apply(planner.plan(scenario)).to_dict()

        assert data["success"] is True
        assert data["summary"]["succeeded"] == 7
        assert data["nodes"]["security-group.alb"]["action"] == "create"

    def test_max_workers_must_be_positive(self, registry, store):
        with pytest.raises(ValueError):
            ApplyExecutor(registry, store, max_workers=0)


class TestFailureIsolation:
    """Test partial failure reporting."""

    def test_failed_node_skips_dependents_only(self, planner, executor, platform, store, scenario):
        platform.fail(ResourceKind.SECURITY_GROUP, "create", name="instance")

        report = executor.apply(planner.plan(scenario))

        assert not report.is_success()
        assert report.nodes["security-group.instance"].status == NodeStatus.FAILED
        assert report.nodes["launch-template.example"].status == NodeStatus.SKIPPED
        assert report.nodes["autoscaling-group.example"].status == NodeStatus.SKIPPED
        for address in ("security-group.alb", "load-balancer.example", "listener.http", "target-group.asg"):
            assert report.nodes[address].status == NodeStatus.SUCCEEDED
        assert set(report.errors()) == {"security-group.instance"}
        assert platform.calls_for("create", ResourceKind.LAUNCH_TEMPLATE) == []
        assert "launch-template.example" not in store.list()

    def test_skipped_steps_name_the_failed_step(self, planner, executor, platform, scenario):
        platform.fail(ResourceKind.TARGET_GROUP, "create")

        report = executor.apply(planner.plan(scenario))

        step = report.steps["autoscaling-group.example:create"]
        assert step.status == StepStatus.SKIPPED
        assert "target-group.asg:create" in step.message

    def test_partial_apply_is_completed_by_next_run(self, planner, executor, platform, scenario):
        platform.fail(ResourceKind.SECURITY_GROUP, "create", name="instance")
        executor.apply(planner.plan(scenario))

        plan = planner.plan(scenario)
        assert {change.address for change in plan.changes if change.action.value == "create"} == {
            "security-group.instance", "launch-template.example", "autoscaling-group.example"
        }
        assert executor.apply(plan).is_success()
        assert not planner.plan(scenario).has_changes()

    def test_replaced_producer_succeeds_when_consumer_fails(self, planner, executor, platform, store, applied):
        old_id = store.get("launch-template.example").identifier
        platform.fail(ResourceKind.AUTOSCALING_GROUP, "update")

        resources = scenario_resources(**{"launch-template.example": {"image_id": "ami-0def"}})
        report = executor.apply(planner.plan(resources))

        assert report.nodes["autoscaling-group.example"].status == NodeStatus.FAILED
        assert report.nodes["launch-template.example"].status == NodeStatus.SUCCEEDED
        assert report.steps["launch-template.example:delete-old"].status == StepStatus.SKIPPED
        record = store.get("launch-template.example")
        assert record.identifier != old_id
        assert record.deposed == [old_id]

    def test_state_conflict_fails_the_node(self, planner, executor, store, scenario):
        plan = planner.plan(scenario)
        store.put(
            "target-group.asg",
            StateRecord(address="target-group.asg", kind=ResourceKind.TARGET_GROUP, identifier="tg-x"),
            None
        )

        report = executor.apply(plan)

        assert report.nodes["target-group.asg"].status == NodeStatus.FAILED
        assert isinstance(report.nodes["target-group.asg"].error, ConflictError)
        assert report.nodes["autoscaling-group.example"].status == NodeStatus.SKIPPED
        assert store.get("target-group.asg").identifier == "tg-x"


class TestRetry:
    """Test backoff of transient provider errors."""

    def test_retryable_error_is_retried(self, planner, registry, store, platform, scenario):
        sleeps = []
        strategy = RetryStrategy(max_retries=2, base_delay=1.0, jitter=False, sleep=sleeps.append)
        executor = ApplyExecutor(registry, store, max_workers=2, retry_strategy=strategy)
        platform.fail(ResourceKind.TARGET_GROUP, "create", error=ProviderError("Throttling", retryable=True))

        report = executor.apply(planner.plan(scenario))

        assert report.is_success()
        assert len(platform.calls_for("create", ResourceKind.TARGET_GROUP)) == 2
        assert sleeps == [1.0]

    def test_exhausted_retries_fail_the_node(self, planner, registry, store, platform, scenario):
        sleeps = []
        strategy = RetryStrategy(max_retries=2, base_delay=1.0, jitter=False, sleep=sleeps.append)
        executor = ApplyExecutor(registry, store, max_workers=2, retry_strategy=strategy)
        platform.fail(
            ResourceKind.TARGET_GROUP, "create", times=5, error=ProviderError("Throttling", retryable=True)
        )

        report = executor.apply(planner.plan(scenario))

        assert report.nodes["target-group.asg"].status == NodeStatus.FAILED
        assert len(platform.calls_for("create", ResourceKind.TARGET_GROUP)) == 3
        assert sleeps == [1.0, 2.0]

    def test_permanent_error_is_not_retried(self, planner, registry, store, platform, scenario):
        strategy = RetryStrategy(max_retries=4, jitter=False, sleep=lambda _: None)
        executor = ApplyExecutor(registry, store, retry_strategy=strategy)
        platform.fail(ResourceKind.TARGET_GROUP, "create", error=ProviderError("InvalidParameter"))

        executor.apply(planner.plan(scenario))

        assert len(platform.calls_for("create", ResourceKind.TARGET_GROUP)) == 1


class TestConcurrency:
    """Test the worker bound and cancellation."""

    @pytest.mark.parametrize("max_workers", [1, 2])
    def test_concurrent_calls_are_bounded(self, planner, store, scenario, max_workers):
        platform = InMemoryPlatform(latency=0.02)
        executor = ApplyExecutor(memory_registry(platform), store, max_workers=max_workers, retry_strategy=no_retry())

        assert executor.apply(planner.plan(scenario)).is_success()
        assert platform.peak_calls <= max_workers

    def test_cancelled_before_start(self, planner, executor, platform, scenario):
        token = CancellationToken()
        token.cancel()

        report = executor.apply(planner.plan(scenario), cancellation=token)

        assert report.cancelled
        assert platform.calls == []
        assert len(report.nodes_with(NodeStatus.CANCELLED)) == 7
        assert all(step.status == StepStatus.CANCELLED for step in report.steps.values())

    def test_cancel_lets_in_flight_steps_finish(self, planner, registry, store, platform, scenario):
        executor = ApplyExecutor(registry, store, max_workers=1, retry_strategy=no_retry())
        token = CancellationToken()

        def cancel_after_first(step_id, status, message):
            if status == StepStatus.SUCCEEDED:
                token.cancel()

        report = executor.apply(planner.plan(scenario), token, cancel_after_first)

        assert report.cancelled
        assert len(platform.calls) == 1
        assert len(report.nodes_with(NodeStatus.SUCCEEDED)) == 1
        assert len(report.nodes_with(NodeStatus.CANCELLED)) == 6
        assert len(store.list()) == 1
        assert not report.is_success()
