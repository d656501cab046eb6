"""Tests for the provider registry, the simulated platform and the AWS adapters."""

import pytest
from botocore.exceptions import ClientError, NoCredentialsError
from botocore.stub import Stubber

from fleetform.providers.aws import (
    AutoScalingGroupAdapter,
    DataLookupAdapter,
    SecurityGroupAdapter,
    TargetGroupAdapter,
    aws_registry,
)
from fleetform.providers.base import HealthStatus, MemberLifecycle
from fleetform.providers.memory import InMemoryPlatform, memory_registry
from fleetform.providers.registry import ProviderRegistry
from fleetform.resources.schema import ResourceKind
from fleetform.utils.aws_client import AWSClientManager
from fleetform.utils.errors import (
    ConfigurationError,
    CredentialError,
    EngineError,
    ErrorContext,
    OperationTimeoutError,
    ProviderError,
    ResourceNotFoundError,
    error_handler,
)


def client_error(code, message="error", operation="DescribeSecurityGroups"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class TestProviderRegistry:
    """Test adapter lookup by kind and capability."""

    def test_capabilities(self, registry):
        assert registry.health(ResourceKind.TARGET_GROUP) is registry.get(ResourceKind.TARGET_GROUP)
        assert registry.fleet(ResourceKind.AUTOSCALING_GROUP) is registry.get(ResourceKind.AUTOSCALING_GROUP)
        assert registry.data_source(ResourceKind.DATA_LOOKUP) is registry.get(ResourceKind.DATA_LOOKUP)
        assert set(registry.kinds()) == set(ResourceKind)

    def test_missing_capability(self, registry):
        with pytest.raises(ConfigurationError, match="does not support health checks"):
            registry.health(ResourceKind.SECURITY_GROUP)
        with pytest.raises(ConfigurationError, match="does not support create/read/update/delete"):
            registry.resource(ResourceKind.DATA_LOOKUP)

    def test_unregistered_kind(self):
        with pytest.raises(ConfigurationError, match="No provider adapter registered for kind: listener"):
            ProviderRegistry({}).get(ResourceKind.LISTENER)


class TestInMemoryPlatform:
    """Test the simulated platform."""

    def test_identifiers_and_outputs(self, platform):
        identifier, outputs = platform.create(ResourceKind.LOAD_BALANCER, {"name": "web"})

        assert identifier == "lb-0001"
        assert outputs == {
            "id": "lb-0001",
            "arn": "arn:memory:load-balancer:lb-0001",
            "name": "web",
            "dns_name": "web.lb.memory.internal",
            "zone_id": "ZMEMORY",
        }
        assert platform.create(ResourceKind.LOAD_BALANCER, {"name": "api"})[0] == "lb-0002"

    def test_read_and_update(self, platform):
        identifier, _ = platform.create(ResourceKind.SECURITY_GROUP, {"name": "web"})

        platform.update(ResourceKind.SECURITY_GROUP, identifier, {"name": "web", "description": "changed"})

        attributes, outputs = platform.read(ResourceKind.SECURITY_GROUP, identifier)
        assert attributes["description"] == "changed"
        assert outputs["id"] == identifier

    def test_read_unknown_object(self, platform):
        with pytest.raises(ResourceNotFoundError):
            platform.read(ResourceKind.SECURITY_GROUP, "sg-9999")

    def test_read_with_wrong_kind(self, platform):
        identifier, _ = platform.create(ResourceKind.SECURITY_GROUP, {"name": "web"})

        with pytest.raises(ResourceNotFoundError):
            platform.read(ResourceKind.TARGET_GROUP, identifier)

    def test_delete_unknown_object_is_silent(self, platform):
        platform.delete(ResourceKind.SECURITY_GROUP, "sg-9999")

        assert [call.operation for call in platform.calls] == ["delete"]

    def test_injected_failure_matches_name(self, platform):
        platform.fail(ResourceKind.SECURITY_GROUP, "create", name="db")

        platform.create(ResourceKind.SECURITY_GROUP, {"name": "web"})
        with pytest.raises(ProviderError, match="injected create failure"):
            platform.create(ResourceKind.SECURITY_GROUP, {"name": "db"})
        platform.create(ResourceKind.SECURITY_GROUP, {"name": "db"})

        assert len(platform.objects_of(ResourceKind.SECURITY_GROUP)) == 2

    def test_injected_failure_matches_stored_name(self, platform):
        identifier, _ = platform.create(ResourceKind.SECURITY_GROUP, {"name": "db"})
        platform.fail(ResourceKind.SECURITY_GROUP, "delete", error=ProviderError("in use"), name="db")

        with pytest.raises(ProviderError, match="in use"):
            platform.delete(ResourceKind.SECURITY_GROUP, identifier)
        assert identifier in platform.objects

    def test_lookup(self, platform):
        platform.lookup_results["default-vpc"] = {"id": "vpc-1", "cidr_block": "10.0.0.0/16"}

        assert platform.lookup({"query": "default-vpc"}) == ("vpc-1", {"id": "vpc-1", "cidr_block": "10.0.0.0/16"})
        assert platform.lookup({"query": "image", "name_pattern": "web-*"}) == (
            "lookup-image", {"query": "image", "name_pattern": "web-*", "id": "lookup-image"}
        )


class TestSimulatedFleet:
    """Test autoscaling members and target health in the simulated platform."""

    def test_group_launches_desired_members(self, platform, registry):
        adapter = registry.fleet(ResourceKind.AUTOSCALING_GROUP)

        identifier, _ = adapter.create({"name": "web", "min_size": 2})

        members = adapter.list_members(identifier)
        assert [member.member_id for member in members] == ["i-00001", "i-00002"]
        assert {member.lifecycle for member in members} == {MemberLifecycle.IN_SERVICE}

    def test_scale_in_marks_members_terminating(self, platform, registry):
        adapter = registry.fleet(ResourceKind.AUTOSCALING_GROUP)
        identifier, _ = adapter.create({"name": "web", "min_size": 1, "desired_capacity": 3})

        adapter.update(identifier, {"name": "web", "min_size": 1, "desired_capacity": 1})

        lifecycles = [member.lifecycle for member in adapter.list_members(identifier)]
        assert lifecycles.count(MemberLifecycle.IN_SERVICE) == 1
        assert lifecycles.count(MemberLifecycle.TERMINATING) == 2

    def test_members_not_launched_when_disabled(self, platform):
        adapter = memory_registry(platform, launch_members=False).fleet(ResourceKind.AUTOSCALING_GROUP)

        identifier, _ = adapter.create({"name": "web", "min_size": 2})

        assert adapter.list_members(identifier) == []

    def test_health_of_registered_members(self, platform, registry):
        adapter = registry.health(ResourceKind.TARGET_GROUP)
        identifier, _ = adapter.create({"name": "web", "port": 80})

        assert adapter.poll_health(identifier, "i-1") == HealthStatus.UNUSED

        adapter.register_target(identifier, "i-1")
        platform.script_health("i-1", HealthStatus.INITIAL, ProviderError("timeout", retryable=True))
        platform.set_health("i-1", HealthStatus.UNHEALTHY)

        assert adapter.poll_health(identifier, "i-1") == HealthStatus.INITIAL
        with pytest.raises(ProviderError, match="timeout"):
            adapter.poll_health(identifier, "i-1")
        assert adapter.poll_health(identifier, "i-1") == HealthStatus.UNHEALTHY

        adapter.deregister_target(identifier, "i-1")
        assert adapter.poll_health(identifier, "i-1") == HealthStatus.UNUSED

    def test_register_with_unknown_target_group(self, registry):
        with pytest.raises(ResourceNotFoundError):
            registry.health(ResourceKind.TARGET_GROUP).register_target("tg-9999", "i-1")


@pytest.fixture
def clients(monkeypatch, tmp_path):
    """Client manager with dummy credentials; every call goes through a Stubber."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_CONFIG_FILE", str(tmp_path / "config"))
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "credentials"))
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    return AWSClientManager(region="us-east-1")


@pytest.fixture
def stub_ec2(clients):
    with Stubber(clients.get_client("ec2")) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def stub_elbv2(clients):
    with Stubber(clients.get_client("elbv2")) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


class TestSecurityGroupAdapter:
    """Test the EC2 security group adapter against stubbed responses."""

    def test_create_applies_rules_and_reads_back(self, clients, stub_ec2):
        stub_ec2.add_response(
            "create_security_group",
            {"GroupId": "sg-123"},
            {
                "GroupName": "web",
                "Description": "Web ingress",
                "VpcId": "vpc-1",
                "TagSpecifications": [
                    {"ResourceType": "security-group", "Tags": [{"Key": "Name", "Value": "web"}]}
                ],
            },
        )
        stub_ec2.add_response(
            "authorize_security_group_ingress",
            {},
            {
                "GroupId": "sg-123",
                "IpPermissions": [
                    {"IpProtocol": "tcp", "FromPort": 80, "ToPort": 80, "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}
                ],
            },
        )
        stub_ec2.add_response(
            "describe_security_groups",
            {"SecurityGroups": [
                {"GroupId": "sg-123", "GroupName": "web", "Description": "Web ingress", "VpcId": "vpc-1"}
            ]},
            {"GroupIds": ["sg-123"]},
        )

        identifier, outputs = SecurityGroupAdapter(clients).create({
            "name": "web",
            "description": "Web ingress",
            "vpc_id": "vpc-1",
            "ingress": [{"from_port": 80, "cidr_blocks": ["0.0.0.0/0"]}],
        })

        assert identifier == "sg-123"
        assert outputs == {"id": "sg-123", "arn": "sg-123", "name": "web"}

    def test_read_missing_group(self, clients, stub_ec2):
        stub_ec2.add_client_error("describe_security_groups", service_error_code="InvalidGroup.NotFound")

        with pytest.raises(ResourceNotFoundError, match="InvalidGroup.NotFound"):
            SecurityGroupAdapter(clients).read("sg-123")

    def test_delete_ignores_missing_group(self, clients, stub_ec2):
        stub_ec2.add_client_error(
            "delete_security_group", service_error_code="InvalidGroup.NotFound", expected_params={"GroupId": "sg-123"}
        )

        SecurityGroupAdapter(clients).delete("sg-123")

    def test_delete_raises_other_errors(self, clients, stub_ec2):
        stub_ec2.add_client_error("delete_security_group", service_error_code="DependencyViolation")

        with pytest.raises(ClientError):
            SecurityGroupAdapter(clients).delete("sg-123")


class TestTargetGroupAdapter:
    """Test target health mapping against stubbed responses."""

    @pytest.mark.parametrize("state,expected", [
        ("healthy", HealthStatus.HEALTHY),
        ("initial", HealthStatus.INITIAL),
        ("unhealthy.draining", HealthStatus.UNHEALTHY),
        ("draining", HealthStatus.DRAINING),
    ])
    def test_poll_health(self, clients, stub_elbv2, state, expected):
        stub_elbv2.add_response(
            "describe_target_health",
            {"TargetHealthDescriptions": [{"Target": {"Id": "i-1"}, "TargetHealth": {"State": state}}]},
            {"TargetGroupArn": "arn:tg", "Targets": [{"Id": "i-1"}]},
        )

        assert TargetGroupAdapter(clients).poll_health("arn:tg", "i-1") == expected

    def test_unknown_target_is_unused(self, clients, stub_elbv2):
        stub_elbv2.add_response("describe_target_health", {"TargetHealthDescriptions": []})

        assert TargetGroupAdapter(clients).poll_health("arn:tg", "i-1") == HealthStatus.UNUSED

    def test_delete_ignores_missing_target_group(self, clients, stub_elbv2):
        stub_elbv2.add_client_error("delete_target_group", service_error_code="TargetGroupNotFound")

        TargetGroupAdapter(clients).delete("arn:tg")


class TestDataLookupAdapter:
    """Test EC2 lookups against stubbed responses."""

    def test_default_vpc(self, clients, stub_ec2):
        stub_ec2.add_response(
            "describe_vpcs",
            {"Vpcs": [{"VpcId": "vpc-1", "CidrBlock": "10.0.0.0/16"}]},
            {"Filters": [{"Name": "isDefault", "Values": ["true"]}]},
        )

        assert DataLookupAdapter(clients).lookup({"query": "default-vpc"}) == (
            "vpc-1", {"id": "vpc-1", "cidr_block": "10.0.0.0/16"}
        )

    def test_newest_image_wins(self, clients, stub_ec2):
        stub_ec2.add_response("describe_images", {"Images": [
            {"ImageId": "ami-old", "Name": "web-1", "CreationDate": "2024-01-01T00:00:00.000Z"},
            {"ImageId": "ami-new", "Name": "web-2", "CreationDate": "2024-06-01T00:00:00.000Z"},
        ]})

        identifier, outputs = DataLookupAdapter(clients).lookup({"query": "image", "name_pattern": "web-*"})

        assert identifier == "ami-new"
        assert outputs["name"] == "web-2"

    def test_no_default_vpc(self, clients, stub_ec2):
        stub_ec2.add_response("describe_vpcs", {"Vpcs": []})

        with pytest.raises(ResourceNotFoundError):
            DataLookupAdapter(clients).lookup({"query": "default-vpc"})

    def test_unsupported_query(self, clients):
        with pytest.raises(ConfigurationError, match="Unsupported data lookup query"):
            DataLookupAdapter(clients).lookup({"query": "subnet-by-magic"})


class TestAwsRegistry:
    """Test the AWS registry wiring."""

    def test_every_kind_is_registered(self, clients):
        registry = aws_registry(clients)

        assert set(registry.kinds()) == set(ResourceKind)
        assert isinstance(registry.fleet(ResourceKind.AUTOSCALING_GROUP), AutoScalingGroupAdapter)
        assert isinstance(registry.health(ResourceKind.TARGET_GROUP), TargetGroupAdapter)


class TestClientManager:
    """Test credential validation through STS."""

    def test_validate_credentials_caches_identity(self, clients):
        with Stubber(clients.get_client("sts")) as stub:
            stub.add_response(
                "get_caller_identity",
                {"UserId": "AIDA1", "Account": "123456789012", "Arn": "arn:aws:iam::123456789012:user/ops"},
                {},
            )
            identity = clients.validate_credentials()
            assert clients.validate_credentials() is identity

        assert identity.account_id == "123456789012"
        assert identity.region == "us-east-1"

    def test_rejected_credentials(self, clients):
        with Stubber(clients.get_client("sts")) as stub:
            stub.add_client_error("get_caller_identity", service_error_code="InvalidClientTokenId",
                                  http_status_code=403)
            with pytest.raises(CredentialError):
                clients.validate_credentials()


class TestErrorHandler:
    """Test classification of provider exceptions."""

    def test_engine_errors_pass_through(self):
        error = ProviderError("already classified")

        assert error_handler.handle_exception(error) is error

    def test_not_found_code(self):
        error = error_handler.handle_exception(client_error("TargetGroupNotFound"))

        assert isinstance(error, ResourceNotFoundError)

    def test_throttling_is_retryable(self):
        error = error_handler.handle_exception(client_error("Throttling", "Rate exceeded"))

        assert isinstance(error, ProviderError)
        assert error.retryable
        assert error.message == "AWS Error (Throttling): Rate exceeded"
        assert error.context.aws_operation == "DescribeSecurityGroups"

    def test_validation_error_is_permanent(self):
        error = error_handler.handle_exception(client_error("ValidationError"))

        assert not error.retryable

    def test_rejected_credentials(self):
        assert isinstance(error_handler.handle_exception(client_error("AuthFailure")), CredentialError)
        assert isinstance(error_handler.handle_exception(NoCredentialsError()), CredentialError)

    def test_timeouts_and_network_errors(self):
        timeout = error_handler.handle_exception(TimeoutError("slow"))
        network = error_handler.handle_exception(ConnectionError("reset"))

        assert isinstance(timeout, OperationTimeoutError)
        assert timeout.retryable
        assert isinstance(network, ProviderError)
        assert network.retryable

    def test_unexpected_exception_keeps_context(self):
        error = error_handler.handle_exception(KeyError("GroupId"), ErrorContext(resource_id="security-group.web"))

        assert isinstance(error, EngineError)
        assert error.context.resource_id == "security-group.web"
        assert not error.retryable

    def test_user_message(self):
        error = ProviderError("boom", suggestions=["Try again"], context=ErrorContext(resource_id="listener.http"))

        message = error.to_user_message()

        assert message.startswith("ERROR: boom")
        assert "Try again" in message
