"""AWS adapters (EC2, Auto Scaling, ELBv2) for the managed kinds.

Attribute names are snake_case versions of the API parameters; only the
attributes the engine needs for the HTTP service topology are mapped.
"""

import base64
from typing import Any, Dict, List, Optional, Tuple
from botocore.exceptions import ClientError

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
from fleetform.resources.schema import ResourceKind
from fleetform.utils.errors import (
    ConfigurationError,
    ErrorContext,
    ErrorHandler,
    ResourceNotFoundError,
    error_handler,
)
from fleetform.utils.aws_client import AWSClientManager
from fleetform.utils.logging import get_logger
from fleetform.utils.retry import with_retry

logger = get_logger(__name__)


def _tags(name: Optional[str], extra: Optional[Dict[str, str]] = None) -> List[Dict[str, str]]:
    tags = dict(extra or {})
    if name:
        tags.setdefault('Name', name)
    return [{'Key': key, 'Value': str(value)} for key, value in sorted(tags.items())]


def _not_found(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') in ErrorHandler.NOT_FOUND_CODES


def _ip_permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert ingress/egress rule blocks to EC2 IpPermissions."""
    permissions = []
    for rule in rules or []:
        permission = {
            'IpProtocol': str(rule.get('protocol', 'tcp')),
            'FromPort': int(rule.get('from_port', 0)),
            'ToPort': int(rule.get('to_port', rule.get('from_port', 0))),
        }
        if rule.get('cidr_blocks'):
            permission['IpRanges'] = [{'CidrIp': cidr} for cidr in rule['cidr_blocks']]
        if rule.get('security_groups'):
            permission['UserIdGroupPairs'] = [{'GroupId': group} for group in rule['security_groups']]
        if permission['IpProtocol'] == '-1':
            permission.pop('FromPort')
            permission.pop('ToPort')
        permissions.append(permission)
    return permissions


def _action(block: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a listener action block to the ELBv2 shape."""
    action_type = block.get('type', 'forward')
    if action_type == 'forward':
        return {'Type': 'forward', 'TargetGroupArn': block['target_group_arn']}
    if action_type == 'fixed-response':
        config = {
            'StatusCode': str(block.get('status_code', 404)),
            'ContentType': block.get('content_type', 'text/plain'),
        }
        if block.get('message_body') is not None:
            config['MessageBody'] = block['message_body']
        return {'Type': 'fixed-response', 'FixedResponseConfig': config}
    if action_type == 'redirect':
        return {
            'Type': 'redirect',
            'RedirectConfig': {
                'Protocol': block.get('protocol', 'HTTPS'),
                'Port': str(block.get('port', 443)),
                'StatusCode': block.get('status_code', 'HTTP_301'),
            },
        }
    raise ConfigurationError(f"Unsupported listener action type: {action_type}")


def _conditions(conditions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert listener rule conditions to the ELBv2 shape."""
    converted = []
    for condition in conditions or []:
        if 'path_pattern' in condition:
            converted.append({'Field': 'path-pattern', 'PathPatternConfig': {'Values': list(condition['path_pattern'])}})
        elif 'host_header' in condition:
            converted.append({'Field': 'host-header', 'HostHeaderConfig': {'Values': list(condition['host_header'])}})
        else:
            raise ConfigurationError(f"Unsupported listener rule condition: {sorted(condition)}")
    return converted


@with_retry(max_retries=3, base_delay=1.0)
def _describe_target_health(client, target_group_arn: str, member_id: str) -> Dict[str, Any]:
    return client.describe_target_health(TargetGroupArn=target_group_arn, Targets=[{'Id': member_id}])


@with_retry(max_retries=3, base_delay=1.0)
def _describe_auto_scaling_group(client, name: str) -> Optional[Dict[str, Any]]:
    response = client.describe_auto_scaling_groups(AutoScalingGroupNames=[name])
    groups = response.get('AutoScalingGroups', [])
    return groups[0] if groups else None


class AwsAdapter(ProviderAdapter):
    """Base for adapters backed by one boto3 client."""

    service = ''
    kind: ResourceKind

    def __init__(self, clients: AWSClientManager):
        """Initialize adapter.

        Args:
            clients: Session and client cache for AWS API calls
        """
        self.clients = clients
        self.client = clients.get_client(self.service)

    def _missing(self, identifier: str, error: Optional[ClientError] = None) -> ResourceNotFoundError:
        context = ErrorContext(resource_type=self.kind.value, aws_service=self.service)
        if error is not None:
            mapped = error_handler.handle_client_error(error, context)
            if isinstance(mapped, ResourceNotFoundError):
                return mapped
        return ResourceNotFoundError(f"{self.kind.value} {identifier} not found", context=context)

    def _ignore_missing(self, func, **kwargs) -> None:
        try:
            func(**kwargs)
        except ClientError as e:
            if not _not_found(e):
                raise
            logger.debug(f"{self.kind.value} already deleted: {kwargs}")


class SecurityGroupAdapter(AwsAdapter):
    """EC2 security groups with ingress/egress rule blocks."""

    service = 'ec2'
    kind = ResourceKind.SECURITY_GROUP

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        params = {
            'GroupName': attributes['name'],
            'Description': attributes.get('description', f"Managed by fleetform: {attributes['name']}"),
            'TagSpecifications': [{'ResourceType': 'security-group', 'Tags': _tags(attributes['name'], attributes.get('tags'))}],
        }
        if attributes.get('vpc_id'):
            params['VpcId'] = attributes['vpc_id']

        group_id = self.client.create_security_group(**params)['GroupId']
        self._apply_rules(group_id, attributes)
        _, outputs = self.read(group_id)
        return group_id, outputs

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            groups = self.client.describe_security_groups(GroupIds=[identifier])['SecurityGroups']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not groups:
            raise self._missing(identifier)
        group = groups[0]
        attributes = {
            'name': group['GroupName'],
            'description': group.get('Description'),
            'vpc_id': group.get('VpcId'),
        }
        outputs = {'id': group['GroupId'], 'arn': group.get('SecurityGroupArn', group['GroupId']), 'name': group['GroupName']}
        return attributes, outputs

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        group = self.client.describe_security_groups(GroupIds=[identifier])['SecurityGroups'][0]
        if group.get('IpPermissions'):
            self.client.revoke_security_group_ingress(GroupId=identifier, IpPermissions=group['IpPermissions'])
        if 'egress' in attributes and group.get('IpPermissionsEgress'):
            self.client.revoke_security_group_egress(GroupId=identifier, IpPermissions=group['IpPermissionsEgress'])
        self._apply_rules(identifier, attributes)
        _, outputs = self.read(identifier)
        return outputs

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_security_group, GroupId=identifier)

    def _apply_rules(self, group_id: str, attributes: Dict[str, Any]) -> None:
        ingress = _ip_permissions(attributes.get('ingress', []))
        if ingress:
            self.client.authorize_security_group_ingress(GroupId=group_id, IpPermissions=ingress)

        # Without an explicit egress block AWS keeps its default allow-all rule
        if 'egress' in attributes:
            egress = _ip_permissions(attributes['egress'])
            if egress:
                self.client.authorize_security_group_egress(GroupId=group_id, IpPermissions=egress)


class LaunchTemplateAdapter(AwsAdapter):
    """EC2 launch templates. In-place updates publish a new default version."""

    service = 'ec2'
    kind = ResourceKind.LAUNCH_TEMPLATE

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        response = self.client.create_launch_template(
            LaunchTemplateName=attributes['name'],
            LaunchTemplateData=self._template_data(attributes),
            TagSpecifications=[{'ResourceType': 'launch-template', 'Tags': _tags(attributes['name'], attributes.get('tags'))}],
        )
        template = response['LaunchTemplate']
        return template['LaunchTemplateId'], self._outputs(template)

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            templates = self.client.describe_launch_templates(LaunchTemplateIds=[identifier])['LaunchTemplates']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not templates:
            raise self._missing(identifier)
        template = templates[0]
        return {'name': template['LaunchTemplateName']}, self._outputs(template)

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        version = self.client.create_launch_template_version(
            LaunchTemplateId=identifier,
            LaunchTemplateData=self._template_data(attributes),
        )['LaunchTemplateVersion']['VersionNumber']
        self.client.modify_launch_template(LaunchTemplateId=identifier, DefaultVersion=str(version))
        _, outputs = self.read(identifier)
        return outputs

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_launch_template, LaunchTemplateId=identifier)

    def _template_data(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        data = {'ImageId': attributes['image_id'], 'InstanceType': attributes['instance_type']}
        if attributes.get('security_groups'):
            data['SecurityGroupIds'] = list(attributes['security_groups'])
        if attributes.get('user_data'):
            data['UserData'] = base64.b64encode(attributes['user_data'].encode('utf-8')).decode('ascii')
        if attributes.get('key_name'):
            data['KeyName'] = attributes['key_name']
        if attributes.get('iam_instance_profile'):
            data['IamInstanceProfile'] = {'Name': attributes['iam_instance_profile']}
        return data

    def _outputs(self, template: Dict[str, Any]) -> Outputs:
        return {
            'id': template['LaunchTemplateId'],
            'name': template['LaunchTemplateName'],
            'latest_version': template.get('LatestVersionNumber', 1),
        }


class AutoScalingGroupAdapter(AwsAdapter, FleetCapable):
    """Auto Scaling groups; the identifier is the group name."""

    service = 'autoscaling'
    kind = ResourceKind.AUTOSCALING_GROUP

    LIFECYCLE_MAP = {
        'InService': MemberLifecycle.IN_SERVICE,
        'Terminated': MemberLifecycle.TERMINATED,
    }

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        name = attributes['name']
        params = self._group_params(attributes)
        params['Tags'] = [
            {'Key': tag['Key'], 'Value': tag['Value'], 'PropagateAtLaunch': True}
            for tag in _tags(name, attributes.get('tags'))
        ]
        if attributes.get('target_group_arns'):
            params['TargetGroupARNs'] = list(attributes['target_group_arns'])
        self.client.create_auto_scaling_group(AutoScalingGroupName=name, **params)
        _, outputs = self.read(name)
        return name, outputs

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        group = _describe_auto_scaling_group(self.client, identifier)
        if group is None:
            raise self._missing(identifier)
        attributes = {
            'name': group['AutoScalingGroupName'],
            'min_size': group['MinSize'],
            'max_size': group['MaxSize'],
            'desired_capacity': group['DesiredCapacity'],
            'target_group_arns': list(group.get('TargetGroupARNs', [])),
            'health_check_type': group.get('HealthCheckType'),
        }
        outputs = {'id': identifier, 'name': identifier, 'arn': group['AutoScalingGroupARN']}
        return attributes, outputs

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        self.client.update_auto_scaling_group(AutoScalingGroupName=identifier, **self._group_params(attributes))

        current, _ = self.read(identifier)
        wanted = set(attributes.get('target_group_arns') or [])
        attached = set(current['target_group_arns'])
        if wanted - attached:
            self.client.attach_load_balancer_target_groups(
                AutoScalingGroupName=identifier, TargetGroupARNs=sorted(wanted - attached)
            )
        if attached - wanted:
            self.client.detach_load_balancer_target_groups(
                AutoScalingGroupName=identifier, TargetGroupARNs=sorted(attached - wanted)
            )
        _, outputs = self.read(identifier)
        return outputs

    def delete(self, identifier: str) -> None:
        try:
            self.client.delete_auto_scaling_group(AutoScalingGroupName=identifier, ForceDelete=True)
        except ClientError as e:
            message = e.response.get('Error', {}).get('Message', '')
            if e.response.get('Error', {}).get('Code') == 'ValidationError' and 'not found' in message:
                return
            raise

    def list_members(self, identifier: str) -> List[FleetMember]:
        group = _describe_auto_scaling_group(self.client, identifier)
        if group is None:
            raise self._missing(identifier)
        return [
            FleetMember(
                member_id=instance['InstanceId'],
                lifecycle=self._lifecycle(instance['LifecycleState']),
                metadata={
                    'availability_zone': instance.get('AvailabilityZone'),
                    'health_status': instance.get('HealthStatus'),
                },
            )
            for instance in group.get('Instances', [])
        ]

    def terminate_member(self, identifier: str, member_id: str) -> None:
        self.client.terminate_instance_in_auto_scaling_group(
            InstanceId=member_id, ShouldDecrementDesiredCapacity=False
        )

    def _lifecycle(self, state: str) -> MemberLifecycle:
        if state in self.LIFECYCLE_MAP:
            return self.LIFECYCLE_MAP[state]
        if state.startswith('Pending'):
            return MemberLifecycle.PENDING
        return MemberLifecycle.TERMINATING

    def _group_params(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        params = {
            'MinSize': int(attributes.get('min_size', 1)),
            'MaxSize': int(attributes.get('max_size', attributes.get('min_size', 1))),
        }
        if 'desired_capacity' in attributes:
            params['DesiredCapacity'] = int(attributes['desired_capacity'])
        template = attributes.get('launch_template')
        if template:
            params['LaunchTemplate'] = {
                'LaunchTemplateId': template['id'],
                'Version': str(template.get('version', '$Latest')),
            }
        if attributes.get('subnets'):
            params['VPCZoneIdentifier'] = ",".join(attributes['subnets'])
        if attributes.get('health_check_type'):
            params['HealthCheckType'] = attributes['health_check_type']
        if 'health_check_grace_period' in attributes:
            params['HealthCheckGracePeriod'] = int(attributes['health_check_grace_period'])
        return params


class LoadBalancerAdapter(AwsAdapter):
    """Application/network load balancers; the identifier is the ARN."""

    service = 'elbv2'
    kind = ResourceKind.LOAD_BALANCER

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        params = {
            'Name': attributes['name'],
            'Scheme': 'internal' if attributes.get('internal') else 'internet-facing',
            'Type': attributes.get('load_balancer_type', 'application'),
            'Tags': _tags(attributes['name'], attributes.get('tags')),
        }
        if attributes.get('subnets'):
            params['Subnets'] = list(attributes['subnets'])
        if attributes.get('security_groups'):
            params['SecurityGroups'] = list(attributes['security_groups'])
        balancer = self.client.create_load_balancer(**params)['LoadBalancers'][0]
        return balancer['LoadBalancerArn'], self._outputs(balancer)

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            balancers = self.client.describe_load_balancers(LoadBalancerArns=[identifier])['LoadBalancers']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not balancers:
            raise self._missing(identifier)
        balancer = balancers[0]
        attributes = {
            'name': balancer['LoadBalancerName'],
            'internal': balancer.get('Scheme') == 'internal',
            'load_balancer_type': balancer.get('Type'),
            'security_groups': list(balancer.get('SecurityGroups', [])),
        }
        return attributes, self._outputs(balancer)

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        if attributes.get('security_groups'):
            self.client.set_security_groups(LoadBalancerArn=identifier, SecurityGroups=list(attributes['security_groups']))
        if attributes.get('subnets'):
            self.client.set_subnets(LoadBalancerArn=identifier, Subnets=list(attributes['subnets']))
        _, outputs = self.read(identifier)
        return outputs

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_load_balancer, LoadBalancerArn=identifier)

    def _outputs(self, balancer: Dict[str, Any]) -> Outputs:
        return {
            'id': balancer['LoadBalancerArn'],
            'arn': balancer['LoadBalancerArn'],
            'dns_name': balancer.get('DNSName'),
            'zone_id': balancer.get('CanonicalHostedZoneId'),
        }


class TargetGroupAdapter(AwsAdapter, HealthCheckCapable):
    """Target groups with target registration and health polling."""

    service = 'elbv2'
    kind = ResourceKind.TARGET_GROUP

    HEALTH_MAP = {
        'initial': HealthStatus.INITIAL,
        'healthy': HealthStatus.HEALTHY,
        'unhealthy': HealthStatus.UNHEALTHY,
        'unhealthy.draining': HealthStatus.UNHEALTHY,
        'unavailable': HealthStatus.UNHEALTHY,
        'draining': HealthStatus.DRAINING,
        'unused': HealthStatus.UNUSED,
    }

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        params = {
            'Name': attributes['name'],
            'Protocol': attributes.get('protocol', 'HTTP'),
            'Port': int(attributes.get('port', 80)),
            'TargetType': attributes.get('target_type', 'instance'),
            'Tags': _tags(attributes['name'], attributes.get('tags')),
        }
        if attributes.get('vpc_id'):
            params['VpcId'] = attributes['vpc_id']
        params.update(self._health_params(attributes))
        group = self.client.create_target_group(**params)['TargetGroups'][0]
        arn = group['TargetGroupArn']
        self._set_attributes(arn, attributes)
        return arn, self._outputs(group)

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            groups = self.client.describe_target_groups(TargetGroupArns=[identifier])['TargetGroups']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not groups:
            raise self._missing(identifier)
        group = groups[0]
        attributes = {
            'name': group['TargetGroupName'],
            'protocol': group.get('Protocol'),
            'port': group.get('Port'),
            'vpc_id': group.get('VpcId'),
            'target_type': group.get('TargetType'),
        }
        return attributes, self._outputs(group)

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        health = self._health_params(attributes)
        if health:
            self.client.modify_target_group(TargetGroupArn=identifier, **health)
        self._set_attributes(identifier, attributes)
        _, outputs = self.read(identifier)
        return outputs

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_target_group, TargetGroupArn=identifier)

    def register_target(self, identifier: str, member_id: str) -> None:
        self.client.register_targets(TargetGroupArn=identifier, Targets=[{'Id': member_id}])

    def deregister_target(self, identifier: str, member_id: str) -> None:
        self.client.deregister_targets(TargetGroupArn=identifier, Targets=[{'Id': member_id}])

    def poll_health(self, identifier: str, member_id: str) -> HealthStatus:
        descriptions = _describe_target_health(self.client, identifier, member_id)['TargetHealthDescriptions']
        if not descriptions:
            return HealthStatus.UNUSED
        state = descriptions[0].get('TargetHealth', {}).get('State', 'unused')
        return self.HEALTH_MAP.get(state, HealthStatus.UNHEALTHY)

    def _health_params(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        check = attributes.get('health_check') or {}
        mapping = {
            'path': ('HealthCheckPath', str),
            'interval': ('HealthCheckIntervalSeconds', int),
            'timeout': ('HealthCheckTimeoutSeconds', int),
            'healthy_threshold': ('HealthyThresholdCount', int),
            'unhealthy_threshold': ('UnhealthyThresholdCount', int),
            'matcher': ('Matcher', lambda value: {'HttpCode': str(value)}),
        }
        return {
            param: convert(check[key])
            for key, (param, convert) in mapping.items() if key in check
        }

    def _set_attributes(self, arn: str, attributes: Dict[str, Any]) -> None:
        if 'deregistration_delay' in attributes:
            self.client.modify_target_group_attributes(
                TargetGroupArn=arn,
                Attributes=[{
                    'Key': 'deregistration_delay.timeout_seconds',
                    'Value': str(int(attributes['deregistration_delay'])),
                }],
            )

    def _outputs(self, group: Dict[str, Any]) -> Outputs:
        return {'id': group['TargetGroupArn'], 'arn': group['TargetGroupArn'], 'name': group['TargetGroupName']}


class ListenerAdapter(AwsAdapter):
    """Load balancer listeners."""

    service = 'elbv2'
    kind = ResourceKind.LISTENER

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        params = {
            'LoadBalancerArn': attributes['load_balancer_arn'],
            'Protocol': attributes.get('protocol', 'HTTP'),
            'Port': int(attributes.get('port', 80)),
            'DefaultActions': [_action(attributes.get('default_action', {'type': 'fixed-response'}))],
        }
        if attributes.get('certificate_arn'):
            params['Certificates'] = [{'CertificateArn': attributes['certificate_arn']}]
        listener = self.client.create_listener(**params)['Listeners'][0]
        arn = listener['ListenerArn']
        return arn, {'id': arn, 'arn': arn}

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            listeners = self.client.describe_listeners(ListenerArns=[identifier])['Listeners']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not listeners:
            raise self._missing(identifier)
        listener = listeners[0]
        attributes = {
            'load_balancer_arn': listener['LoadBalancerArn'],
            'protocol': listener.get('Protocol'),
            'port': listener.get('Port'),
        }
        return attributes, {'id': identifier, 'arn': identifier}

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        params = {
            'ListenerArn': identifier,
            'Protocol': attributes.get('protocol', 'HTTP'),
            'Port': int(attributes.get('port', 80)),
            'DefaultActions': [_action(attributes.get('default_action', {'type': 'fixed-response'}))],
        }
        if attributes.get('certificate_arn'):
            params['Certificates'] = [{'CertificateArn': attributes['certificate_arn']}]
        self.client.modify_listener(**params)
        return {'id': identifier, 'arn': identifier}

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_listener, ListenerArn=identifier)


class ListenerRuleAdapter(AwsAdapter):
    """Listener rules routing requests to target groups."""

    service = 'elbv2'
    kind = ResourceKind.LISTENER_RULE

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        rule = self.client.create_rule(
            ListenerArn=attributes['listener_arn'],
            Priority=int(attributes['priority']),
            Conditions=_conditions(attributes.get('conditions', [])),
            Actions=[_action(attributes['action'])],
        )['Rules'][0]
        arn = rule['RuleArn']
        return arn, {'id': arn, 'arn': arn}

    def read(self, identifier: str) -> Tuple[Dict[str, Any], Outputs]:
        try:
            rules = self.client.describe_rules(RuleArns=[identifier])['Rules']
        except ClientError as e:
            raise self._missing(identifier, e)
        if not rules:
            raise self._missing(identifier)
        priority = rules[0].get('Priority')
        attributes = {'priority': int(priority) if priority and priority.isdigit() else priority}
        return attributes, {'id': identifier, 'arn': identifier}

    def update(self, identifier: str, attributes: Dict[str, Any]) -> Outputs:
        self.client.modify_rule(
            RuleArn=identifier,
            Conditions=_conditions(attributes.get('conditions', [])),
            Actions=[_action(attributes['action'])],
        )
        if 'priority' in attributes:
            self.client.set_rule_priorities(
                RulePriorities=[{'RuleArn': identifier, 'Priority': int(attributes['priority'])}]
            )
        return {'id': identifier, 'arn': identifier}

    def delete(self, identifier: str) -> None:
        self._ignore_missing(self.client.delete_rule, RuleArn=identifier)


class DataLookupAdapter(DataSourceAdapter):
    """Read-only lookups of existing EC2 objects.

    Supported ``query`` values: ``default-vpc``, ``subnets`` (``vpc_id``),
    and ``image`` (``name_pattern``, optional ``owners``).
    """

    def __init__(self, clients: AWSClientManager):
        self.clients = clients
        self.client = clients.get_client('ec2')

    def lookup(self, attributes: Dict[str, Any]) -> Tuple[str, Outputs]:
        query = attributes.get('query')
        if query == 'default-vpc':
            vpcs = self.client.describe_vpcs(Filters=[{'Name': 'isDefault', 'Values': ['true']}])['Vpcs']
            if not vpcs:
                raise ResourceNotFoundError("No default VPC in this region")
            vpc = vpcs[0]
            return vpc['VpcId'], {'id': vpc['VpcId'], 'cidr_block': vpc.get('CidrBlock')}

        if query == 'subnets':
            subnets = self.client.describe_subnets(
                Filters=[{'Name': 'vpc-id', 'Values': [attributes['vpc_id']]}]
            )['Subnets']
            ids = sorted(subnet['SubnetId'] for subnet in subnets)
            return attributes['vpc_id'], {'id': attributes['vpc_id'], 'ids': ids}

        if query == 'image':
            images = self.client.describe_images(
                Owners=list(attributes.get('owners', ['amazon'])),
                Filters=[{'Name': 'name', 'Values': [attributes['name_pattern']]}],
            )['Images']
            if not images:
                raise ResourceNotFoundError(f"No image matches {attributes['name_pattern']!r}")
            image = max(images, key=lambda item: item.get('CreationDate', ''))
            return image['ImageId'], {'id': image['ImageId'], 'name': image.get('Name')}

        raise ConfigurationError(f"Unsupported data lookup query: {query!r}")


def aws_registry(clients: AWSClientManager) -> ProviderRegistry:
    """Build a registry of AWS adapters for every kind."""
    return ProviderRegistry({
        ResourceKind.SECURITY_GROUP: SecurityGroupAdapter(clients),
        ResourceKind.LAUNCH_TEMPLATE: LaunchTemplateAdapter(clients),
        ResourceKind.AUTOSCALING_GROUP: AutoScalingGroupAdapter(clients),
        ResourceKind.LOAD_BALANCER: LoadBalancerAdapter(clients),
        ResourceKind.TARGET_GROUP: TargetGroupAdapter(clients),
        ResourceKind.LISTENER: ListenerAdapter(clients),
        ResourceKind.LISTENER_RULE: ListenerRuleAdapter(clients),
        ResourceKind.DATA_LOOKUP: DataLookupAdapter(clients),
    })
