"""
Stackforge - AWS Provider

Provisions resources through the EC2, Elastic Load Balancing v2, SSM and
STS APIs using boto3. Client errors are translated into the engine's
transient/fatal provider errors.
"""

from __future__ import annotations
import base64
import binascii
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from stackforge.engine.errors import FatalProviderError, ProviderError, TransientProviderError
from stackforge.providers.base import CloudProvider, ProviderFactory, ProviderResult

logger = logging.getLogger(__name__)

TOKEN_TAG_KEY = "stackforge:idempotency-token"
LOGICAL_ID_TAG_KEY = "stackforge:logical-id"

# Error codes worth retrying
TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestThrottled",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "DependencyViolation",
    "IncorrectState",
    "ResourceInUse",
}

# Error codes meaning "already in the requested state"
ALREADY_DONE_CODES = {
    "Resource.AlreadyAssociated",
    "RouteAlreadyExists",
    "InvalidPermission.Duplicate",
}

# Error codes meaning "already gone"
ABSENT_CODES_SUFFIX = (".NotFound", "NotFound", "NotFoundException")


def classify_client_error(error: ClientError) -> ProviderError:
    """
    Translate a botocore ClientError into a provider error.

    Lookups that fail with a *.NotFound code are treated as transient: EC2
    is eventually consistent and a freshly created id may not be visible yet.
    """
    details = error.response.get("Error", {})
    code = details.get("Code", "Unknown")
    message = details.get("Message", str(error))

    if code in TRANSIENT_CODES or code.endswith(".NotFound"):
        return TransientProviderError(message, code=code)
    return FatalProviderError(message, code=code)


def _is_absent(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code", "")
    return code.endswith(ABSENT_CODES_SUFFIX)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _tags(tags: Optional[List[Dict[str, str]]], **extra: str) -> List[Dict[str, str]]:
    result = [{"Key": t["Key"], "Value": str(t["Value"])} for t in (tags or [])]
    result.extend({"Key": k, "Value": v} for k, v in extra.items())
    return result


def _tag_spec(resource_type: str, tags: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": tags}]


def _plain_user_data(user_data: str) -> str:
    """boto3 base64-encodes UserData itself; undo the template's encoding."""
    try:
        return base64.b64decode(user_data, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return user_data


def _ip_permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    permissions = []
    for rule in rules:
        permission: Dict[str, Any] = {"IpProtocol": str(rule["IpProtocol"])}
        if "FromPort" in rule:
            permission["FromPort"] = int(rule["FromPort"])
        if "ToPort" in rule:
            permission["ToPort"] = int(rule["ToPort"])
        if "CidrIp" in rule:
            permission["IpRanges"] = [{"CidrIp": rule["CidrIp"]}]
        if "SourceSecurityGroupId" in rule:
            permission["UserIdGroupPairs"] = [{"GroupId": rule["SourceSecurityGroupId"]}]
        permissions.append(permission)
    return permissions


class AwsProvider(CloudProvider):
    """
    Cloud provider backed by the AWS APIs.

    Idempotency:
    - RunInstances receives the token as ClientToken
    - Taggable EC2 resources carry the token as a tag and are looked up by
      it before creating
    - Load balancers and target groups are idempotent by name
    - Attachments, routes and associations treat "already exists" as success
    - VPC, subnet and security group attributes are applied again when a
      resource is found by its token
    """

    # EC2 resource types that are looked up by token tag before creating
    TAG_LOOKUPS: Dict[str, tuple] = {
        "AWS::EC2::VPC": ("describe_vpcs", "Vpcs", "VpcId"),
        "AWS::EC2::InternetGateway": (
            "describe_internet_gateways", "InternetGateways", "InternetGatewayId"
        ),
        "AWS::EC2::Subnet": ("describe_subnets", "Subnets", "SubnetId"),
        "AWS::EC2::RouteTable": ("describe_route_tables", "RouteTables", "RouteTableId"),
        "AWS::EC2::SecurityGroup": ("describe_security_groups", "SecurityGroups", "GroupId"),
    }

    def __init__(
        self,
        region: str,
        account_id: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
    ):
        self.session = session or boto3.session.Session(region_name=region)
        self.ec2 = self.session.client("ec2", region_name=region)
        self.elbv2 = self.session.client("elbv2", region_name=region)
        self.ssm = self.session.client("ssm", region_name=region)
        if account_id is None:
            account_id = self._lookup_account_id()
        super().__init__(region, account_id)

        self._creators: Dict[str, Callable[[str, Dict[str, Any], str], str]] = {
            "AWS::EC2::VPC": self._create_vpc,
            "AWS::EC2::InternetGateway": self._create_internet_gateway,
            "AWS::EC2::VPCGatewayAttachment": self._create_gateway_attachment,
            "AWS::EC2::Subnet": self._create_subnet,
            "AWS::EC2::RouteTable": self._create_route_table,
            "AWS::EC2::Route": self._create_route,
            "AWS::EC2::SubnetRouteTableAssociation": self._create_route_table_association,
            "AWS::EC2::SecurityGroup": self._create_security_group,
            "AWS::EC2::Instance": self._create_instance,
            "AWS::ElasticLoadBalancingV2::LoadBalancer": self._create_load_balancer,
            "AWS::ElasticLoadBalancingV2::TargetGroup": self._create_target_group,
            "AWS::ElasticLoadBalancingV2::Listener": self._create_listener,
        }
        # Attribute calls made once the resource exists; they run again when a
        # retry finds the resource by its token
        self._configurers: Dict[str, Callable[[str, Dict[str, Any]], None]] = {
            "AWS::EC2::VPC": self._set_vpc_dns,
            "AWS::EC2::Subnet": self._configure_subnet,
            "AWS::EC2::SecurityGroup": self._authorize_rules,
        }
        self._deleters: Dict[str, Callable[[str], None]] = {
            "AWS::EC2::VPC": lambda pid: self.ec2.delete_vpc(VpcId=pid),
            "AWS::EC2::InternetGateway":
                lambda pid: self.ec2.delete_internet_gateway(InternetGatewayId=pid),
            "AWS::EC2::VPCGatewayAttachment": self._delete_gateway_attachment,
            "AWS::EC2::Subnet": lambda pid: self.ec2.delete_subnet(SubnetId=pid),
            "AWS::EC2::RouteTable": lambda pid: self.ec2.delete_route_table(RouteTableId=pid),
            "AWS::EC2::Route": self._delete_route,
            "AWS::EC2::SubnetRouteTableAssociation":
                lambda pid: self.ec2.disassociate_route_table(AssociationId=pid),
            "AWS::EC2::SecurityGroup": lambda pid: self.ec2.delete_security_group(GroupId=pid),
            "AWS::EC2::Instance": self._delete_instance,
            "AWS::ElasticLoadBalancingV2::LoadBalancer": self._delete_load_balancer,
            "AWS::ElasticLoadBalancingV2::TargetGroup":
                lambda pid: self.elbv2.delete_target_group(TargetGroupArn=pid),
            "AWS::ElasticLoadBalancingV2::Listener":
                lambda pid: self.elbv2.delete_listener(ListenerArn=pid),
        }

        logger.info(f"AwsProvider initialized: region={region}, account={self.account_id}")

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ClientError as e:
            error = classify_client_error(e)
            logger.warning(f"{operation} failed: {error.code} - {error.message}")
            raise error from e
        except WaiterError as e:
            raise FatalProviderError(f"{operation} did not settle: {e}", code="WaiterError") from e
        except BotoCoreError as e:
            raise TransientProviderError(f"{operation} failed: {e}", code=type(e).__name__) from e

    def _lookup_account_id(self) -> str:
        with self._translate_errors("GetCallerIdentity"):
            return self.session.client("sts").get_caller_identity()["Account"]

    # =========================================================================
    # RESOURCE OPERATIONS
    # =========================================================================

    def create_resource(
        self,
        resource_type: str,
        logical_id: str,
        properties: Dict[str, Any],
        idempotency_token: str,
    ) -> str:
        creator = self._creators.get(resource_type)
        if creator is None:
            raise FatalProviderError(f"Unsupported resource type: {resource_type}")

        with self._translate_errors(f"Create {logical_id}"):
            physical_id = self._find_by_token(resource_type, idempotency_token)
            if physical_id:
                logger.info(f"Found {logical_id} by idempotency token: {physical_id}")
            else:
                physical_id = creator(logical_id, properties, idempotency_token)
            configure = self._configurers.get(resource_type)
            if configure:
                configure(physical_id, properties)

        logger.info(f"Created {resource_type}: {logical_id} -> {physical_id}")
        return physical_id

    def read_resource(self, resource_type: str, physical_id: str) -> ProviderResult:
        with self._translate_errors(f"Read {physical_id}"):
            attributes = self._read_attributes(resource_type, physical_id)
        return ProviderResult(physical_id=physical_id, attributes=attributes)

    def update_resource(
        self,
        resource_type: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous_properties: Dict[str, Any],
    ) -> str:
        changed = {
            k for k in set(properties) | set(previous_properties)
            if properties.get(k) != previous_properties.get(k)
        }
        with self._translate_errors(f"Update {physical_id}"):
            if resource_type == "AWS::EC2::VPC" and changed <= {
                "EnableDnsSupport", "EnableDnsHostnames", "Tags"
            }:
                self._set_vpc_dns(physical_id, properties)
            elif resource_type == "AWS::EC2::Subnet" and changed <= {"MapPublicIpOnLaunch", "Tags"}:
                self.ec2.modify_subnet_attribute(
                    SubnetId=physical_id,
                    MapPublicIpOnLaunch={"Value": bool(properties.get("MapPublicIpOnLaunch"))},
                )
            elif resource_type == "AWS::ElasticLoadBalancingV2::TargetGroup" and changed <= {
                "HealthCheckEnabled", "HealthCheckPath", "HealthCheckPort",
                "HealthCheckProtocol", "Targets",
            }:
                self._update_target_group(physical_id, properties, previous_properties)
            elif resource_type == "AWS::ElasticLoadBalancingV2::Listener":
                kwargs = self._listener_kwargs(properties)
                kwargs.pop("LoadBalancerArn")
                self.elbv2.modify_listener(ListenerArn=physical_id, **kwargs)
            else:
                raise FatalProviderError(
                    f"Changing {sorted(changed)} on {resource_type} requires replacement",
                    code="NotUpdatable",
                )
        return physical_id

    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        deleter = self._deleters.get(resource_type)
        if deleter is None:
            raise FatalProviderError(f"Unsupported resource type: {resource_type}")
        with self._translate_errors(f"Delete {physical_id}"):
            try:
                deleter(physical_id)
            except ClientError as e:
                if not _is_absent(e):
                    raise
                logger.debug(f"Delete of absent resource ignored: {physical_id}")

    def resolve_parameter(self, path: str) -> str:
        # see https://documentation.ubuntu.com/aws/aws-how-to/instances/find-ubuntu-images/
        with self._translate_errors(f"GetParameters {path}"):
            response = self.ssm.get_parameters(Names=[path])
        if not response["Parameters"]:
            raise FatalProviderError(f"Parameter {path} not found", code="ParameterNotFound")
        return response["Parameters"][0]["Value"]

    def availability_zones(self) -> List[str]:
        with self._translate_errors("DescribeAvailabilityZones"):
            response = self.ec2.describe_availability_zones(
                Filters=[{"Name": "state", "Values": ["available"]}]
            )
        return sorted(z["ZoneName"] for z in response["AvailabilityZones"])

    # =========================================================================
    # IDEMPOTENCY
    # =========================================================================

    def _find_by_token(self, resource_type: str, token: str) -> Optional[str]:
        lookup = self.TAG_LOOKUPS.get(resource_type)
        if lookup is None:
            return None
        method, collection, id_key = lookup
        response = getattr(self.ec2, method)(
            Filters=[{"Name": f"tag:{TOKEN_TAG_KEY}", "Values": [token]}]
        )
        items = response.get(collection, [])
        return items[0][id_key] if items else None

    def _stack_tags(self, logical_id: str, token: str, properties: Dict[str, Any]):
        return _tags(
            properties.get("Tags"),
            **{TOKEN_TAG_KEY: token, LOGICAL_ID_TAG_KEY: logical_id},
        )

    # =========================================================================
    # EC2
    # =========================================================================

    def _create_vpc(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "CidrBlock": properties["CidrBlock"],
            "TagSpecifications": _tag_spec("vpc", self._stack_tags(logical_id, token, properties)),
        }
        if properties.get("InstanceTenancy"):
            kwargs["InstanceTenancy"] = properties["InstanceTenancy"]
        return self.ec2.create_vpc(**kwargs)["Vpc"]["VpcId"]

    def _set_vpc_dns(self, vpc_id: str, properties: Dict[str, Any]) -> None:
        # Only one attribute may be modified per call
        if "EnableDnsSupport" in properties:
            self.ec2.modify_vpc_attribute(
                VpcId=vpc_id, EnableDnsSupport={"Value": bool(properties["EnableDnsSupport"])}
            )
        if "EnableDnsHostnames" in properties:
            self.ec2.modify_vpc_attribute(
                VpcId=vpc_id, EnableDnsHostnames={"Value": bool(properties["EnableDnsHostnames"])}
            )

    def _create_internet_gateway(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        response = self.ec2.create_internet_gateway(
            TagSpecifications=_tag_spec(
                "internet-gateway", self._stack_tags(logical_id, token, properties)
            )
        )
        return response["InternetGateway"]["InternetGatewayId"]

    def _create_gateway_attachment(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        gateway_id = properties["InternetGatewayId"]
        vpc_id = properties["VpcId"]
        try:
            self.ec2.attach_internet_gateway(InternetGatewayId=gateway_id, VpcId=vpc_id)
        except ClientError as e:
            if _error_code(e) not in ALREADY_DONE_CODES:
                raise
        return f"IGW|{gateway_id}|{vpc_id}"

    def _delete_gateway_attachment(self, physical_id: str) -> None:
        _, gateway_id, vpc_id = physical_id.split("|")
        self.ec2.detach_internet_gateway(InternetGatewayId=gateway_id, VpcId=vpc_id)

    def _create_subnet(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "VpcId": properties["VpcId"],
            "CidrBlock": properties["CidrBlock"],
            "TagSpecifications": _tag_spec(
                "subnet", self._stack_tags(logical_id, token, properties)
            ),
        }
        if properties.get("AvailabilityZone"):
            kwargs["AvailabilityZone"] = properties["AvailabilityZone"]
        return self.ec2.create_subnet(**kwargs)["Subnet"]["SubnetId"]

    def _configure_subnet(self, subnet_id: str, properties: Dict[str, Any]) -> None:
        if properties.get("MapPublicIpOnLaunch"):
            self.ec2.modify_subnet_attribute(
                SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
            )

    def _create_route_table(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        response = self.ec2.create_route_table(
            VpcId=properties["VpcId"],
            TagSpecifications=_tag_spec(
                "route-table", self._stack_tags(logical_id, token, properties)
            ),
        )
        return response["RouteTable"]["RouteTableId"]

    def _create_route(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs = {
            k: properties[k]
            for k in ("RouteTableId", "DestinationCidrBlock", "GatewayId", "NatGatewayId", "InstanceId")
            if properties.get(k)
        }
        try:
            self.ec2.create_route(**kwargs)
        except ClientError as e:
            if _error_code(e) not in ALREADY_DONE_CODES:
                raise
        return f"{properties['RouteTableId']}_{properties['DestinationCidrBlock']}"

    def _delete_route(self, physical_id: str) -> None:
        route_table_id, destination = physical_id.split("_", 1)
        self.ec2.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination)

    def _create_route_table_association(
        self, logical_id: str, properties: Dict[str, Any], token: str
    ) -> str:
        subnet_id = properties["SubnetId"]
        route_table_id = properties["RouteTableId"]
        try:
            response = self.ec2.associate_route_table(
                SubnetId=subnet_id, RouteTableId=route_table_id
            )
        except ClientError as e:
            if _error_code(e) not in ALREADY_DONE_CODES:
                raise
            existing = self._find_association(subnet_id, route_table_id)
            if existing is None:
                raise
            return existing
        return response["AssociationId"]

    def _find_association(self, subnet_id: str, route_table_id: str) -> Optional[str]:
        tables = self.ec2.describe_route_tables(
            Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}]
        )["RouteTables"]
        for table in tables:
            for association in table.get("Associations", []):
                if (
                    association.get("SubnetId") == subnet_id
                    and table.get("RouteTableId") == route_table_id
                ):
                    return association["RouteTableAssociationId"]
        return None

    def _create_security_group(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "GroupName": properties.get("GroupName") or f"{logical_id}-{token[:8]}",
            "Description": properties["GroupDescription"],
            "TagSpecifications": _tag_spec(
                "security-group", self._stack_tags(logical_id, token, properties)
            ),
        }
        if properties.get("VpcId"):
            kwargs["VpcId"] = properties["VpcId"]
        return self.ec2.create_security_group(**kwargs)["GroupId"]

    def _authorize_rules(self, group_id: str, properties: Dict[str, Any]) -> None:
        calls = (
            (self.ec2.authorize_security_group_ingress, properties.get("SecurityGroupIngress")),
            (self.ec2.authorize_security_group_egress, properties.get("SecurityGroupEgress")),
        )
        for authorize, rules in calls:
            if not rules:
                continue
            try:
                authorize(GroupId=group_id, IpPermissions=_ip_permissions(rules))
            except ClientError as e:
                if _error_code(e) not in ALREADY_DONE_CODES:
                    raise

    def _create_instance(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "ImageId": properties["ImageId"],
            "InstanceType": properties.get("InstanceType", "m1.small"),
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": token[:64],
            "TagSpecifications": _tag_spec(
                "instance", self._stack_tags(logical_id, token, properties)
            ),
        }
        for key in ("KeyName", "SecurityGroupIds", "SubnetId"):
            if properties.get(key):
                kwargs[key] = properties[key]
        if properties.get("UserData"):
            kwargs["UserData"] = _plain_user_data(properties["UserData"])
        if properties.get("IamInstanceProfile"):
            kwargs["IamInstanceProfile"] = {"Name": properties["IamInstanceProfile"]}

        instance_id = self.ec2.run_instances(**kwargs)["Instances"][0]["InstanceId"]
        waiter = self.ec2.get_waiter("instance_running")
        waiter.wait(InstanceIds=[instance_id])
        return instance_id

    def _delete_instance(self, physical_id: str) -> None:
        self.ec2.terminate_instances(InstanceIds=[physical_id])
        waiter = self.ec2.get_waiter("instance_terminated")
        waiter.wait(InstanceIds=[physical_id])

    # =========================================================================
    # ELASTIC LOAD BALANCING V2
    # =========================================================================

    def _create_load_balancer(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "Name": properties.get("Name") or f"{logical_id[:23]}-{token[:8]}",
            "Subnets": properties["Subnets"],
            "Tags": self._stack_tags(logical_id, token, properties),
        }
        for key in ("SecurityGroups", "Scheme", "Type", "IpAddressType"):
            if properties.get(key):
                kwargs[key] = properties[key]
        arn = self.elbv2.create_load_balancer(**kwargs)["LoadBalancers"][0]["LoadBalancerArn"]
        waiter = self.elbv2.get_waiter("load_balancer_available")
        waiter.wait(LoadBalancerArns=[arn])
        return arn

    def _delete_load_balancer(self, physical_id: str) -> None:
        self.elbv2.delete_load_balancer(LoadBalancerArn=physical_id)
        waiter = self.elbv2.get_waiter("load_balancers_deleted")
        waiter.wait(LoadBalancerArns=[physical_id])

    def _create_target_group(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        kwargs: Dict[str, Any] = {
            "Name": properties.get("Name") or f"{logical_id[:23]}-{token[:8]}",
            "Tags": self._stack_tags(logical_id, token, properties),
        }
        for key in (
            "Protocol", "VpcId", "TargetType", "HealthCheckPath",
            "HealthCheckPort", "HealthCheckProtocol",
        ):
            if properties.get(key) is not None:
                kwargs[key] = properties[key]
        if properties.get("Port") is not None:
            kwargs["Port"] = int(properties["Port"])
        if properties.get("HealthCheckEnabled") is not None:
            kwargs["HealthCheckEnabled"] = bool(properties["HealthCheckEnabled"])

        arn = self.elbv2.create_target_group(**kwargs)["TargetGroups"][0]["TargetGroupArn"]
        targets = properties.get("Targets")
        if targets:
            self.elbv2.register_targets(
                TargetGroupArn=arn, Targets=[{"Id": t["Id"]} for t in targets]
            )
        return arn

    def _update_target_group(
        self,
        arn: str,
        properties: Dict[str, Any],
        previous_properties: Dict[str, Any],
    ) -> None:
        kwargs = {
            k: properties[k]
            for k in ("HealthCheckEnabled", "HealthCheckPath", "HealthCheckPort", "HealthCheckProtocol")
            if properties.get(k) is not None
        }
        if kwargs:
            self.elbv2.modify_target_group(TargetGroupArn=arn, **kwargs)

        old = {t["Id"] for t in previous_properties.get("Targets") or []}
        new = {t["Id"] for t in properties.get("Targets") or []}
        if new - old:
            self.elbv2.register_targets(
                TargetGroupArn=arn, Targets=[{"Id": i} for i in sorted(new - old)]
            )
        if old - new:
            self.elbv2.deregister_targets(
                TargetGroupArn=arn, Targets=[{"Id": i} for i in sorted(old - new)]
            )

    @staticmethod
    def _listener_kwargs(properties: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "LoadBalancerArn": properties["LoadBalancerArn"],
            "DefaultActions": [
                {k: v for k, v in action.items() if k in ("Type", "TargetGroupArn", "Order")}
                for action in properties["DefaultActions"]
            ],
        }
        if properties.get("Protocol"):
            kwargs["Protocol"] = properties["Protocol"]
        if properties.get("Port") is not None:
            kwargs["Port"] = int(properties["Port"])
        if properties.get("Certificates"):
            kwargs["Certificates"] = properties["Certificates"]
        if properties.get("SslPolicy"):
            kwargs["SslPolicy"] = properties["SslPolicy"]
        return kwargs

    def _create_listener(self, logical_id: str, properties: Dict[str, Any], token: str) -> str:
        response = self.elbv2.create_listener(**self._listener_kwargs(properties))
        return response["Listeners"][0]["ListenerArn"]

    # =========================================================================
    # ATTRIBUTES
    # =========================================================================

    def _read_attributes(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        if resource_type == "AWS::EC2::VPC":
            vpc = self.ec2.describe_vpcs(VpcIds=[physical_id])["Vpcs"][0]
            groups = self.ec2.describe_security_groups(
                Filters=[
                    {"Name": "vpc-id", "Values": [physical_id]},
                    {"Name": "group-name", "Values": ["default"]},
                ]
            )["SecurityGroups"]
            acls = self.ec2.describe_network_acls(
                Filters=[
                    {"Name": "vpc-id", "Values": [physical_id]},
                    {"Name": "default", "Values": ["true"]},
                ]
            )["NetworkAcls"]
            return {
                "VpcId": physical_id,
                "CidrBlock": vpc["CidrBlock"],
                "DefaultSecurityGroup": groups[0]["GroupId"] if groups else None,
                "DefaultNetworkAcl": acls[0]["NetworkAclId"] if acls else None,
            }
        if resource_type == "AWS::EC2::InternetGateway":
            self.ec2.describe_internet_gateways(InternetGatewayIds=[physical_id])
            return {"InternetGatewayId": physical_id}
        if resource_type == "AWS::EC2::Subnet":
            subnet = self.ec2.describe_subnets(SubnetIds=[physical_id])["Subnets"][0]
            return {
                "SubnetId": physical_id,
                "VpcId": subnet["VpcId"],
                "CidrBlock": subnet["CidrBlock"],
                "AvailabilityZone": subnet["AvailabilityZone"],
            }
        if resource_type == "AWS::EC2::RouteTable":
            self.ec2.describe_route_tables(RouteTableIds=[physical_id])
            return {"RouteTableId": physical_id}
        if resource_type == "AWS::EC2::SecurityGroup":
            group = self.ec2.describe_security_groups(GroupIds=[physical_id])["SecurityGroups"][0]
            return {"GroupId": physical_id, "VpcId": group.get("VpcId")}
        if resource_type == "AWS::EC2::Instance":
            reservations = self.ec2.describe_instances(InstanceIds=[physical_id])["Reservations"]
            instance = reservations[0]["Instances"][0]
            return {
                "InstanceId": physical_id,
                "AvailabilityZone": instance["Placement"]["AvailabilityZone"],
                "PrivateIp": instance.get("PrivateIpAddress"),
                "PrivateDnsName": instance.get("PrivateDnsName"),
                "PublicIp": instance.get("PublicIpAddress"),
                "PublicDnsName": instance.get("PublicDnsName"),
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            lb = self.elbv2.describe_load_balancers(LoadBalancerArns=[physical_id])[
                "LoadBalancers"
            ][0]
            return {
                "LoadBalancerArn": physical_id,
                "LoadBalancerName": lb["LoadBalancerName"],
                "LoadBalancerFullName": physical_id.split(":loadbalancer/", 1)[-1],
                "DNSName": lb["DNSName"],
                "CanonicalHostedZoneID": lb["CanonicalHostedZoneId"],
                "SecurityGroups": lb.get("SecurityGroups", []),
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::TargetGroup":
            group = self.elbv2.describe_target_groups(TargetGroupArns=[physical_id])[
                "TargetGroups"
            ][0]
            return {
                "TargetGroupArn": physical_id,
                "TargetGroupName": group["TargetGroupName"],
                "TargetGroupFullName": physical_id.split(":", 5)[-1],
                "LoadBalancerArns": group.get("LoadBalancerArns", []),
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::Listener":
            self.elbv2.describe_listeners(ListenerArns=[physical_id])
            return {"ListenerArn": physical_id}
        if resource_type == "AWS::EC2::SubnetRouteTableAssociation":
            return {"Id": physical_id}
        return {}


# Register provider with factory
ProviderFactory.register("aws", AwsProvider)
