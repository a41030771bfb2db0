"""
Stackforge - Fake Cloud Provider

Simulates the cloud resource-management API for prototyping and testing.
Stores resources in memory, deduplicates retried creates by idempotency
token and can inject transient or fatal failures on demand.
"""

from __future__ import annotations
import hashlib
import random
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from stackforge.engine.errors import FatalProviderError, ProviderError, TransientProviderError
from stackforge.providers.base import CloudProvider, ProviderFactory, ProviderResult

logger = logging.getLogger(__name__)


@dataclass
class _FakeResource:
    resource_type: str
    physical_id: str
    properties: Dict[str, Any]
    attributes: Dict[str, Any]
    references: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    reads: int = 0


class FakeCloudProvider(CloudProvider):
    """
    Fake cloud provider for simulation and testing.

    Features:
    - In-memory resource storage keyed by physical id
    - Idempotency-token deduplication of create calls
    - Reference checks (a subnet needs an existing VPC, and so on)
    - Dependency violations when deleting a resource still in use
    - Scripted failures and optional eventual-consistency on reads
    - Per-operation call counters for inspection
    """

    # Physical id prefixes per resource type
    ID_PREFIXES: Dict[str, str] = {
        "AWS::EC2::VPC": "vpc",
        "AWS::EC2::InternetGateway": "igw",
        "AWS::EC2::VPCGatewayAttachment": "attach",
        "AWS::EC2::Subnet": "subnet",
        "AWS::EC2::RouteTable": "rtb",
        "AWS::EC2::Route": "route",
        "AWS::EC2::SubnetRouteTableAssociation": "rtbassoc",
        "AWS::EC2::SecurityGroup": "sg",
        "AWS::EC2::Instance": "i",
    }

    # Properties holding physical ids of other resources
    REFERENCE_PROPERTIES = [
        "VpcId",
        "InternetGatewayId",
        "SubnetId",
        "RouteTableId",
        "GatewayId",
        "SecurityGroupIds",
        "SecurityGroups",
        "Subnets",
        "LoadBalancerArn",
    ]

    KNOWN_PARAMETERS: Dict[str, str] = {
        "/aws/service/canonical/ubuntu/server/20.04/stable/current/amd64/hvm/ebs-gp2/ami-id":
            "ami-0c4f7023847b90238",
        "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id":
            "ami-04b70fa74e45c3917",
    }

    def __init__(
        self,
        region: str,
        account_id: Optional[str] = None,
        simulate_latency: bool = False,
        failure_rate: float = 0.0,
        read_lag: int = 0,
        max_vpcs: int = 5,
    ):
        """
        Initialize Fake Cloud Provider.

        Args:
            region: Simulated region
            account_id: Simulated account id
            simulate_latency: Add realistic delays
            failure_rate: Probability of a simulated throttling error (0.0 - 1.0)
            read_lag: Number of reads a new resource stays invisible for
            max_vpcs: VPC quota, exceeding it is a fatal error
        """
        super().__init__(region, account_id)
        self.simulate_latency = simulate_latency
        self.failure_rate = failure_rate
        self.read_lag = read_lag
        self.max_vpcs = max_vpcs

        self._lock = threading.Lock()
        self._resources: Dict[str, _FakeResource] = {}
        self._tokens: Dict[str, str] = {}
        self._injected: Dict[Tuple[str, str], List[ProviderError]] = {}
        self.calls: Counter = Counter()
        self.operations: List[Dict[str, Any]] = []
        self.parameters: Dict[str, str] = dict(self.KNOWN_PARAMETERS)

        logger.info(f"FakeCloudProvider initialized: region={region}")

    # =========================================================================
    # FAILURE INJECTION
    # =========================================================================

    def inject_failure(
        self,
        operation: str,
        target: str,
        error: ProviderError,
        times: int = 1,
    ) -> None:
        """
        Make the next `times` calls of `operation` on `target` fail.

        Args:
            operation: "create", "read", "update" or "delete"
            target: Logical id (create) or physical id (other operations)
            error: Error to raise
            times: How many consecutive calls fail
        """
        with self._lock:
            self._injected.setdefault((operation, target), []).extend([error] * times)

    def _raise_injected(self, operation: str, target: str) -> None:
        queue = self._injected.get((operation, target))
        if queue:
            raise queue.pop(0)

    def _simulate_latency(self, base_ms: int = 50, variance_ms: int = 30) -> None:
        """Simulate realistic network/processing latency."""
        if self.simulate_latency:
            delay = (base_ms + random.randint(-variance_ms, variance_ms)) / 1000
            time.sleep(max(0.01, delay))

    def _should_throttle(self) -> bool:
        return random.random() < self.failure_rate

    def _record(self, operation: str, resource_type: str, target: str) -> None:
        self.calls[operation] += 1
        self.operations.append({
            "timestamp": datetime.utcnow().isoformat(),
            "operation": operation,
            "type": resource_type,
            "target": target,
        })

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
        self._simulate_latency(80, 40)
        with self._lock:
            self._record("create", resource_type, logical_id)
            self._raise_injected("create", logical_id)
            if self._should_throttle():
                raise TransientProviderError("Rate exceeded", code="Throttling")

            existing = self._tokens.get(idempotency_token)
            if existing is not None and existing in self._resources:
                logger.debug(f"Create deduplicated by token: {logical_id} -> {existing}")
                return existing

            references = self._check_references(properties)
            if resource_type == "AWS::EC2::VPC":
                vpcs = [r for r in self._resources.values() if r.resource_type == resource_type]
                if len(vpcs) >= self.max_vpcs:
                    raise FatalProviderError(
                        "The maximum number of VPCs has been reached.",
                        code="VpcLimitExceeded",
                    )

            physical_id = self._new_physical_id(resource_type, logical_id, properties)
            self._resources[physical_id] = _FakeResource(
                resource_type=resource_type,
                physical_id=physical_id,
                properties=dict(properties),
                attributes=self._build_attributes(resource_type, physical_id, properties),
                references=references,
            )
            self._tokens[idempotency_token] = physical_id

        logger.info(f"Created {resource_type}: {logical_id} -> {physical_id}")
        return physical_id

    def read_resource(self, resource_type: str, physical_id: str) -> ProviderResult:
        self._simulate_latency(20, 10)
        with self._lock:
            self._record("read", resource_type, physical_id)
            self._raise_injected("read", physical_id)
            resource = self._resources.get(physical_id)
            if resource is None:
                raise FatalProviderError(
                    f"Resource {physical_id} does not exist", code="NotFound"
                )
            resource.reads += 1
            if resource.reads <= self.read_lag:
                raise TransientProviderError(
                    f"Resource {physical_id} is not visible yet", code="NotFound"
                )
            return ProviderResult(physical_id=physical_id, attributes=dict(resource.attributes))

    def update_resource(
        self,
        resource_type: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous_properties: Dict[str, Any],
    ) -> str:
        self._simulate_latency(60, 30)
        with self._lock:
            self._record("update", resource_type, physical_id)
            self._raise_injected("update", physical_id)
            resource = self._resources.get(physical_id)
            if resource is None:
                raise FatalProviderError(
                    f"Resource {physical_id} does not exist", code="NotFound"
                )
            resource.references = self._check_references(properties)
            resource.properties = dict(properties)
            resource.attributes = self._build_attributes(resource_type, physical_id, properties)

        logger.info(f"Updated {resource_type}: {physical_id}")
        return physical_id

    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        self._simulate_latency(60, 30)
        with self._lock:
            self._record("delete", resource_type, physical_id)
            self._raise_injected("delete", physical_id)
            if physical_id not in self._resources:
                logger.debug(f"Delete of absent resource ignored: {physical_id}")
                return
            users = [
                r.physical_id for r in self._resources.values()
                if physical_id in r.references
            ]
            if users:
                raise TransientProviderError(
                    f"Resource {physical_id} has dependent objects: {', '.join(users)}",
                    code="DependencyViolation",
                )
            del self._resources[physical_id]
            self._tokens = {t: p for t, p in self._tokens.items() if p != physical_id}

        logger.info(f"Deleted {resource_type}: {physical_id}")

    def resolve_parameter(self, path: str) -> str:
        with self._lock:
            self._record("resolve_parameter", "AWS::SSM::Parameter", path)
        if path in self.parameters:
            return self.parameters[path]
        raise FatalProviderError(f"Parameter {path} not found", code="ParameterNotFound")

    def availability_zones(self) -> List[str]:
        return [f"{self.region}{suffix}" for suffix in ("a", "b", "c")]

    # =========================================================================
    # SIMULATION HELPERS
    # =========================================================================

    def _check_references(self, properties: Dict[str, Any]) -> List[str]:
        """Verify that referenced physical ids exist; return them."""
        referenced: List[str] = []
        for name in self.REFERENCE_PROPERTIES:
            value = properties.get(name)
            if value is None:
                continue
            values = value if isinstance(value, list) else [value]
            referenced.extend(str(v) for v in values)

        for action in properties.get("DefaultActions") or []:
            if isinstance(action, dict) and action.get("TargetGroupArn"):
                referenced.append(str(action["TargetGroupArn"]))
        for target in properties.get("Targets") or []:
            if isinstance(target, dict) and target.get("Id"):
                referenced.append(str(target["Id"]))

        for ref in referenced:
            if ref not in self._resources:
                raise FatalProviderError(
                    f"The referenced resource '{ref}' does not exist",
                    code="InvalidParameterValue",
                )
        return referenced

    def _new_physical_id(
        self,
        resource_type: str,
        logical_id: str,
        properties: Dict[str, Any],
    ) -> str:
        suffix = uuid.uuid4().hex[:17]
        arn_base = f"arn:{self.partition}:elasticloadbalancing:{self.region}:{self.account_id}"

        if resource_type == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            name = properties.get("Name") or logical_id[:32]
            return f"{arn_base}:loadbalancer/app/{name}/{suffix[:16]}"
        if resource_type == "AWS::ElasticLoadBalancingV2::TargetGroup":
            name = properties.get("Name") or logical_id[:32]
            return f"{arn_base}:targetgroup/{name}/{suffix[:16]}"
        if resource_type == "AWS::ElasticLoadBalancingV2::Listener":
            lb_arn = str(properties.get("LoadBalancerArn", ""))
            lb_part = lb_arn.split(":loadbalancer/", 1)[-1]
            return f"{arn_base}:listener/{lb_part}/{suffix[:16]}"
        if resource_type == "AWS::EC2::Route":
            return f"{properties.get('RouteTableId')}_{properties.get('DestinationCidrBlock')}"
        if resource_type == "AWS::EC2::VPCGatewayAttachment":
            gateway = properties.get("InternetGatewayId") or properties.get("VpnGatewayId")
            return f"IGW|{gateway}|{properties.get('VpcId')}"

        prefix = self.ID_PREFIXES.get(resource_type, "res")
        return f"{prefix}-{suffix}"

    def _build_attributes(
        self,
        resource_type: str,
        physical_id: str,
        properties: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Synthesize the attributes a real provider would report."""
        digest = hashlib.sha1(physical_id.encode()).hexdigest()

        if resource_type == "AWS::EC2::VPC":
            return {
                "VpcId": physical_id,
                "CidrBlock": properties.get("CidrBlock"),
                "DefaultNetworkAcl": f"acl-{digest[:17]}",
                "DefaultSecurityGroup": f"sg-{digest[17:34]}",
            }
        if resource_type == "AWS::EC2::InternetGateway":
            return {"InternetGatewayId": physical_id}
        if resource_type == "AWS::EC2::Subnet":
            return {
                "SubnetId": physical_id,
                "VpcId": properties.get("VpcId"),
                "CidrBlock": properties.get("CidrBlock"),
                "AvailabilityZone": properties.get("AvailabilityZone")
                or self.availability_zones()[0],
            }
        if resource_type == "AWS::EC2::RouteTable":
            return {"RouteTableId": physical_id}
        if resource_type == "AWS::EC2::SubnetRouteTableAssociation":
            return {"Id": physical_id}
        if resource_type == "AWS::EC2::SecurityGroup":
            return {"GroupId": physical_id, "VpcId": properties.get("VpcId")}
        if resource_type == "AWS::EC2::Instance":
            subnet = self._resources.get(str(properties.get("SubnetId")))
            zone = subnet.attributes["AvailabilityZone"] if subnet else self.availability_zones()[0]
            octets = [int(digest[i:i + 2], 16) for i in range(0, 8, 2)]
            private_ip = f"10.{octets[0]}.{octets[1]}.{max(octets[2], 4)}"
            public_ip = f"54.{octets[1]}.{octets[2]}.{octets[3]}"
            return {
                "InstanceId": physical_id,
                "AvailabilityZone": zone,
                "PrivateIp": private_ip,
                "PrivateDnsName": f"ip-{private_ip.replace('.', '-')}.ec2.internal",
                "PublicIp": public_ip,
                "PublicDnsName": f"ec2-{public_ip.replace('.', '-')}.compute-1.amazonaws.com",
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            full_name = physical_id.split(":loadbalancer/", 1)[-1]
            name = full_name.split("/")[1]
            return {
                "LoadBalancerArn": physical_id,
                "LoadBalancerFullName": full_name,
                "LoadBalancerName": name,
                "DNSName": f"{name}-{int(digest[:8], 16)}.{self.region}.elb.{self.url_suffix}",
                "CanonicalHostedZoneID": "Z35SXDOTRQ7X7K",
                "SecurityGroups": list(properties.get("SecurityGroups") or []),
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::TargetGroup":
            full_name = physical_id.split(":", 5)[-1]
            return {
                "TargetGroupArn": physical_id,
                "TargetGroupFullName": full_name,
                "TargetGroupName": full_name.split("/")[1],
                "LoadBalancerArns": [],
            }
        if resource_type == "AWS::ElasticLoadBalancingV2::Listener":
            return {"ListenerArn": physical_id}
        return {}

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def exists(self, physical_id: str) -> bool:
        with self._lock:
            return physical_id in self._resources

    def resources_of_type(self, resource_type: str) -> List[str]:
        with self._lock:
            return [
                r.physical_id for r in self._resources.values()
                if r.resource_type == resource_type
            ]

    def get_state(self) -> Dict[str, Any]:
        """Get current provider state (for debugging/auditing)."""
        with self._lock:
            by_type: Counter = Counter(r.resource_type for r in self._resources.values())
            return {
                "region": self.region,
                "account_id": self.account_id,
                "resources": dict(by_type),
                "calls": dict(self.calls),
            }

    def reset(self) -> None:
        """Reset provider state (for testing)."""
        with self._lock:
            self._resources = {}
            self._tokens = {}
            self._injected = {}
            self.calls = Counter()
            self.operations = []
        logger.info("FakeCloudProvider reset")


# Register provider with factory
ProviderFactory.register("fake", FakeCloudProvider)
