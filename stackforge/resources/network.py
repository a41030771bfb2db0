"""
Stackforge - Network Resource Types

VPCs, gateways, subnets, routing and security groups.
"""

from __future__ import annotations
import ipaddress
from typing import Any, Dict, List, Optional

from stackforge.resources.base import ResourceHandler, ResourceTypeRegistry


def _check_cidr(properties: Dict[str, Any], name: str) -> List[str]:
    value = properties.get(name)
    if value is None:
        return []
    try:
        ipaddress.ip_network(str(value), strict=True)
    except ValueError:
        return [f"'{name}' is not a valid CIDR block: {value}"]
    return []


def _port(value: Any) -> Optional[int]:
    return None if value is None else int(value)


@ResourceTypeRegistry.register
class VpcHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::VPC"
    REQUIRED_PROPERTIES = ["CidrBlock"]
    OPTIONAL_PROPERTIES = ["EnableDnsSupport", "EnableDnsHostnames", "InstanceTenancy"]
    ATTRIBUTES = ["CidrBlock", "DefaultNetworkAcl", "DefaultSecurityGroup", "VpcId"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = _check_cidr(properties, "CidrBlock")
        if not errors and "CidrBlock" in properties:
            prefix = ipaddress.ip_network(str(properties["CidrBlock"])).prefixlen
            if not 16 <= prefix <= 28:
                errors.append("VPC CidrBlock prefix must be between /16 and /28")
        return errors


@ResourceTypeRegistry.register
class InternetGatewayHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::InternetGateway"
    ATTRIBUTES = ["InternetGatewayId"]


@ResourceTypeRegistry.register
class VpcGatewayAttachmentHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::VPCGatewayAttachment"
    REQUIRED_PROPERTIES = ["VpcId"]
    OPTIONAL_PROPERTIES = ["InternetGatewayId", "VpnGatewayId"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        if not properties.get("InternetGatewayId") and not properties.get("VpnGatewayId"):
            return ["VPCGatewayAttachment requires InternetGatewayId or VpnGatewayId"]
        return []


@ResourceTypeRegistry.register
class SubnetHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::Subnet"
    REQUIRED_PROPERTIES = ["VpcId", "CidrBlock"]
    OPTIONAL_PROPERTIES = ["AvailabilityZone", "MapPublicIpOnLaunch"]
    ATTRIBUTES = ["AvailabilityZone", "CidrBlock", "SubnetId", "VpcId"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        return _check_cidr(properties, "CidrBlock")


@ResourceTypeRegistry.register
class RouteTableHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::RouteTable"
    REQUIRED_PROPERTIES = ["VpcId"]
    ATTRIBUTES = ["RouteTableId"]


@ResourceTypeRegistry.register
class RouteHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::Route"
    REQUIRED_PROPERTIES = ["RouteTableId", "DestinationCidrBlock"]
    OPTIONAL_PROPERTIES = ["GatewayId", "NatGatewayId", "InstanceId"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = _check_cidr(properties, "DestinationCidrBlock")
        targets = [k for k in ("GatewayId", "NatGatewayId", "InstanceId") if properties.get(k)]
        if len(targets) != 1:
            errors.append("Route requires exactly one of GatewayId, NatGatewayId, InstanceId")
        return errors


@ResourceTypeRegistry.register
class SubnetRouteTableAssociationHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::SubnetRouteTableAssociation"
    REQUIRED_PROPERTIES = ["SubnetId", "RouteTableId"]
    ATTRIBUTES = ["Id"]


@ResourceTypeRegistry.register
class SecurityGroupHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::SecurityGroup"
    REQUIRED_PROPERTIES = ["GroupDescription"]
    OPTIONAL_PROPERTIES = ["GroupName", "VpcId", "SecurityGroupIngress", "SecurityGroupEgress"]
    ATTRIBUTES = ["GroupId", "VpcId"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = []
        for key in ("SecurityGroupIngress", "SecurityGroupEgress"):
            rules = properties.get(key, [])
            if not isinstance(rules, list):
                errors.append(f"'{key}' must be a list")
                continue
            for i, rule in enumerate(rules):
                if not isinstance(rule, dict) or "IpProtocol" not in rule:
                    errors.append(f"{key}[{i}] requires 'IpProtocol'")
                    continue
                try:
                    from_port = _port(rule.get("FromPort"))
                    to_port = _port(rule.get("ToPort"))
                except (TypeError, ValueError):
                    errors.append(f"{key}[{i}]: FromPort and ToPort must be integers")
                else:
                    if from_port is not None and to_port is not None and from_port > to_port:
                        errors.append(f"{key}[{i}]: FromPort is greater than ToPort")
                if "CidrIp" in rule:
                    errors.extend(
                        f"{key}[{i}]: {e}" for e in _check_cidr(rule, "CidrIp")
                    )
        return errors
