"""
Stackforge - Load Balancing Resource Types

Application load balancers, target groups and listeners.
"""

from __future__ import annotations
from typing import Any, Dict, List

from stackforge.resources.base import ResourceHandler, ResourceTypeRegistry

PROTOCOLS = ["HTTP", "HTTPS", "TCP", "TLS", "UDP", "TCP_UDP"]


def _check_port(properties: Dict[str, Any]) -> List[str]:
    port = properties.get("Port")
    if port is None:
        return []
    try:
        value = int(port)
    except (TypeError, ValueError):
        return [f"Port must be an integer: {port}"]
    if not 1 <= value <= 65535:
        return [f"Port out of range: {value}"]
    return []


def _check_protocol(properties: Dict[str, Any]) -> List[str]:
    protocol = properties.get("Protocol")
    if protocol is not None and protocol not in PROTOCOLS:
        return [f"Unsupported Protocol '{protocol}'. Supported: {PROTOCOLS}"]
    return []


@ResourceTypeRegistry.register
class LoadBalancerHandler(ResourceHandler):
    TYPE_NAME = "AWS::ElasticLoadBalancingV2::LoadBalancer"
    KIND = "load_balancing"
    REQUIRED_PROPERTIES = ["Subnets"]
    OPTIONAL_PROPERTIES = ["Name", "Scheme", "Type", "IpAddressType", "SecurityGroups"]
    ATTRIBUTES = [
        "CanonicalHostedZoneID",
        "DNSName",
        "LoadBalancerArn",
        "LoadBalancerFullName",
        "LoadBalancerName",
        "SecurityGroups",
    ]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = []
        subnets = properties.get("Subnets")
        if isinstance(subnets, list) and len(subnets) < 2:
            errors.append("An application load balancer needs subnets in at least two zones")
        name = properties.get("Name")
        if name is not None and (len(str(name)) > 32 or str(name).startswith("internal-")):
            errors.append(f"Invalid load balancer Name: {name}")
        return errors


@ResourceTypeRegistry.register
class TargetGroupHandler(ResourceHandler):
    TYPE_NAME = "AWS::ElasticLoadBalancingV2::TargetGroup"
    KIND = "load_balancing"
    OPTIONAL_PROPERTIES = [
        "Name",
        "Port",
        "Protocol",
        "VpcId",
        "TargetType",
        "Targets",
        "HealthCheckEnabled",
        "HealthCheckPath",
        "HealthCheckPort",
        "HealthCheckProtocol",
    ]
    ATTRIBUTES = ["LoadBalancerArns", "TargetGroupArn", "TargetGroupFullName", "TargetGroupName"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = _check_port(properties) + _check_protocol(properties)
        targets = properties.get("Targets", [])
        if not isinstance(targets, list) or not all(
            isinstance(t, dict) and t.get("Id") for t in targets
        ):
            errors.append("Targets must be a list of mappings with an 'Id'")
        return errors


@ResourceTypeRegistry.register
class ListenerHandler(ResourceHandler):
    TYPE_NAME = "AWS::ElasticLoadBalancingV2::Listener"
    KIND = "load_balancing"
    REQUIRED_PROPERTIES = ["LoadBalancerArn", "DefaultActions"]
    OPTIONAL_PROPERTIES = ["Port", "Protocol", "Certificates", "SslPolicy"]
    ATTRIBUTES = ["ListenerArn"]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = _check_port(properties) + _check_protocol(properties)
        for i, action in enumerate(properties.get("DefaultActions") or []):
            if not isinstance(action, dict) or "Type" not in action:
                errors.append(f"DefaultActions[{i}] requires 'Type'")
            elif action["Type"] == "forward" and not (
                action.get("TargetGroupArn") or action.get("ForwardConfig")
            ):
                errors.append(f"DefaultActions[{i}]: forward requires TargetGroupArn")
        return errors
