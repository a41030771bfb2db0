"""
Stackforge - Compute Resource Types
"""

from __future__ import annotations
from typing import Any, Dict, List

from stackforge.resources.base import ResourceHandler, ResourceTypeRegistry


@ResourceTypeRegistry.register
class InstanceHandler(ResourceHandler):
    TYPE_NAME = "AWS::EC2::Instance"
    KIND = "compute"
    REQUIRED_PROPERTIES = ["ImageId"]
    OPTIONAL_PROPERTIES = [
        "InstanceType",
        "KeyName",
        "SecurityGroupIds",
        "SubnetId",
        "UserData",
        "IamInstanceProfile",
        "AvailabilityZone",
    ]
    ATTRIBUTES = [
        "AvailabilityZone",
        "InstanceId",
        "PrivateDnsName",
        "PrivateIp",
        "PublicDnsName",
        "PublicIp",
    ]

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        errors = []
        groups = properties.get("SecurityGroupIds")
        if groups is not None and not isinstance(groups, list):
            errors.append("SecurityGroupIds must be a list")
        user_data = properties.get("UserData")
        if user_data is not None and not isinstance(user_data, str):
            errors.append("UserData must be a base64 encoded string")
        return errors
