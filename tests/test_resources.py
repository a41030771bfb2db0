"""
Tests for resource handlers and the type registry.
"""

from stackforge.resources import ResourceTypeRegistry
from stackforge.resources.network import SecurityGroupHandler


class TestSecurityGroupRules:
    def _errors(self, rule):
        return SecurityGroupHandler().validate(
            {"GroupDescription": "web", "SecurityGroupIngress": [rule]}
        )

    def test_numeric_strings_are_accepted(self):
        assert self._errors({"IpProtocol": "tcp", "FromPort": "80", "ToPort": 443}) == []

    def test_non_numeric_port(self):
        errors = self._errors({"IpProtocol": "tcp", "FromPort": "http", "ToPort": 80})

        assert errors == ["SecurityGroupIngress[0]: FromPort and ToPort must be integers"]

    def test_inverted_range(self):
        errors = self._errors({"IpProtocol": "tcp", "FromPort": 443, "ToPort": 80})

        assert errors == ["SecurityGroupIngress[0]: FromPort is greater than ToPort"]

    def test_missing_protocol(self):
        assert self._errors({"FromPort": 80}) == ["SecurityGroupIngress[0] requires 'IpProtocol'"]


class TestRegistry:
    def test_kinds_partition_available_types(self):
        kinds = ("network", "compute", "load_balancing")
        grouped = [name for kind in kinds for name in ResourceTypeRegistry.by_kind(kind)]

        assert sorted(grouped) == ResourceTypeRegistry.available()
        assert "AWS::EC2::SecurityGroup" in ResourceTypeRegistry.by_kind("network")

    def test_unknown_type(self):
        assert ResourceTypeRegistry.get("AWS::S3::Bucket") is None
