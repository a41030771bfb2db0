"""
Tests for the template parser.

Covers short-form intrinsic tags, structural validation and the
transformation into the Template model.
"""

import pytest

from stackforge.engine.errors import MalformedTemplate, TemplateError, UnknownResourceType
from stackforge.engine.parser import TemplateParser, get_parser


def _template(resources: str, extra: str = "") -> str:
    return f"AWSTemplateFormatVersion: '2010-09-09'\n{extra}Resources:\n{resources}"


VPC = """
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
"""


class TestParseSampleTemplate:
    """Tests against the VPC + load balancer sample template."""

    def test_parses_all_sections(self, sample_template):
        """Should read parameters, resources and outputs in declaration order."""
        template = TemplateParser().parse(sample_template)

        assert template.format_version == "2010-09-09"
        assert len(template.resources) == 16
        assert list(template.resources)[:3] == ["MyVpc", "MyIgw", "MyAttachGateway"]
        assert set(template.parameters) == {
            "LatestUbuntuAmiId",
            "InstanceType",
            "KeyName",
            "VpcCidr",
            "PublicSubnet1Cidr",
            "PublicSubnet2Cidr",
            "LoadBalancerName",
        }
        assert set(template.outputs) == {
            "VpcIdOutput",
            "PublicSubnet1IdOutput",
            "PublicSubnet2IdOutput",
            "LoadBalancerDNSName",
        }

    def test_declaration_index_follows_document_order(self, sample_template):
        template = TemplateParser().parse(sample_template)

        indexes = [node.declaration_index for node in template.resources.values()]
        assert indexes == list(range(16))

    def test_short_form_tags_become_long_form(self, sample_template):
        """Should expand !Ref, !GetAtt and !Sub to their mapping forms."""
        template = TemplateParser().parse(sample_template)

        vpc = template.resources["MyVpc"]
        assert vpc.properties["CidrBlock"] == {"Ref": "VpcCidr"}

        dns = template.outputs["LoadBalancerDNSName"]
        assert dns.value == {"Fn::GetAtt": ["LoadBalancer", "DNSName"]}
        assert dns.export_name == "LoadBalancerDNS"

        user_data = template.resources["MyInstance1"].properties["UserData"]
        assert "Fn::Sub" in user_data["Fn::Base64"]

    def test_depends_on_is_recorded(self, sample_template):
        template = TemplateParser().parse(sample_template)

        assert template.resources["MyRoute"].depends_on == ("MyAttachGateway",)
        assert template.resources["MyVpc"].depends_on == ()

    def test_parameter_bindings(self, sample_template):
        template = TemplateParser().parse(sample_template)

        instance_type = template.parameters["InstanceType"]
        assert instance_type.default == "t2.micro"
        assert instance_type.allowed_values == ["t2.micro", "t3.micro", "t2.small", "t3.small"]

        ami = template.parameters["LatestUbuntuAmiId"]
        assert ami.is_parameter_store_path

        assert template.parameters["KeyName"].default is None


class TestStructuralValidation:
    """Tests for malformed documents."""

    def test_invalid_yaml(self):
        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse("Resources: [unclosed")

        assert "syntax error" in exc_info.value.message

    def test_empty_document(self):
        with pytest.raises(MalformedTemplate):
            TemplateParser().parse("")

    def test_missing_resources(self):
        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse("AWSTemplateFormatVersion: '2010-09-09'\n")

        assert exc_info.value.node == "Resources"

    def test_conditions_are_not_supported(self):
        body = _template(VPC, extra="Conditions:\n  IsProd:\n    Fn::Equals: [a, b]\n")

        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse(body)

        assert exc_info.value.node == "Conditions"

    def test_unknown_resource_type(self):
        body = _template("""
  Bucket:
    Type: AWS::S3::Bucket
""")

        with pytest.raises(UnknownResourceType) as exc_info:
            TemplateParser().parse(body)

        assert exc_info.value.resource_type == "AWS::S3::Bucket"
        assert exc_info.value.node == "Bucket"

    def test_collects_every_error(self):
        """Should report all structural problems, not only the first."""
        body = _template("""
  Bad-Name:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
  Vpc:
    Type: AWS::EC2::VPC
    DeletionPolicy: Snapshot
    Properties:
      CidrBlock: 10.0.0.0/16
""")

        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse(body)

        assert len(exc_info.value.errors) == 2

    def test_parameter_requires_type(self):
        body = _template(VPC, extra="Parameters:\n  Cidr:\n    Default: 10.0.0.0/16\n")

        with pytest.raises(MalformedTemplate):
            TemplateParser().parse(body)

    def test_output_requires_value(self):
        body = _template(VPC) + "Outputs:\n  Broken:\n    Description: no value\n"

        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse(body)

        assert exc_info.value.node == "Broken"

    def test_accepts_json(self):
        body = (
            '{"Resources": {"Vpc": {"Type": "AWS::EC2::VPC",'
            ' "Properties": {"CidrBlock": "10.0.0.0/16"}}}}'
        )

        template = TemplateParser().parse(body)

        assert template.resources["Vpc"].type == "AWS::EC2::VPC"


class TestValidateOnly:
    def test_valid(self, sample_template):
        valid, errors = get_parser().validate_only(sample_template)

        assert valid is True
        assert errors == []

    def test_invalid(self):
        valid, errors = get_parser().validate_only("Resources: {}")

        assert valid is False
        assert errors

    def test_errors_are_template_errors(self):
        with pytest.raises(TemplateError):
            TemplateParser().parse("- just\n- a list\n")


class TestParseFile:
    def test_reads_template_from_disk(self, tmp_path):
        path = tmp_path / "network.yml"
        path.write_text(_template(VPC), encoding="utf-8")

        template = TemplateParser().parse_file(str(path))

        assert list(template.resources) == ["Vpc"]
        assert template.resources["Vpc"].type == "AWS::EC2::VPC"

    def test_missing_file(self, tmp_path):
        missing = tmp_path / "absent.yml"

        with pytest.raises(MalformedTemplate) as exc_info:
            TemplateParser().parse_file(str(missing))

        assert "Cannot read file" in exc_info.value.message
        assert exc_info.value.node == str(missing)
