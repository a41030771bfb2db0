"""
Tests for the end-to-end stack pipeline.
"""

import pytest

from stackforge.config import Settings
from stackforge.engine.errors import InvalidParameterValue, UnknownResourceType
from stackforge.engine.pipeline import MASKED_VALUE, StackPipeline, create_pipeline
from stackforge.models import StackStatus
from stackforge.providers.fake_cloud import FakeCloudProvider

SECRET_TEMPLATE = """
Parameters:
  DbPassword:
    Type: String
    NoEcho: true
  Env:
    Type: String
    Default: dev
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
"""


class TestPrepare:
    def test_plan_without_provider_calls(self, pipeline, provider, sample_template, sample_parameters):
        prepared = pipeline.prepare("demo", sample_template, sample_parameters)

        assert prepared.plan.total_resources == 16
        assert prepared.graph.nodes["MyInstance1"].properties["ImageId"] == "ami-0c4f7023847b90238"
        assert provider.calls["create"] == 0

    def test_static_errors_surface_first(self, pipeline, provider):
        with pytest.raises(UnknownResourceType):
            pipeline.prepare("bad", "Resources:\n  Thing:\n    Type: AWS::Made::Up\n")

        with pytest.raises(InvalidParameterValue):
            pipeline.prepare("bad", SECRET_TEMPLATE, {})

        assert provider.calls["create"] == 0

    def test_pseudo_parameters_come_from_provider(self, store, settings):
        class IsolatedCloud(FakeCloudProvider):
            @property
            def partition(self):
                return "aws-iso"

            @property
            def url_suffix(self):
                return "c2s.ic.gov"

        pipeline = StackPipeline(
            provider=IsolatedCloud("us-iso-east-1"), store=store, settings=settings
        )
        body = """
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
      Tags:
        - Key: Endpoint
          Value: !Sub "ec2.${AWS::Region}.${AWS::URLSuffix}"
        - Key: Partition
          Value: !Ref AWS::Partition
"""

        prepared = pipeline.prepare("iso", body)

        assert prepared.graph.nodes["Vpc"].properties["Tags"] == [
            {"Key": "Endpoint", "Value": "ec2.us-iso-east-1.c2s.ic.gov"},
            {"Key": "Partition", "Value": "aws-iso"},
        ]

    def test_no_echo_values_are_masked(self, pipeline):
        prepared = pipeline.prepare("secret", SECRET_TEMPLATE, {"DbPassword": "hunter2"})

        assert prepared.parameters["DbPassword"] == "hunter2"
        assert prepared.recorded_parameters() == {"DbPassword": MASKED_VALUE, "Env": "dev"}


class TestApplyAndDestroy:
    def test_apply_records_template_plan_and_state(self, pipeline, store, network_template):
        result = pipeline.apply("net", network_template)

        assert result.status == StackStatus.COMPLETE
        assert store.load_template("net") == network_template
        assert store.load_plan("net").creation_order[0] == "Vpc"
        assert store.load_result("net").created == result.created
        assert store.export_values()["net-VpcId"] == result.outputs["VpcIdOutput"]

    def test_masked_parameters_are_persisted(self, pipeline, store):
        pipeline.apply("secret", SECRET_TEMPLATE, {"DbPassword": "hunter2"})

        assert store.load_state("secret").parameters["DbPassword"] == MASKED_VALUE
        assert "hunter2" not in (store.base_path / "stacks" / "secret" / "state.json").read_text()

    def test_cross_stack_import(self, pipeline, store, network_template):
        pipeline.apply("net", network_template)
        app = """
Resources:
  AppSubnet:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !ImportValue net-VpcId
      CidrBlock: 10.1.2.0/24
"""

        result = pipeline.apply("app", app)

        assert result.status == StackStatus.COMPLETE
        assert store.load_state("app").imports == ["net-VpcId"]
        assert store.importers_of("net") == {"app": ["net-VpcId"]}

        assert pipeline.destroy("app").status == StackStatus.DELETED
        assert pipeline.destroy("net").status == StackStatus.DELETED

    def test_destroy_removes_everything(self, pipeline, provider, network_template):
        pipeline.apply("net", network_template)

        result = pipeline.destroy("net")

        assert result.status == StackStatus.DELETED
        assert provider.get_state()["resources"] == {}

    def test_executor_from_settings(self, pipeline):
        executor = pipeline.create_executor()

        assert executor.max_workers == 4
        assert executor.max_attempts == 3
        assert executor.provider is pipeline.provider


def test_create_pipeline_from_settings(tmp_path):
    settings = Settings(state_path=str(tmp_path / "state"), provider="fake", region="eu-west-1")

    pipeline = create_pipeline(settings)

    assert isinstance(pipeline, StackPipeline)
    assert isinstance(pipeline.provider, FakeCloudProvider)
    assert pipeline.provider.region == "eu-west-1"
    assert pipeline.store.base_path == tmp_path / "state"
