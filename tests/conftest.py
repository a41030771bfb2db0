"""
Shared pytest fixtures for all tests.

Every fixture runs against the in-memory FakeCloudProvider and a state
store under pytest's tmp_path, so tests never touch a real cloud account.
Backoff waits are zero to keep retries instant.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from stackforge.config import Settings
from stackforge.engine.executor import ProvisioningExecutor
from stackforge.engine.parameters import bind_parameters
from stackforge.engine.parser import TemplateParser
from stackforge.engine.pipeline import StackPipeline
from stackforge.engine.resolver import ReferenceResolver
from stackforge.models import DependencyGraph
from stackforge.providers.fake_cloud import FakeCloudProvider
from stackforge.storage import StateStore

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


NETWORK_TEMPLATE = """
AWSTemplateFormatVersion: "2010-09-09"
Parameters:
  VpcCidr:
    Type: String
    Default: 10.1.0.0/16
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: !Ref VpcCidr
  Subnet:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref Vpc
      CidrBlock: 10.1.1.0/24
  WebSecurityGroup:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: web
      VpcId: !Ref Vpc
  Web:
    Type: AWS::EC2::Instance
    Properties:
      ImageId: ami-12345678
      SubnetId: !Ref Subnet
      SecurityGroupIds:
        - !Ref WebSecurityGroup
Outputs:
  VpcIdOutput:
    Value: !Ref Vpc
    Export:
      Name: !Sub "${AWS::StackName}-VpcId"
"""


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        state_path=str(tmp_path / "state"),
        provider="fake",
        max_workers=4,
        max_attempts=3,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
    )


@pytest.fixture()
def provider() -> FakeCloudProvider:
    return FakeCloudProvider("us-east-1")


@pytest.fixture()
def store(settings) -> StateStore:
    return StateStore(settings.state_path)


@pytest.fixture()
def executor(provider, store) -> ProvisioningExecutor:
    return ProvisioningExecutor(
        provider=provider,
        store=store,
        max_workers=4,
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
    )


@pytest.fixture()
def pipeline(provider, store, settings) -> StackPipeline:
    return StackPipeline(provider=provider, store=store, settings=settings)


@pytest.fixture()
def sample_template() -> str:
    """The VPC + subnets + instances + load balancer template."""
    return (TEMPLATES_DIR / "vpc_alb.yml").read_text(encoding="utf-8")


@pytest.fixture()
def network_template() -> str:
    """VPC, subnet, security group and one instance; exports the VPC id."""
    return NETWORK_TEMPLATE


@pytest.fixture()
def sample_parameters() -> Dict[str, Any]:
    return {"KeyName": "demo-key"}


@pytest.fixture()
def build_graph(provider) -> Callable[..., DependencyGraph]:
    """Parse, bind and resolve a template body into a dependency graph."""

    def build(
        body: str,
        parameters: Optional[Dict[str, Any]] = None,
        stack_name: str = "test",
        exports: Optional[Dict[str, Any]] = None,
    ) -> DependencyGraph:
        template = TemplateParser().parse(body)
        values = bind_parameters(template, parameters, provider=provider)
        return ReferenceResolver().resolve(
            template, values, stack_name=stack_name, exports=exports
        )

    return build
