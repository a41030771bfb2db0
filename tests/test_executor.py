"""
Tests for the provisioning executor.

Runs against the FakeCloudProvider: ordering, idempotent re-apply,
updates, retries, partial failure, rollback, cancellation and teardown.
"""

import threading
import time

import pytest

from stackforge.engine.errors import (
    CyclicDependency,
    FatalProviderError,
    StackOperationError,
    TransientProviderError,
)
from stackforge.engine.executor import (
    ProvisioningExecutor,
    create_executor,
    idempotency_token,
    properties_hash,
)
from stackforge.models import ResourceStatus, StackStatus
from stackforge.providers.fake_cloud import FakeCloudProvider

TWO_RESOURCES = """
Resources:
  A:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
  B:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref A
      CidrBlock: 10.0.1.0/24
"""


def _created_order(provider):
    return [op["target"] for op in provider.operations if op["operation"] == "create"]


class TestApplyOrdering:
    def test_reference_target_created_first(self, executor, provider, build_graph):
        """B references A: A is created strictly before B."""
        graph = build_graph(TWO_RESOURCES)

        result = executor.apply("two", graph)

        assert result.status == StackStatus.COMPLETE
        assert result.created == ["A", "B"]
        assert _created_order(provider) == ["A", "B"]

    def test_sample_template(self, executor, provider, store, build_graph, sample_template, sample_parameters):
        graph = build_graph(sample_template, sample_parameters, stack_name="demo")

        result = executor.apply("demo", graph, parameters=sample_parameters)

        assert result.status == StackStatus.COMPLETE
        assert len(result.created) == 16
        assert result.failed == [] and result.skipped == []

        position = {name: i for i, name in enumerate(_created_order(provider))}
        assert all(position[dep] < position[name] for dep, name in graph.edges())

        assert result.outputs["LoadBalancerDNSName"].endswith(".us-east-1.elb.amazonaws.com")
        assert result.outputs["VpcIdOutput"].startswith("vpc-")

        state = store.load_state("demo")
        assert state.status == StackStatus.COMPLETE
        assert all(r.status == ResourceStatus.CREATED for r in state.resources.values())
        assert state.creation_order[0] == "MyVpc"
        assert store.export_values()["VpcId"] == result.outputs["VpcIdOutput"]

    def test_instances_receive_rendered_ids(self, executor, provider, store, build_graph, sample_template, sample_parameters):
        graph = build_graph(sample_template, sample_parameters)

        executor.apply("demo", graph)

        state = store.load_state("demo")
        instance = state.resources["MyInstance1"].properties
        assert instance["SubnetId"] == state.resources["PublicSubnetAZ1"].physical_id
        assert instance["SecurityGroupIds"] == [state.resources["InstanceSecurityGroup"].physical_id]
        targets = state.resources["TargetGroups"].properties["Targets"]
        assert targets == [
            {"Id": state.resources["MyInstance1"].physical_id},
            {"Id": state.resources["MyInstance2"].physical_id},
        ]

    def test_cycle_rejected_before_any_provider_call(self, pipeline, provider):
        body = """
Resources:
  A:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: !Ref B
  B:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: !Ref A
"""

        with pytest.raises(CyclicDependency):
            pipeline.apply("cyclic", body)

        assert provider.calls["create"] == 0
        assert provider.operations == []


class TestIdempotency:
    def test_rerun_issues_zero_creates(self, executor, provider, build_graph, network_template):
        graph = build_graph(network_template, stack_name="net")
        executor.apply("net", graph)
        creates = provider.calls["create"]

        result = executor.apply("net", graph)

        assert result.status == StackStatus.COMPLETE
        assert result.created == []
        assert sorted(result.unchanged) == ["Subnet", "Vpc", "Web", "WebSecurityGroup"]
        assert provider.calls["create"] == creates
        assert result.provider_calls == 0

    def test_changed_property_is_updated(self, executor, provider, store, build_graph, network_template):
        executor.apply("net", build_graph(network_template, stack_name="net"))
        vpc_id = store.load_state("net").resources["Vpc"].physical_id

        result = executor.apply(
            "net", build_graph(network_template, {"VpcCidr": "10.2.0.0/16"}, stack_name="net")
        )

        assert result.updated == ["Vpc"]
        assert "Subnet" in result.unchanged
        assert provider.calls["update"] == 1
        state = store.load_state("net")
        assert state.resources["Vpc"].physical_id == vpc_id
        assert state.resources["Vpc"].properties["CidrBlock"] == "10.2.0.0/16"

    def test_removed_resource_is_deleted(self, executor, provider, store, build_graph):
        executor.apply("two", build_graph(TWO_RESOURCES))
        subnet_id = store.load_state("two").resources["B"].physical_id

        only_vpc = TWO_RESOURCES.split("  B:")[0]
        result = executor.apply("two", build_graph(only_vpc))

        assert result.status == StackStatus.COMPLETE
        assert result.deleted == ["B"]
        assert not provider.exists(subnet_id)
        assert "B" not in store.load_state("two").resources

    def test_idempotency_token_is_deterministic(self):
        first = idempotency_token("stack/1", "Vpc", properties_hash({"CidrBlock": "10.0.0.0/16"}))
        second = idempotency_token("stack/1", "Vpc", properties_hash({"CidrBlock": "10.0.0.0/16"}))
        other = idempotency_token("stack/1", "Vpc", properties_hash({"CidrBlock": "10.1.0.0/16"}))

        assert first == second
        assert first != other


class TestRetries:
    def test_transient_create_errors_are_retried(self, executor, provider, store, build_graph):
        provider.inject_failure("create", "A", TransientProviderError("Rate exceeded", code="Throttling"), times=2)

        result = executor.apply("two", build_graph(TWO_RESOURCES))

        assert result.status == StackStatus.COMPLETE
        state = store.load_state("two")
        # three create attempts plus one read
        assert state.resources["A"].attempts == 4
        assert len(provider.resources_of_type("AWS::EC2::VPC")) == 1

    def test_eventually_consistent_reads(self, store, build_graph):

        lagging = FakeCloudProvider("us-east-1", read_lag=2)
        executor = ProvisioningExecutor(lagging, store, max_attempts=5, backoff_base=0, backoff_max=0)

        result = executor.apply("two", build_graph(TWO_RESOURCES))

        assert result.status == StackStatus.COMPLETE
        assert lagging.calls["read"] == 6

    def test_exhausted_retries_fail_the_resource(self, executor, provider, build_graph):
        provider.inject_failure("create", "A", TransientProviderError("Rate exceeded"), times=3)

        result = executor.apply("two", build_graph(TWO_RESOURCES))

        assert result.status == StackStatus.FAILED
        assert result.failed == ["A"]
        assert result.skipped == ["B"]


class TestPartialFailure:
    def test_fatal_error_aborts_dependents_only(self, executor, provider, store, build_graph, network_template):
        provider.inject_failure(
            "create", "Subnet", FatalProviderError("Invalid CIDR", code="InvalidSubnet.Range")
        )

        result = executor.apply("net", build_graph(network_template, stack_name="net"))

        assert result.status == StackStatus.FAILED
        assert result.failed == ["Subnet"]
        assert result.skipped == ["Web"]
        assert sorted(result.created) == ["Vpc", "WebSecurityGroup"]
        assert result.errors["Subnet"] == "Invalid CIDR"
        assert provider.calls["create"] == 3

        state = store.load_state("net")
        assert state.status == StackStatus.FAILED
        assert state.resources["Vpc"].status == ResourceStatus.CREATED
        assert state.resources["Subnet"].status == ResourceStatus.FAILED
        assert state.resources["Web"].status == ResourceStatus.PENDING
        assert provider.exists(state.resources["Vpc"].physical_id)
        assert store.export_values() == {}

    def test_retry_after_failure_completes(self, executor, provider, build_graph, network_template):
        provider.inject_failure("create", "Subnet", FatalProviderError("boom"))
        graph = build_graph(network_template, stack_name="net")
        executor.apply("net", graph)

        result = executor.apply("net", graph)

        assert result.status == StackStatus.COMPLETE
        assert sorted(result.created) == ["Subnet", "Web"]
        assert sorted(result.unchanged) == ["Vpc", "WebSecurityGroup"]

    def test_invalid_properties_never_reach_provider(self, executor, provider, build_graph):
        body = """
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/8
      Colour: blue
"""

        result = executor.apply("bad", build_graph(body))

        assert result.status == StackStatus.FAILED
        assert "Colour" in result.errors["Vpc"]
        assert provider.calls["create"] == 0

    def test_quota_exceeded_is_fatal(self, store, build_graph):

        limited = FakeCloudProvider("us-east-1", max_vpcs=0)
        executor = ProvisioningExecutor(limited, store, max_attempts=3, backoff_base=0, backoff_max=0)

        result = executor.apply("two", build_graph(TWO_RESOURCES))

        assert result.failed == ["A"]
        assert limited.calls["create"] == 1

    def test_non_numeric_port_fails_only_its_resource(self, executor, provider, store, build_graph):
        body = """
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
  WebSg:
    Type: AWS::EC2::SecurityGroup
    Properties:
      GroupDescription: web
      VpcId: !Ref Vpc
      SecurityGroupIngress:
        - IpProtocol: tcp
          FromPort: http
          ToPort: 80
  Gateway:
    Type: AWS::EC2::InternetGateway
"""

        result = executor.apply("ports", build_graph(body))

        assert result.status == StackStatus.FAILED
        assert result.failed == ["WebSg"]
        assert "FromPort and ToPort must be integers" in result.errors["WebSg"]
        assert sorted(result.created) == ["Gateway", "Vpc"]
        assert provider.calls["create"] == 2

        state = store.load_state("ports")
        assert state.status == StackStatus.FAILED
        assert state.resources["WebSg"].status == ResourceStatus.FAILED

    def test_cidr_split_from_attribute_fails_at_render(self, executor, provider, store, build_graph):
        """Fn::Cidr over a GetAtt is evaluated once the VPC exists."""
        body = """
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
  Subnet:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref Vpc
      CidrBlock: !Select [0, !Cidr [!GetAtt Vpc.CidrBlock, 300, 8]]
  Gateway:
    Type: AWS::EC2::InternetGateway
"""

        result = executor.apply("carve", build_graph(body))

        assert result.status == StackStatus.FAILED
        assert result.failed == ["Subnet"]
        assert "Fn::Cidr cannot carve 300" in result.errors["Subnet"]
        assert sorted(result.created) == ["Gateway", "Vpc"]
        assert store.load_state("carve").status == StackStatus.FAILED

    def test_cidr_split_from_attribute(self, executor, provider, store, build_graph):
        body = """
Resources:
  Vpc:
    Type: AWS::EC2::VPC
    Properties:
      CidrBlock: 10.0.0.0/16
  Subnet:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !Ref Vpc
      CidrBlock: !Select [2, !Cidr [!GetAtt Vpc.CidrBlock, 4, 8]]
"""

        result = executor.apply("carve", build_graph(body))

        assert result.status == StackStatus.COMPLETE
        assert store.load_state("carve").resources["Subnet"].properties["CidrBlock"] == "10.0.2.0/24"


class _TrackingProvider(FakeCloudProvider):
    """Records how many creates are in flight at once."""

    def __init__(self, region, delay=0.05):
        super().__init__(region)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        self._tracking_lock = threading.Lock()

    def create_resource(self, resource_type, logical_id, properties, idempotency_token):
        with self._tracking_lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            return super().create_resource(resource_type, logical_id, properties, idempotency_token)
        finally:
            with self._tracking_lock:
                self.in_flight -= 1


def _gateways(count):
    lines = ["Resources:"]
    for i in range(count):
        lines += [f"  Gateway{i}:", "    Type: AWS::EC2::InternetGateway"]
    return "\n".join(lines) + "\n"


class TestConcurrency:
    def test_independent_resources_run_together(self, store, build_graph):
        tracking = _TrackingProvider("us-east-1")
        executor = ProvisioningExecutor(tracking, store, max_workers=4, backoff_base=0, backoff_max=0)

        result = executor.apply("gw", build_graph(_gateways(3)))

        assert result.status == StackStatus.COMPLETE
        assert tracking.peak > 1

    def test_in_flight_never_exceeds_max_workers(self, store, build_graph):
        tracking = _TrackingProvider("us-east-1")
        executor = ProvisioningExecutor(tracking, store, max_workers=2, backoff_base=0, backoff_max=0)

        result = executor.apply("gw", build_graph(_gateways(6)))

        assert result.status == StackStatus.COMPLETE
        assert len(result.created) == 6
        assert tracking.peak <= 2

    def test_dependent_waits_for_its_reference(self, store, build_graph):
        tracking = _TrackingProvider("us-east-1")
        executor = ProvisioningExecutor(tracking, store, max_workers=4, backoff_base=0, backoff_max=0)

        result = executor.apply("two", build_graph(TWO_RESOURCES))

        assert result.created == ["A", "B"]
        assert tracking.peak == 1


class TestRollback:
    def test_rollback_on_failure(self, executor, provider, store, build_graph, network_template):
        provider.inject_failure("create", "Web", FatalProviderError("Insufficient capacity"))

        result = executor.apply(
            "net", build_graph(network_template, stack_name="net"), rollback_on_failure=True
        )

        assert result.status == StackStatus.ROLLED_BACK
        assert result.failed == ["Web"]
        assert sorted(result.deleted) == ["Subnet", "Vpc", "WebSecurityGroup"]
        assert provider.get_state()["resources"] == {}
        assert set(store.load_state("net").resources) == {"Web"}

    def test_no_rollback_by_default(self, executor, provider, build_graph, network_template):
        provider.inject_failure("create", "Web", FatalProviderError("Insufficient capacity"))

        result = executor.apply("net", build_graph(network_template, stack_name="net"))

        assert result.status == StackStatus.FAILED
        assert result.deleted == []
        assert sum(provider.get_state()["resources"].values()) == 3


class TestCancel:
    def test_cancel_stops_dispatch(self, provider, store, build_graph, network_template):
        executor = ProvisioningExecutor(provider, store, max_workers=1, backoff_base=0, backoff_max=0)

        def cancel_on_first(stack_name, percent, current):
            if current == "Vpc":
                executor.cancel()

        executor.set_progress_callback(cancel_on_first)

        result = executor.apply("net", build_graph(network_template, stack_name="net"))

        assert result.status == StackStatus.CANCELLED
        assert result.created == ["Vpc"]
        assert result.skipped == ["Subnet", "WebSecurityGroup", "Web"]
        assert provider.calls["create"] == 1

    def test_cancel_after_last_dispatch_completes(self, provider, store, build_graph, network_template):
        executor = ProvisioningExecutor(provider, store, max_workers=1, backoff_base=0, backoff_max=0)
        executor.set_progress_callback(
            lambda name, percent, current: executor.cancel() if current == "Web" else None
        )

        result = executor.apply("net", build_graph(network_template, stack_name="net"))

        assert result.status == StackStatus.COMPLETE
        assert result.skipped == []
        assert len(result.created) == 4
        assert result.outputs["VpcIdOutput"].startswith("vpc-")
        assert store.load_state("net").status == StackStatus.COMPLETE

    def test_apply_after_cancel_resumes(self, provider, store, build_graph, network_template):
        executor = ProvisioningExecutor(provider, store, max_workers=1, backoff_base=0, backoff_max=0)
        graph = build_graph(network_template, stack_name="net")
        executor.set_progress_callback(
            lambda name, percent, current: executor.cancel() if current == "Vpc" else None
        )
        executor.apply("net", graph)

        executor.set_progress_callback(lambda name, percent, current: None)
        result = executor.apply("net", graph)

        assert result.status == StackStatus.COMPLETE
        assert result.unchanged == ["Vpc"]
        assert len(result.created) == 3


class TestDestroy:
    def test_destroy_in_reverse_order(self, executor, provider, store, build_graph, sample_template, sample_parameters):
        graph = build_graph(sample_template, sample_parameters, stack_name="demo")
        executor.apply("demo", graph)
        creation_order = store.load_state("demo").creation_order

        result = executor.destroy("demo")

        assert result.status == StackStatus.DELETED
        assert result.deleted == list(reversed(creation_order))
        assert provider.get_state()["resources"] == {}
        assert store.load_exports() == {}
        assert store.load_state("demo").status == StackStatus.DELETED

    def test_retain_policy_keeps_resource(self, executor, provider, store, build_graph):
        body = TWO_RESOURCES.replace(
            "  A:\n    Type: AWS::EC2::VPC\n",
            "  A:\n    Type: AWS::EC2::VPC\n    DeletionPolicy: Retain\n",
        )
        executor.apply("two", build_graph(body))
        vpc_id = store.load_state("two").resources["A"].physical_id

        result = executor.destroy("two")

        assert result.status == StackStatus.DELETED
        assert provider.exists(vpc_id)
        assert provider.calls["delete"] == 1

    def test_refused_while_exports_are_imported(self, pipeline, provider, network_template):
        pipeline.apply("network", network_template)
        consumer = """
Resources:
  Subnet:
    Type: AWS::EC2::Subnet
    Properties:
      VpcId: !ImportValue network-VpcId
      CidrBlock: 10.1.9.0/24
"""
        pipeline.apply("app", consumer)

        with pytest.raises(StackOperationError) as exc_info:
            pipeline.destroy("network")

        assert "app" in exc_info.value.message
        assert provider.calls["delete"] == 0

        pipeline.destroy("app")
        result = pipeline.destroy("network")
        assert result.status == StackStatus.DELETED

    def test_unknown_stack(self, executor):
        with pytest.raises(StackOperationError):
            executor.destroy("nothing-here")

    def test_failed_delete_keeps_dependencies(self, executor, provider, store, build_graph):
        executor.apply("two", build_graph(TWO_RESOURCES))
        subnet_id = store.load_state("two").resources["B"].physical_id
        provider.inject_failure("delete", subnet_id, FatalProviderError("Access denied"))

        result = executor.destroy("two")

        assert result.status == StackStatus.FAILED
        assert result.failed == ["B"]
        assert result.skipped == ["A"]
        assert provider.exists(store.load_state("two").resources["A"].physical_id)


def test_create_executor_factory(provider, store):
    executor = create_executor(provider, store, max_workers=2, max_attempts=7)

    assert isinstance(executor, ProvisioningExecutor)
    assert executor.max_workers == 2
    assert executor.max_attempts == 7
