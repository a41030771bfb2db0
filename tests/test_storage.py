"""
Tests for the JSON state store.
"""

import json

import pytest

from stackforge.engine.errors import StackOperationError
from stackforge.models import (
    ApplyResult,
    ExecutionPlan,
    ResourceState,
    ResourceStatus,
    StackState,
    StackStatus,
)
from stackforge.storage import StateStore


def _state(name="net", **kwargs):
    return StackState(stack_name=name, stack_id=f"{name}/1", **kwargs)


class TestStackState:
    def test_save_and_load(self, store):
        state = _state(
            resources={
                "Vpc": ResourceState(
                    logical_id="Vpc",
                    type="AWS::EC2::VPC",
                    status=ResourceStatus.CREATED,
                    physical_id="vpc-1",
                    attributes={"CidrBlock": "10.0.0.0/16"},
                )
            },
            creation_order=["Vpc"],
        )

        store.save_state(state)
        loaded = store.load_state("net")

        assert loaded.resources["Vpc"].physical_id == "vpc-1"
        assert loaded.resources["Vpc"].status == ResourceStatus.CREATED
        assert loaded.creation_order == ["Vpc"]
        assert loaded.updated_at is not None

    def test_unknown_stack(self, store):
        assert store.load_state("missing") is None
        assert not store.stack_exists("missing")

    def test_write_is_atomic(self, store):
        """No temporary files are left beside the state document."""
        store.save_state(_state())
        store.save_state(_state(status=StackStatus.COMPLETE))

        stack_dir = store.base_path / "stacks" / "net"
        assert sorted(p.name for p in stack_dir.iterdir()) == ["state.json"]
        data = json.loads((stack_dir / "state.json").read_text())
        assert data["status"] == "complete"

    def test_list_and_delete(self, store):
        store.save_state(_state("b"))
        store.save_state(_state("a"))

        assert store.list_stacks() == ["a", "b"]
        assert store.delete_stack("a") is True
        assert store.delete_stack("a") is False
        assert store.list_stacks() == ["b"]

    def test_survives_a_new_store_instance(self, settings):
        StateStore(settings.state_path).save_state(_state())

        assert StateStore(settings.state_path).load_state("net") is not None


class TestDocuments:
    def test_template_plan_and_result(self, store):
        store.save_template("net", "Resources: {}\n")
        store.save_plan(ExecutionPlan(stack_name="net", creation_order=["Vpc"], total_resources=1))
        store.save_result(ApplyResult(stack_name="net", status=StackStatus.COMPLETE, created=["Vpc"]))

        assert store.load_template("net") == "Resources: {}\n"
        assert store.load_plan("net").creation_order == ["Vpc"]
        assert store.load_result("net").created == ["Vpc"]

    def test_missing_documents(self, store):
        assert store.load_template("net") is None
        assert store.load_plan("net") is None
        assert store.load_result("net") is None


class TestExports:
    def test_register_and_read(self, store):
        store.register_exports("net", {"net-VpcId": "vpc-1"})

        assert store.export_values() == {"net-VpcId": "vpc-1"}
        assert store.load_exports()["net-VpcId"]["stack"] == "net"

    def test_register_replaces_owned_exports(self, store):
        store.register_exports("net", {"old": "x"})
        store.register_exports("net", {"new": "y"})

        assert store.export_values() == {"new": "y"}

    def test_name_owned_by_other_stack(self, store):
        store.register_exports("net", {"VpcId": "vpc-1"})

        with pytest.raises(StackOperationError):
            store.register_exports("other", {"VpcId": "vpc-2"})

        assert store.export_values() == {"VpcId": "vpc-1"}

    def test_remove_exports(self, store):
        store.register_exports("net", {"VpcId": "vpc-1"})
        store.register_exports("app", {"AppUrl": "http://x"})

        store.remove_exports("net")

        assert store.export_values() == {"AppUrl": "http://x"}

    def test_importers_of(self, store):
        store.register_exports("net", {"net-VpcId": "vpc-1", "net-Unused": "x"})
        store.save_state(_state("net"))
        store.save_state(_state("app", imports=["net-VpcId"]))
        store.save_state(_state("other"))

        assert store.importers_of("net") == {"app": ["net-VpcId"]}
        assert store.importers_of("app") == {}
