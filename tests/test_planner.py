"""Tests for plan computation."""

from typing import Any

import pytest
from provider_mock import declaration, resource

from provisioner.graph import ResourceGraph, build_graph
from provisioner.planner import ActionType, Planner, StepOperation, UnsafeReplacementError
from provisioner.policy import ReplacementPolicy
from provisioner.references import UNKNOWN
from provisioner.state import DeposedInstance, StateRecord, StateStore

POLICY = ReplacementPolicy.model_validate(
    {
        "rules": [
            {"kinds": ["test:Fixed"], "replaceOn": ["size"], "createBeforeDelete": False},
            {"kinds": ["test:*"], "replaceOn": ["size"]},
        ]
    }
)


def seed(
    store: StateStore,
    name: str,
    kind: str = "test:Resource",
    deps: tuple[str, ...] = (),
    outputs: dict[str, Any] | None = None,
    **attributes: Any,
) -> StateRecord:
    """Record `name` as already applied."""
    attributes.setdefault("name", name)
    record = StateRecord(
        name=name,
        kind=kind,
        physical_id=f"{name.lower()}-1",
        attributes=attributes,
        outputs=outputs or {},
        dependencies=list(deps),
    )
    store.put(record)
    return record


def step_keys(plan) -> list[str]:
    return [step.key for step in plan.steps]


class TestCreateAndNoOp:
    """Tests for first-time and repeated plans."""

    def _graph(self) -> ResourceGraph:
        return build_graph(
            declaration(
                resource("Network"),
                resource("Role"),
                resource("Compute", role={"ref": "Role.arn"}),
                resource("Balancer", depends_on=["Network"]),
            )
        )

    def test_empty_state_creates_everything(self, store: StateStore) -> None:
        """Test that every resource is created in dependency order."""
        plan = Planner().plan(self._graph(), store)

        assert [a.action for a in plan.actions] == [ActionType.CREATE] * 4
        assert step_keys(plan) == [
            "create:Network",
            "create:Role",
            "create:Compute",
            "create:Balancer",
        ]
        compute = plan.action_for("Compute")
        assert compute.planned_attributes["role"] is UNKNOWN
        assert plan.steps[2].requires == frozenset({"create:Role"})

    def test_matching_state_is_no_op(self, store: StateStore) -> None:
        """Test that a declaration matching state plans nothing."""
        seed(store, "Network")
        seed(store, "Role", outputs={"arn": "arn:role"})
        seed(store, "Compute", deps=("Role",), role="arn:role")
        seed(store, "Balancer", deps=("Network",))

        plan = Planner().plan(self._graph(), store)

        assert not plan.has_changes
        assert plan.changes == []
        assert plan.summary()["no-op"] == 4

    def test_plan_does_not_write_state(self, store: StateStore) -> None:
        """Test that planning is read-only."""
        Planner().plan(self._graph(), store)

        assert store.names() == []
        assert store.pending() == {}


class TestUpdate:
    """Tests for in-place updates."""

    def test_changed_attribute_updates(self, store: StateStore) -> None:
        """Test a non-replacement attribute change."""
        seed(store, "Role", memory=128)
        graph = build_graph(declaration(resource("Role", memory=256)))

        plan = Planner(POLICY).plan(graph, store)

        action = plan.action_for("Role")
        assert action.action == ActionType.UPDATE
        assert [(d.name, d.before, d.after) for d in action.diffs] == [("memory", 128, 256)]
        assert step_keys(plan) == ["update:Role"]

    def test_removed_attribute_is_a_diff(self, store: StateStore) -> None:
        """Test that dropping an attribute is detected."""
        seed(store, "Role", memory=128)
        graph = build_graph(declaration(resource("Role")))

        action = Planner().plan(graph, store).action_for("Role")

        assert action.action == ActionType.UPDATE
        assert action.diffs[0].name == "memory"
        assert action.diffs[0].after is None

    def test_update_propagates_to_reported_attribute(self, store: StateStore) -> None:
        """Test that references to provider outputs of an updated resource become unknown."""
        seed(store, "Role", outputs={"arn": "arn:role"}, policy="a")
        seed(store, "Compute", deps=("Role",), role="arn:role")
        graph = build_graph(
            declaration(
                resource("Role", policy="b"),
                resource("Compute", role={"ref": "Role.arn"}),
            )
        )

        plan = Planner().plan(graph, store)

        assert plan.action_for("Compute").action == ActionType.UPDATE
        assert plan.action_for("Compute").planned_attributes["role"] is UNKNOWN
        assert step_keys(plan) == ["update:Role", "update:Compute"]
        assert plan.steps[1].requires == frozenset({"update:Role"})

    def test_id_reference_stays_known_across_update(self, store: StateStore) -> None:
        """Test that an update keeps the physical id, so id references do not change."""
        seed(store, "Role", policy="a")
        seed(store, "Compute", deps=("Role",), role="role-1")
        graph = build_graph(
            declaration(
                resource("Role", policy="b"),
                resource("Compute", role={"ref": "Role"}),
            )
        )

        plan = Planner().plan(graph, store)

        assert plan.action_for("Compute").action == ActionType.NO_OP
        assert step_keys(plan) == ["update:Role"]

    def test_new_dependency_updates_record(self, store: StateStore) -> None:
        """Test that a dependency-only change still rewrites the record."""
        seed(store, "Network")
        seed(store, "Balancer")
        graph = build_graph(
            declaration(resource("Network"), resource("Balancer", depends_on=["Network"]))
        )

        plan = Planner().plan(graph, store)

        assert plan.action_for("Balancer").action == ActionType.UPDATE
        assert plan.action_for("Balancer").diffs == []


class TestReplace:
    """Tests for replacement planning."""

    def test_create_before_delete(self, store: StateStore) -> None:
        """Test that the old instance is deleted after its dependents move."""
        seed(store, "Network", size=1)
        seed(store, "Balancer", deps=("Network",), net="network-1")
        graph = build_graph(
            declaration(
                resource("Network", size=2),
                resource("Balancer", net={"ref": "Network"}),
            )
        )

        plan = Planner(POLICY).plan(graph, store)

        network = plan.action_for("Network")
        assert network.action == ActionType.REPLACE
        assert network.replacement_reasons == ["size"]
        assert "create-before-delete" in network.describe()
        assert plan.action_for("Balancer").action == ActionType.UPDATE
        assert step_keys(plan) == [
            "create:Network",
            "update:Balancer",
            "delete-deposed:Network:0",
        ]
        deposed = plan.steps[2]
        assert deposed.physical_id == "network-1"
        assert deposed.requires == frozenset({"create:Network", "update:Balancer"})

    def test_delete_before_create(self, store: StateStore) -> None:
        """Test the ordering for kinds that cannot coexist."""
        seed(store, "Network", kind="test:Fixed", size=1)
        seed(store, "Balancer", deps=("Network",), net="network-1")
        graph = build_graph(
            declaration(
                resource("Network", kind="test:Fixed", size=2),
                resource("Balancer", net={"ref": "Network"}),
            )
        )

        plan = Planner(POLICY).plan(graph, store)

        assert not plan.action_for("Network").create_before_delete
        assert step_keys(plan) == ["delete:Network", "create:Network", "update:Balancer"]

    def test_chained_delete_before_create(self, store: StateStore) -> None:
        """Test that a replaced dependent is deleted before its replaced dependency."""
        seed(store, "Network", kind="test:Fixed", size=1)
        seed(store, "Balancer", kind="test:Fixed", deps=("Network",), net="network-1", size=1)
        graph = build_graph(
            declaration(
                resource("Network", kind="test:Fixed", size=2),
                resource("Balancer", kind="test:Fixed", net={"ref": "Network"}, size=2),
            )
        )

        plan = Planner(POLICY).plan(graph, store)

        steps = {step.key: step for step in plan.steps}
        assert steps["delete:Network"].requires == frozenset({"delete:Balancer"})
        assert step_keys(plan) == [
            "delete:Balancer",
            "delete:Network",
            "create:Network",
            "create:Balancer",
        ]

    def test_dependent_follows_delete_before_create(self, store: StateStore) -> None:
        """Test that a replaced dependent cannot outlive its deleted dependency."""
        seed(store, "Network", kind="test:Fixed", size=1)
        seed(store, "Balancer", deps=("Network",), net="network-1", size=1)
        graph = build_graph(
            declaration(
                resource("Network", kind="test:Fixed", size=2),
                resource("Balancer", net={"ref": "Network"}, size=2),
            )
        )

        plan = Planner(POLICY).plan(graph, store)

        assert not plan.action_for("Balancer").create_before_delete
        assert step_keys(plan) == [
            "delete:Balancer",
            "delete:Network",
            "create:Network",
            "create:Balancer",
        ]
        assert not any(s.operation == StepOperation.DELETE_DEPOSED for s in plan.steps)

    def test_kind_change_forces_replacement(self, store: StateStore) -> None:
        """Test that a new kind cannot be applied in place."""
        seed(store, "Network", kind="test:Old")
        graph = build_graph(declaration(resource("Network", kind="test:New")))

        plan = Planner().plan(graph, store)

        action = plan.action_for("Network")
        assert action.action == ActionType.REPLACE
        assert action.diffs[0].name == "kind"
        deposed = [s for s in plan.steps if s.operation == StepOperation.DELETE_DEPOSED]
        assert deposed[0].kind == "test:Old"

    def test_pinned_id_blocks_replacement(self, store: StateStore) -> None:
        """Test that a literal copy of the old id makes replacement unsafe."""
        seed(store, "Network", size=1)
        seed(store, "Balancer", net="network-1")
        graph = build_graph(
            declaration(resource("Network", size=2), resource("Balancer", net="network-1"))
        )

        with pytest.raises(UnsafeReplacementError) as exc_info:
            Planner(POLICY).plan(graph, store)

        assert exc_info.value.resource == "Network"
        assert exc_info.value.pinned_by == "Balancer"

    def test_pinned_id_inside_resource_path(self, store: StateStore) -> None:
        """Test that an id embedded in a longer path still counts as pinned."""
        seed(store, "Network", size=1)
        seed(store, "Balancer", net="/networks/network-1/subnets/a")
        graph = build_graph(
            declaration(
                resource("Network", size=2),
                resource("Balancer", net="/networks/network-1/subnets/a"),
            )
        )

        with pytest.raises(UnsafeReplacementError):
            Planner(POLICY).plan(graph, store)

    def test_longer_id_is_not_pinned(self, store: StateStore) -> None:
        """Test that an id sharing a prefix with the replaced one is not a match."""
        seed(store, "Network", size=1)
        seed(store, "Balancer", net="network-10")
        graph = build_graph(
            declaration(resource("Network", size=2), resource("Balancer", net="network-10"))
        )

        plan = Planner(POLICY).plan(graph, store)

        assert plan.action_for("Network").action == ActionType.REPLACE
        assert plan.action_for("Balancer").action == ActionType.NO_OP

    def test_leftover_deposed_instance_is_cleaned_up(self, store: StateStore) -> None:
        """Test that a superseded instance from an earlier run is deleted."""
        record = seed(store, "Network")
        record.deposed = [DeposedInstance("network-0", "test:Resource")]
        store.put(record)
        graph = build_graph(declaration(resource("Network")))

        plan = Planner().plan(graph, store)

        assert step_keys(plan) == ["update:Network", "delete-deposed:Network:0"]


class TestDelete:
    """Tests for resources removed from the declaration."""

    def test_removed_resources_deleted_dependents_first(self, store: StateStore) -> None:
        """Test reverse dependency order for deletes."""
        seed(store, "Network")
        seed(store, "Balancer", deps=("Network",))
        seed(store, "Listener", deps=("Balancer",))

        plan = Planner().plan(ResourceGraph(), store)

        assert [a.name for a in plan.actions] == ["Listener", "Balancer", "Network"]
        assert step_keys(plan) == ["delete:Listener", "delete:Balancer", "delete:Network"]
        assert plan.summary()["delete"] == 3

    def test_partial_removal(self, store: StateStore) -> None:
        """Test removing a dependent while keeping its dependency."""
        seed(store, "Network")
        seed(store, "Balancer", deps=("Network",))

        plan = Planner().plan(build_graph(declaration(resource("Network"))), store)

        assert plan.action_for("Network").action == ActionType.NO_OP
        assert step_keys(plan) == ["delete:Balancer"]


class TestPending:
    """Tests for unconfirmed operations."""

    def test_pending_marker_forces_reconcile(self, store: StateStore) -> None:
        """Test that an interrupted resource is revisited even without diffs."""
        seed(store, "Network")
        store.mark_pending("Network", "update", "network-1")

        plan = Planner().plan(build_graph(declaration(resource("Network"))), store)

        action = plan.action_for("Network")
        assert action.action == ActionType.UPDATE
        assert action.reconcile_required
        assert "reconciling" in action.describe()
        assert plan.to_dict()["actions"][0]["reconcile_required"] is True
