"""Plan computation: desired graph versus recorded state.

The Planner is pure. It reads the State Store, never writes it, and never
calls the provider. A Plan has two views of the same change set:

- actions: one ChangeAction per resource (create, update, replace,
  delete, no-op), used for display and summaries
- steps: the provider operations those actions expand into, each naming
  the steps that must commit before it may start

ORDERING:
Creates and updates follow dependency order. Removed resources are no
longer described by the declaration, so their deletes follow reverse
dependency order using the dependencies recorded in state. A replacement
with create-before-delete creates the new instance first and deletes the
old one once every dependent has moved over; otherwise the old instance is
deleted first and dependents briefly point at nothing. A dependent that is
replaced as well is then deleted before it, so a delete-before-create
replacement turns the replacements of its recorded dependents into
delete-before-create too.
"""

from __future__ import annotations

import heapq
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .graph import ResourceGraph, ResourceNode
from .policy import ReplacementPolicy
from .references import (
    ID_ATTRIBUTE,
    UNKNOWN,
    Reference,
    Template,
    contains_unknown,
    normalize_value,
    render_value,
    resolve_value,
)
from .state import DeposedInstance, StateRecord, StateStore

logger = logging.getLogger(__name__)

# Pseudo-attribute reported when a resource changes kind
KIND_ATTRIBUTE = "kind"

_ABSENT = object()

# Characters that may continue an identifier, so a match must not touch them
_ID_CHARACTERS = "A-Za-z0-9_-"


class ActionType(str, Enum):
    """What happens to one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


ACTION_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.REPLACE: "-/+",
    ActionType.DELETE: "-",
    ActionType.NO_OP: " ",
}


class StepOperation(str, Enum):
    """Provider operation performed by one execution step."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_DEPOSED = "delete-deposed"


class PlanningError(Exception):
    """Raised when a consistent plan cannot be produced."""

    pass


class UnsafeReplacementError(PlanningError):
    """Raised when a replaced resource's id is hard-coded elsewhere.

    A literal id cannot be rewired to the new instance, so the dependent
    would be left pointing at a deleted resource.
    """

    def __init__(self, resource: str, pinned_by: str, physical_id: str) -> None:
        self.resource = resource
        self.pinned_by = pinned_by
        self.physical_id = physical_id
        super().__init__(
            f"Cannot replace '{resource}': its current id '{physical_id}' "
            f"is hard-coded in '{pinned_by}'; use a reference instead"
        )


@dataclass(frozen=True)
class AttributeDiff:
    """One changed top-level attribute."""

    name: str
    before: Any = None
    after: Any = None
    requires_replacement: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "before": render_value(self.before),
            "after": render_value(self.after),
            "requires_replacement": self.requires_replacement,
        }


@dataclass
class ChangeAction:
    """Planned change for one logical resource."""

    name: str
    kind: str
    action: ActionType
    node: ResourceNode | None = None
    record: StateRecord | None = None
    diffs: list[AttributeDiff] = field(default_factory=list)
    planned_attributes: dict[str, Any] = field(default_factory=dict)
    create_before_delete: bool = True
    reconcile_required: bool = False

    @property
    def is_change(self) -> bool:
        return self.action != ActionType.NO_OP

    @property
    def physical_id(self) -> str | None:
        return self.record.physical_id if self.record is not None else None

    @property
    def replacement_reasons(self) -> list[str]:
        """Attributes whose change forces the replacement."""
        return [diff.name for diff in self.diffs if diff.requires_replacement]

    def describe(self) -> str:
        """One-line human readable summary."""
        text = f"{ACTION_SYMBOLS[self.action]} {self.name} ({self.kind}): {self.action.value}"
        if self.action == ActionType.REPLACE:
            ordering = "create-before-delete" if self.create_before_delete else "delete-before-create"
            text += f" [{ordering}; forced by {', '.join(self.replacement_reasons)}]"
        if self.reconcile_required:
            text += " (reconciling unconfirmed operation)"
        return text

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "action": self.action.value,
            "physical_id": self.physical_id,
            "diffs": [diff.to_dict() for diff in self.diffs],
        }
        if self.action == ActionType.REPLACE:
            result["create_before_delete"] = self.create_before_delete
        if self.reconcile_required:
            result["reconcile_required"] = True
        return result


@dataclass(frozen=True)
class ExecutionStep:
    """One provider operation and the steps that must commit first."""

    key: str
    name: str
    operation: StepOperation
    kind: str
    requires: frozenset[str] = frozenset()
    physical_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "resource": self.name,
            "operation": self.operation.value,
            "requires": sorted(self.requires),
        }


@dataclass
class Plan:
    """Ordered change set for one declaration against recorded state."""

    graph: ResourceGraph
    actions: list[ChangeAction] = field(default_factory=list)
    steps: list[ExecutionStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def changes(self) -> list[ChangeAction]:
        """Actions other than no-op, in execution order."""
        return [action for action in self.actions if action.is_change]

    @property
    def has_changes(self) -> bool:
        return bool(self.steps)

    def action_for(self, name: str) -> ChangeAction | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    def summary(self) -> dict[str, int]:
        """Number of actions per action type."""
        counts = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions:
            counts[action.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "created_at": self.created_at.isoformat(),
            "summary": self.summary(),
            "actions": [action.to_dict() for action in self.changes],
            "steps": [step.to_dict() for step in self.steps],
        }


def _normalize_planned(value: Any) -> Any:
    if value is UNKNOWN:
        return value
    if isinstance(value, dict):
        return {k: _normalize_planned(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_planned(v) for v in value]
    return normalize_value(value)


def _id_pattern(physical_id: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?<![{_ID_CHARACTERS}]){re.escape(physical_id)}(?![{_ID_CHARACTERS}])"
    )


def _mentions(value: Any, pattern: re.Pattern[str]) -> bool:
    """Check whether a literal string inside `value` contains the whole id."""
    if isinstance(value, str):
        return pattern.search(value) is not None
    if isinstance(value, Template):
        return any(
            isinstance(part, str) and pattern.search(part) is not None for part in value.parts
        )
    if isinstance(value, dict):
        return any(_mentions(v, pattern) for v in value.values())
    if isinstance(value, list):
        return any(_mentions(v, pattern) for v in value)
    return False


def record_order(records: dict[str, StateRecord]) -> list[str]:
    """Recorded names with recorded dependencies first; ties by name."""
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {name: [] for name in records}
    for name, record in records.items():
        deps = [d for d in dict.fromkeys(record.dependencies) if d in records and d != name]
        in_degree[name] = len(deps)
        for dep in deps:
            dependents[dep].append(name)

    ready = [name for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    result: list[str] = []
    while ready:
        current = heapq.heappop(ready)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    # Recorded dependencies can only loop if state was edited by hand
    result.extend(sorted(name for name in records if name not in result))
    return result


class Planner:
    """Compares a desired ResourceGraph with recorded state."""

    def __init__(self, policy: ReplacementPolicy | None = None) -> None:
        self._policy = policy or ReplacementPolicy()

    @property
    def policy(self) -> ReplacementPolicy:
        return self._policy

    def plan(self, graph: ResourceGraph, store: StateStore) -> Plan:
        """Compute the change set that makes state match `graph`.

        Raises:
            CyclicDependencyError: If the graph contains a cycle.
            UnsafeReplacementError: If a replacement would orphan a hard-coded id.
            PlanningError: If the resulting operations cannot be ordered.
            StateUnavailableError: If state cannot be read.
        """
        records = store.records()
        pending = store.pending()
        order = graph.topological_order()

        actions: dict[str, ChangeAction] = {}
        for name in order:
            actions[name] = self._plan_node(
                graph.nodes[name], records.get(name), actions, name in pending
            )

        recorded = record_order(records)
        removed = [name for name in reversed(recorded) if name not in graph]
        for name in removed:
            actions[name] = ChangeAction(
                name=name,
                kind=records[name].kind,
                action=ActionType.DELETE,
                record=records[name],
                reconcile_required=name in pending,
            )

        for name, operation in pending.items():
            extra = {"resource": name, "operation": operation.operation}
            if name in actions:
                logger.warning("Resource has an unconfirmed operation, reconciling", extra=extra)
            else:
                logger.warning(
                    "Unconfirmed operation on a resource that is neither declared nor recorded; "
                    "the provider may hold an untracked instance",
                    extra={**extra, "physical_id": operation.physical_id},
                )

        self._check_pinned(graph, actions)
        self._align_replacements(records, actions)
        steps = self._order_steps(
            self._build_steps(graph, records, actions),
            ranks={name: index for index, name in enumerate(order)},
            record_ranks={name: index for index, name in enumerate(recorded)},
        )

        plan = Plan(
            graph=graph,
            actions=[actions[name] for name in order] + [actions[name] for name in removed],
            steps=steps,
        )
        logger.info("Computed plan", extra={**plan.summary(), "steps": len(steps)})
        return plan

    def _plan_node(
        self,
        node: ResourceNode,
        record: StateRecord | None,
        actions: dict[str, ChangeAction],
        interrupted: bool,
    ) -> ChangeAction:
        planned = _normalize_planned(
            resolve_value(node.attributes, lambda ref: self._planned_lookup(ref, actions))
        )
        action = ChangeAction(
            name=node.name,
            kind=node.kind,
            action=ActionType.NO_OP,
            node=node,
            record=record,
            planned_attributes=planned,
            create_before_delete=self._policy.create_before_delete(node.kind),
            reconcile_required=interrupted,
        )

        if record is None:
            action.action = ActionType.CREATE
            action.diffs = [AttributeDiff(key, None, value) for key, value in planned.items()]
            return action

        action.diffs = self._diff(node.kind, record.attributes, planned)
        if record.kind != node.kind:
            action.diffs.insert(
                0, AttributeDiff(KIND_ATTRIBUTE, record.kind, node.kind, requires_replacement=True)
            )

        if any(diff.requires_replacement for diff in action.diffs):
            action.action = ActionType.REPLACE
        elif (
            action.diffs
            or interrupted
            or record.deposed
            or set(record.dependencies) != set(node.depends_on)
        ):
            action.action = ActionType.UPDATE
        return action

    def _diff(self, kind: str, before: dict[str, Any], after: dict[str, Any]) -> list[AttributeDiff]:
        diffs: list[AttributeDiff] = []
        for key in list(after) + [k for k in before if k not in after]:
            old = before.get(key, _ABSENT)
            new = after.get(key, _ABSENT)
            if old == new and not contains_unknown(new):
                continue
            diffs.append(
                AttributeDiff(
                    name=key,
                    before=None if old is _ABSENT else old,
                    after=None if new is _ABSENT else new,
                    requires_replacement=self._policy.requires_replacement(kind, key),
                )
            )
        return diffs

    def _planned_lookup(self, ref: Reference, actions: dict[str, ChangeAction]) -> Any:
        """Value a reference will have during apply, or UNKNOWN."""
        target = actions[ref.resource]
        if target.action in (ActionType.CREATE, ActionType.REPLACE) or target.record is None:
            return UNKNOWN

        head = ref.attribute.split(".", 1)[0]
        if head != ID_ATTRIBUTE and target.diffs:
            # Changed inputs and provider-computed outputs are recomputed by the update
            changed = {diff.name for diff in target.diffs}
            if head in changed or head not in target.record.attributes:
                return UNKNOWN
        try:
            return target.record.lookup(ref.attribute)
        except KeyError:
            return UNKNOWN

    def _check_pinned(self, graph: ResourceGraph, actions: dict[str, ChangeAction]) -> None:
        for action in actions.values():
            if action.action != ActionType.REPLACE or action.record is None:
                continue
            physical_id = action.record.physical_id
            pattern = _id_pattern(physical_id)
            for node in graph:
                if node.name != action.name and _mentions(node.attributes, pattern):
                    raise UnsafeReplacementError(action.name, node.name, physical_id)

    def _align_replacements(
        self, records: dict[str, StateRecord], actions: dict[str, ChangeAction]
    ) -> None:
        """Make replaced dependents of a delete-before-create replacement follow suit.

        The old dependency is deleted only after its replaced dependents are
        gone, which a create-before-delete dependent would postpone until
        after the new dependency exists.
        """
        queue = [
            name
            for name, action in actions.items()
            if action.action == ActionType.REPLACE and not action.create_before_delete
        ]
        while queue:
            name = queue.pop(0)
            for dependent, record in records.items():
                action = actions.get(dependent)
                if (
                    dependent == name
                    or name not in record.dependencies
                    or action is None
                    or action.action != ActionType.REPLACE
                    or not action.create_before_delete
                ):
                    continue
                action.create_before_delete = False
                logger.warning(
                    "Replacing dependent delete-before-create",
                    extra={"resource": dependent, "dependency": name},
                )
                queue.append(dependent)

    def _build_steps(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        actions: dict[str, ChangeAction],
    ) -> list[ExecutionStep]:
        # Step after which each resource is in its final state
        final: dict[str, str] = {}
        for name, action in actions.items():
            if action.action in (ActionType.CREATE, ActionType.REPLACE):
                final[name] = f"{StepOperation.CREATE.value}:{name}"
            elif action.action == ActionType.UPDATE:
                final[name] = f"{StepOperation.UPDATE.value}:{name}"
            elif action.action == ActionType.DELETE:
                final[name] = f"{StepOperation.DELETE.value}:{name}"

        def keys_of(names: Iterable[str]) -> set[str]:
            return {final[n] for n in names if n in final}

        def recorded_dependents(name: str) -> list[str]:
            return [r for r, rec in records.items() if r != name and name in rec.dependencies]

        steps: list[ExecutionStep] = []

        def add_deposed(action: ChangeAction, instances: list[DeposedInstance], requires: set[str]) -> set[str]:
            keys: set[str] = set()
            for index, instance in enumerate(instances):
                key = f"{StepOperation.DELETE_DEPOSED.value}:{action.name}:{index}"
                steps.append(
                    ExecutionStep(
                        key=key,
                        name=action.name,
                        operation=StepOperation.DELETE_DEPOSED,
                        kind=instance.kind,
                        requires=frozenset(requires),
                        physical_id=instance.physical_id,
                    )
                )
                keys.add(key)
            return keys

        for name, action in actions.items():
            record = action.record
            if action.action == ActionType.NO_OP:
                continue

            if action.action == ActionType.DELETE:
                assert record is not None
                before = keys_of(recorded_dependents(name))
                deposed_keys = add_deposed(action, record.deposed, before)
                steps.append(
                    ExecutionStep(
                        key=final[name],
                        name=name,
                        operation=StepOperation.DELETE,
                        kind=record.kind,
                        requires=frozenset(before | deposed_keys),
                        physical_id=record.physical_id,
                    )
                )
                continue

            dependency_keys = keys_of(graph.dependencies(name))
            dependent_keys = keys_of(graph.dependents(name))
            if record is not None:
                dependent_keys |= keys_of(recorded_dependents(name))

            if action.action == ActionType.CREATE:
                steps.append(
                    ExecutionStep(
                        key=final[name],
                        name=name,
                        operation=StepOperation.CREATE,
                        kind=action.kind,
                        requires=frozenset(dependency_keys),
                    )
                )
            elif action.action == ActionType.UPDATE:
                assert record is not None
                steps.append(
                    ExecutionStep(
                        key=final[name],
                        name=name,
                        operation=StepOperation.UPDATE,
                        kind=action.kind,
                        requires=frozenset(dependency_keys),
                        physical_id=record.physical_id,
                    )
                )
                add_deposed(action, record.deposed, dependent_keys | {final[name]})
            elif action.create_before_delete:
                assert record is not None
                steps.append(
                    ExecutionStep(
                        key=final[name],
                        name=name,
                        operation=StepOperation.CREATE,
                        kind=action.kind,
                        requires=frozenset(dependency_keys),
                    )
                )
                # The current instance becomes deposed once the new one commits
                superseded = DeposedInstance(physical_id=record.physical_id, kind=record.kind)
                add_deposed(action, [*record.deposed, superseded], dependent_keys | {final[name]})
            else:
                assert record is not None
                # Replaced dependents are delete-before-create here as well
                removed_dependents = {
                    f"{StepOperation.DELETE.value}:{r}"
                    for r in recorded_dependents(name)
                    if actions[r].action in (ActionType.DELETE, ActionType.REPLACE)
                }
                deposed_keys = add_deposed(action, record.deposed, removed_dependents)
                delete_key = f"{StepOperation.DELETE.value}:{name}"
                steps.append(
                    ExecutionStep(
                        key=delete_key,
                        name=name,
                        operation=StepOperation.DELETE,
                        kind=record.kind,
                        requires=frozenset(removed_dependents | deposed_keys),
                        physical_id=record.physical_id,
                    )
                )
                steps.append(
                    ExecutionStep(
                        key=final[name],
                        name=name,
                        operation=StepOperation.CREATE,
                        kind=action.kind,
                        requires=frozenset(dependency_keys | {delete_key}),
                    )
                )
        return steps

    def _order_steps(
        self,
        steps: list[ExecutionStep],
        ranks: dict[str, int],
        record_ranks: dict[str, int],
    ) -> list[ExecutionStep]:
        """Stable topological order of steps.

        Creates and updates come in dependency order; deletes of removed or
        superseded instances come after, dependents first.
        """
        by_key = {step.key: step for step in steps}

        def priority(step: ExecutionStep) -> tuple[int, int, str]:
            if step.operation == StepOperation.DELETE_DEPOSED or step.name not in ranks:
                return (1, -record_ranks.get(step.name, 0), step.key)
            return (0, ranks[step.name], step.key)

        remaining = {step.key: len(step.requires) for step in steps}
        followers: dict[str, list[str]] = {step.key: [] for step in steps}
        for step in steps:
            for required in step.requires:
                followers[required].append(step.key)

        ready = [(priority(step), step.key) for step in steps if not step.requires]
        heapq.heapify(ready)
        result: list[ExecutionStep] = []
        while ready:
            _, key = heapq.heappop(ready)
            result.append(by_key[key])
            for follower in followers[key]:
                remaining[follower] -= 1
                if remaining[follower] == 0:
                    heapq.heappush(ready, (priority(by_key[follower]), follower))

        if len(result) != len(steps):
            stuck = sorted(key for key, count in remaining.items() if count > 0)
            raise PlanningError(f"Cannot order operations, they wait on each other: {stuck}")
        return result
