"""Plan/apply orchestration.

The Reconciler ties the two phases together:
1. Build: declaration + parameters -> validated ResourceGraph (pure)
2. Plan: graph vs. State Store -> Plan (pure)
3. Apply: Plan -> provider calls, committed one by one to the State Store
4. Resolve outputs from the committed state

A failure in phases 1-2 has no side effect. A failure in phase 3 keeps
every committed step; running plan + apply again resumes from there.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .executor import ApplyError, ApplyResult, Executor, ExecutorSettings
from .graph import ResourceGraph, build_graph
from .models import Declaration
from .outputs import resolve_outputs
from .planner import Plan, Planner
from .policy import ReplacementPolicy
from .provider import Provider
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of one apply or destroy run."""

    plan: Plan
    apply_result: ApplyResult | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changes_applied(self) -> int:
        return len(self.apply_result.committed) if self.apply_result is not None else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "summary": self.plan.summary(),
            "changes_applied": self.changes_applied,
            "duration_seconds": self.duration_seconds,
            "outputs": self.outputs,
        }


class Reconciler:
    """Drives plan and apply for one State Store and one provider."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        policy: ReplacementPolicy | None = None,
        settings: ExecutorSettings | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._planner = Planner(policy)
        self._executor = Executor(provider, store, settings)

    @property
    def store(self) -> StateStore:
        return self._store

    def build(
        self, declaration: Declaration, parameters: dict[str, str] | None = None
    ) -> ResourceGraph:
        """Build the desired graph; raises GraphError subclasses."""
        return build_graph(declaration, parameters)

    def plan(self, graph: ResourceGraph) -> Plan:
        """Plan `graph` against current state.

        Raises:
            StateUnavailableError: If state cannot be read.
            UnsafeReplacementError: If a replacement would orphan a hard-coded id.
        """
        self._store.check()
        return self._planner.plan(graph, self._store)

    async def apply(
        self,
        graph: ResourceGraph,
        cancel_event: asyncio.Event | None = None,
        plan: Plan | None = None,
    ) -> ReconcileResult:
        """Plan (unless given) and apply `graph`, then resolve outputs.

        Raises:
            StateUnavailableError: Before any provider call if state is unreachable.
            UnsafeReplacementError: At plan time.
            ApplyError: If a step failed; committed steps are kept.
            ApplyCancelledError: If cancelled or timed out.
            UnresolvedOutputError: If outputs cannot be resolved after apply.
        """
        if plan is None:
            plan = self.plan(graph)
        else:
            self._store.check()

        result = ReconcileResult(plan=plan)
        try:
            if plan.has_changes:
                try:
                    result.apply_result = await self._executor.apply(plan, cancel_event)
                except ApplyError as e:
                    result.apply_result = e.result
                    raise
            else:
                logger.info("No changes, state matches the declaration")
            result.outputs = resolve_outputs(graph.outputs, self._store)
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    async def destroy(
        self, cancel_event: asyncio.Event | None = None, plan: Plan | None = None
    ) -> ReconcileResult:
        """Delete every recorded resource, dependents first."""
        return await self.apply(ResourceGraph(), cancel_event=cancel_event, plan=plan)

    def outputs(self, graph: ResourceGraph) -> dict[str, Any]:
        """Resolve outputs from current state; raises UnresolvedOutputError."""
        return resolve_outputs(graph.outputs, self._store)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            **result.plan.summary(),
            "provider": self._provider.name,
            "duration_seconds": result.duration_seconds,
            "changes_applied": result.changes_applied,
        }
        apply_result = result.apply_result
        if apply_result is not None and not apply_result.success:
            logger.error("Run incomplete", extra=extra)
        else:
            logger.info("Run result", extra=extra)
