"""Plan execution against a provider.

The Executor walks Plan steps as a DAG: a step starts only when every step
it requires has committed, at most `max_concurrency` provider calls run at
once, and two steps for the same logical name never overlap.

Each step runs this sequence:
1. Resolve references against the State Store (values known after apply)
2. Write a pending marker for the resource
3. Call the provider in a worker thread, bounded by a per-call timeout
4. Commit the outcome to the State Store and clear the marker

FAILURE HANDLING:
- TransientProviderError: retried with exponential backoff and jitter
  until the attempt budget runs out
- PermanentProviderError or an exhausted budget: no new steps start,
  in-flight steps finish, and ApplyError is raised
- Timeout or unexpected exception: the outcome is unknown, so the pending
  marker is left in place for the next plan to reconcile

Cancellation (an asyncio.Event set by the caller) and the overall apply
timeout stop dispatch the same way, but let already-dispatched provider
calls run to completion so their results are recorded.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    DEFAULT_RETRY_BACKOFF_MAX_SECONDS,
    Config,
)
from .planner import ActionType, ExecutionStep, Plan, StepOperation
from .provider import Provider, ProviderError, TransientProviderError
from .references import Reference, normalize_value, resolve_value
from .state import DeposedInstance, StateRecord, StateStore, StateUnavailableError

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Outcome of one execution step."""

    COMMITTED = "committed"
    FAILED = "failed"
    UNKNOWN = "unknown"
    CANCELLED = "cancelled"
    NOT_ATTEMPTED = "not-attempted"


class ApplyError(Exception):
    """Raised when apply stops before every step has committed."""

    def __init__(self, message: str, result: ApplyResult, resource: str | None = None) -> None:
        super().__init__(message)
        self.result = result
        self.resource = resource


class ApplyCancelledError(ApplyError):
    """Raised when apply was cancelled or ran out of time."""

    pass


class StepPreconditionError(Exception):
    """Raised when a step cannot be issued; no provider call was made."""

    pass


class _UnknownOutcomeError(Exception):
    """The provider call may or may not have taken effect."""

    pass


@dataclass(frozen=True)
class ExecutorSettings:
    """Limits for one apply run."""

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    apply_timeout_seconds: float = DEFAULT_APPLY_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: Config) -> ExecutorSettings:
        return cls(
            max_concurrency=config.max_concurrency,
            max_attempts=config.max_attempts,
            retry_backoff_base_seconds=config.retry_backoff_base_seconds,
            retry_backoff_max_seconds=config.retry_backoff_max_seconds,
            operation_timeout_seconds=config.operation_timeout_seconds,
            apply_timeout_seconds=config.apply_timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), with jitter."""
        backoff = min(
            self.retry_backoff_base_seconds * (2 ** (attempt - 1)),
            self.retry_backoff_max_seconds,
        )
        jitter = random.uniform(0, backoff * 0.2)
        return backoff + jitter


@dataclass
class StepOutcome:
    """What happened to one step."""

    key: str
    name: str
    operation: StepOperation
    status: StepStatus = StepStatus.NOT_ATTEMPTED
    attempts: int = 0
    error: str | None = None
    physical_id: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "step": self.key,
            "resource": self.name,
            "operation": self.operation.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.physical_id is not None:
            result["physical_id"] = self.physical_id
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class ApplyResult:
    """Per-step outcomes of one apply run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    cancelled: bool = False
    timed_out: bool = False
    failed_resource: str | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def with_status(self, status: StepStatus) -> list[StepOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    @property
    def committed(self) -> list[StepOutcome]:
        return self.with_status(StepStatus.COMMITTED)

    @property
    def success(self) -> bool:
        return all(outcome.status == StepStatus.COMMITTED for outcome in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "success": self.success,
            "cancelled": self.cancelled,
            "timed_out": self.timed_out,
            "failed_resource": self.failed_resource,
            "error": self.error,
            "steps": [outcome.to_dict() for outcome in self.outcomes],
        }


class Executor:
    """Applies a Plan step by step, committing each confirmed outcome."""

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        settings: ExecutorSettings | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._settings = settings or ExecutorSettings()

    @property
    def settings(self) -> ExecutorSettings:
        return self._settings

    async def apply(self, plan: Plan, cancel_event: asyncio.Event | None = None) -> ApplyResult:
        """Execute every step of `plan`.

        Args:
            plan: Plan computed against the current State Store.
            cancel_event: Set by the caller to stop dispatching new steps.

        Returns:
            ApplyResult with every step committed.

        Raises:
            ApplyError: If a step failed; `resource` names it.
            ApplyCancelledError: If cancelled or the apply timeout expired.
        """
        result = ApplyResult()
        outcomes = {
            step.key: StepOutcome(key=step.key, name=step.name, operation=step.operation)
            for step in plan.steps
        }
        result.outcomes = list(outcomes.values())

        cancel_event = cancel_event or asyncio.Event()
        halt = asyncio.Event()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.apply_timeout_seconds

        waiting = list(plan.steps)
        committed: set[str] = set()
        running: dict[asyncio.Task[StepOutcome], ExecutionStep] = {}
        busy_names: set[str] = set()
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        pool = ThreadPoolExecutor(
            max_workers=self._settings.max_concurrency, thread_name_prefix="provider"
        )

        logger.info(
            "Starting apply",
            extra={"steps": len(plan.steps), "max_concurrency": self._settings.max_concurrency},
        )

        try:
            while waiting or running:
                if not halt.is_set():
                    if cancel_event.is_set():
                        result.cancelled = True
                        halt.set()
                    elif loop.time() >= deadline:
                        result.timed_out = True
                        halt.set()

                if not halt.is_set():
                    for step in list(waiting):
                        if len(running) >= self._settings.max_concurrency:
                            break
                        if step.requires <= committed and step.name not in busy_names:
                            waiting.remove(step)
                            busy_names.add(step.name)
                            task = asyncio.create_task(
                                self._run_step(step, plan, outcomes[step.key], halt, pool)
                            )
                            running[task] = step

                if not running:
                    break

                wait_for: set[asyncio.Future[Any]] = set(running)
                timeout: float | None = None
                if not halt.is_set():
                    wait_for.add(cancel_waiter)
                    timeout = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    wait_for, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                for task in done:
                    if task is cancel_waiter:
                        continue
                    step = running.pop(task)  # type: ignore[arg-type]
                    busy_names.discard(step.name)
                    outcome = task.result()  # type: ignore[union-attr]
                    if outcome.status == StepStatus.COMMITTED:
                        committed.add(step.key)
                    elif outcome.status != StepStatus.CANCELLED and result.failed_resource is None:
                        result.failed_resource = step.name
                        result.error = outcome.error
                        halt.set()
        finally:
            if not cancel_waiter.done():
                cancel_waiter.cancel()
            # Timed-out calls may still occupy worker threads; do not block on them
            pool.shutdown(wait=False)
            result.end_time = datetime.now(UTC)

        self._log_result(result)

        if result.failed_resource is not None:
            raise ApplyError(
                f"Apply failed at '{result.failed_resource}': {result.error}",
                result=result,
                resource=result.failed_resource,
            )
        if result.cancelled or result.timed_out:
            reason = "timed out" if result.timed_out else "was cancelled"
            raise ApplyCancelledError(
                f"Apply {reason}; {len(result.committed)} of {len(result.outcomes)} steps committed",
                result=result,
            )
        return result

    async def _run_step(
        self,
        step: ExecutionStep,
        plan: Plan,
        outcome: StepOutcome,
        halt: asyncio.Event,
        pool: ThreadPoolExecutor,
    ) -> StepOutcome:
        """Run one step with retries; never raises."""
        started = time.monotonic()
        extra = {"resource": step.name, "operation": step.operation.value, "step": step.key}

        async with self._store.lock(step.name):
            while True:
                outcome.attempts += 1
                logger.info("Applying step", extra={**extra, "attempt": outcome.attempts})
                try:
                    outcome.physical_id = await self._execute(step, plan, pool)
                    outcome.status = StepStatus.COMMITTED
                    logger.info(
                        "Step committed", extra={**extra, "physical_id": outcome.physical_id}
                    )
                    break
                except TransientProviderError as e:
                    outcome.error = str(e)
                    if outcome.attempts >= self._settings.max_attempts:
                        outcome.status = StepStatus.FAILED
                        logger.error(
                            "Step failed, retry budget exhausted",
                            extra={**extra, "attempts": outcome.attempts, "error": str(e)},
                        )
                        break
                    wait_time = self._settings.backoff(outcome.attempts)
                    logger.warning(
                        "Transient provider error, retrying",
                        extra={
                            **extra,
                            "attempt": outcome.attempts,
                            "max_attempts": self._settings.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    if await self._wait_or_halt(halt, wait_time):
                        outcome.status = StepStatus.CANCELLED
                        break
                except (ProviderError, StepPreconditionError) as e:
                    outcome.error = str(e)
                    outcome.status = StepStatus.FAILED
                    logger.error("Step failed", extra={**extra, "error": str(e)})
                    break
                except _UnknownOutcomeError as e:
                    outcome.error = str(e)
                    outcome.status = StepStatus.UNKNOWN
                    logger.error(
                        "Step outcome unknown, resource flagged for reconciliation",
                        extra={**extra, "error": str(e)},
                    )
                    break

        outcome.duration_seconds = time.monotonic() - started
        return outcome

    async def _wait_or_halt(self, halt: asyncio.Event, seconds: float) -> bool:
        """Sleep for `seconds`; return True if halted in the meantime."""
        try:
            await asyncio.wait_for(halt.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _call(self, pool: ThreadPoolExecutor, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking provider call in a worker thread with a timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(pool, functools.partial(func, *args)),
                timeout=self._settings.operation_timeout_seconds,
            )
        except ProviderError:
            raise
        except TimeoutError as e:
            raise _UnknownOutcomeError(
                f"Provider call timed out after {self._settings.operation_timeout_seconds}s"
            ) from e
        except Exception as e:
            raise _UnknownOutcomeError(f"Provider call raised {type(e).__name__}: {e}") from e

    def _resolve_attributes(self, step: ExecutionStep, plan: Plan) -> dict[str, Any]:
        node = plan.graph.get(step.name)
        if node is None:
            raise StepPreconditionError(f"Resource '{step.name}' is not in the desired graph")

        def lookup(ref: Reference) -> Any:
            record = self._store.get(ref.resource)
            if record is None:
                raise StepPreconditionError(
                    f"Reference {ref} cannot be resolved: '{ref.resource}' has not been applied"
                )
            try:
                return record.lookup(ref.attribute)
            except KeyError as e:
                raise StepPreconditionError(
                    f"Reference {ref} cannot be resolved: attribute '{ref.attribute}' "
                    f"never materialized on '{ref.resource}'"
                ) from e

        return normalize_value(resolve_value(node.attributes, lookup))

    async def _execute(self, step: ExecutionStep, plan: Plan, pool: ThreadPoolExecutor) -> str | None:
        """Perform one attempt of a step and commit it.

        Returns:
            Physical id the step created, updated or deleted.
        """
        try:
            if step.operation == StepOperation.CREATE:
                return await self._create(step, plan, pool)
            if step.operation == StepOperation.UPDATE:
                return await self._update(step, plan, pool)
            if step.operation == StepOperation.DELETE:
                return await self._delete(step, pool)
            return await self._delete_deposed(step, pool)
        except StateUnavailableError as e:
            raise _UnknownOutcomeError(f"State Store unavailable: {e}") from e

    async def _create(self, step: ExecutionStep, plan: Plan, pool: ThreadPoolExecutor) -> str:
        action = plan.action_for(step.name)
        attributes = self._resolve_attributes(step, plan)
        current = self._store.get(step.name)
        replacing = action is not None and action.action == ActionType.REPLACE
        if current is not None and not (replacing and action.create_before_delete):
            raise StepPreconditionError(
                f"Resource '{step.name}' already exists in state; the plan is stale"
            )

        self._store.mark_pending(step.name, step.operation.value)
        try:
            created = await self._call(pool, self._provider.create, step.kind, attributes)
        except ProviderError:
            self._store.clear_pending(step.name)
            raise

        deposed: list[DeposedInstance] = []
        if current is not None:
            deposed = [*current.deposed, DeposedInstance(current.physical_id, current.kind)]
        node = plan.graph.nodes[step.name]
        self._store.put(
            StateRecord(
                name=step.name,
                kind=step.kind,
                physical_id=created.physical_id,
                attributes=attributes,
                outputs=normalize_value(created.outputs),
                dependencies=list(node.depends_on),
                deposed=deposed,
            )
        )
        self._store.clear_pending(step.name)
        return created.physical_id

    async def _update(self, step: ExecutionStep, plan: Plan, pool: ThreadPoolExecutor) -> str:
        attributes = self._resolve_attributes(step, plan)
        current = self._store.get(step.name)
        if current is None:
            raise StepPreconditionError(
                f"Resource '{step.name}' is missing from state; the plan is stale"
            )

        node = plan.graph.nodes[step.name]
        outputs = current.outputs
        if attributes != current.attributes:
            self._store.mark_pending(step.name, step.operation.value, current.physical_id)
            try:
                outputs = await self._call(
                    pool, self._provider.update, step.kind, current.physical_id, attributes
                )
            except ProviderError:
                self._store.clear_pending(step.name)
                raise
            outputs = normalize_value(outputs or {})

        self._store.put(
            StateRecord(
                name=step.name,
                kind=current.kind,
                physical_id=current.physical_id,
                attributes=attributes,
                outputs=outputs,
                dependencies=list(node.depends_on),
                created_at=current.created_at,
                updated_at=datetime.now(UTC),
                deposed=current.deposed,
            )
        )
        self._store.clear_pending(step.name)
        return current.physical_id

    async def _delete(self, step: ExecutionStep, pool: ThreadPoolExecutor) -> str | None:
        current = self._store.get(step.name)
        if current is None:
            logger.info("Resource already absent from state", extra={"resource": step.name})
            return None

        self._store.mark_pending(step.name, step.operation.value, current.physical_id)
        try:
            await self._call(pool, self._provider.delete, current.kind, current.physical_id)
        except ProviderError:
            self._store.clear_pending(step.name)
            raise
        self._store.remove(step.name)
        self._store.clear_pending(step.name)
        return current.physical_id

    async def _delete_deposed(self, step: ExecutionStep, pool: ThreadPoolExecutor) -> str | None:
        assert step.physical_id is not None
        self._store.mark_pending(step.name, step.operation.value, step.physical_id)
        try:
            await self._call(pool, self._provider.delete, step.kind, step.physical_id)
        except ProviderError:
            self._store.clear_pending(step.name)
            raise

        current = self._store.get(step.name)
        if current is not None:
            current.deposed = [d for d in current.deposed if d.physical_id != step.physical_id]
            current.updated_at = datetime.now(UTC)
            self._store.put(current)
        self._store.clear_pending(step.name)
        return step.physical_id

    def _log_result(self, result: ApplyResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "steps": len(result.outcomes),
            "committed": len(result.committed),
            "failed": len(result.with_status(StepStatus.FAILED)),
            "unknown": len(result.with_status(StepStatus.UNKNOWN)),
            "not_attempted": len(result.with_status(StepStatus.NOT_ATTEMPTED)),
        }
        if result.failed_resource is not None:
            extra["resource"] = result.failed_resource
            extra["error"] = result.error
            logger.error("Apply failed", extra=extra)
        elif result.cancelled or result.timed_out:
            extra["timed_out"] = result.timed_out
            logger.warning("Apply stopped before completion", extra=extra)
        else:
            logger.info("Apply complete", extra=extra)
