"""Tests for plan execution."""

import asyncio
from dataclasses import replace

import pytest
from provider_mock import FakeProvider, declaration, resource

from provisioner.executor import (
    ApplyCancelledError,
    ApplyError,
    ApplyResult,
    Executor,
    ExecutorSettings,
    StepStatus,
)
from provisioner.graph import ResourceGraph, build_graph
from provisioner.planner import Planner
from provisioner.provider import PermanentProviderError, TransientProviderError
from provisioner.state import StateRecord, StateStore


async def apply(
    graph: ResourceGraph,
    store: StateStore,
    provider: FakeProvider,
    settings: ExecutorSettings,
    cancel_event: asyncio.Event | None = None,
) -> ApplyResult:
    plan = Planner().plan(graph, store)
    return await Executor(provider, store, settings).apply(plan, cancel_event)


async def wait_for_calls(provider: FakeProvider, count: int) -> None:
    """Poll until the provider has seen `count` calls."""
    for _ in range(500):
        if len(provider.calls) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Provider saw {len(provider.calls)} calls, expected {count}")


def chain(*names: str) -> ResourceGraph:
    """Graph where each resource depends on the previous one."""
    entries = [resource(names[0])]
    for previous, name in zip(names, names[1:]):
        entries.append(resource(name, depends_on=[previous]))
    return build_graph(declaration(*entries))


class TestApply:
    """Tests for successful applies."""

    @pytest.mark.asyncio
    async def test_creates_in_order_and_resolves_references(
        self, store: StateStore, settings: ExecutorSettings
    ) -> None:
        """Test that references are resolved from committed state."""
        provider = FakeProvider(computed={"Role": {"arn": "arn:role"}})
        graph = build_graph(
            declaration(
                resource("Compute", role={"ref": "Role.arn"}),
                resource("Role"),
            )
        )

        result = await apply(graph, store, provider, settings)

        assert result.success
        assert provider.created_names() == ["Role", "Compute"]
        assert provider.calls[1].attributes["role"] == "arn:role"
        record = store.get("Compute")
        assert record.attributes["role"] == "arn:role"
        assert record.dependencies == ["Role"]
        assert store.pending() == {}

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, store: StateStore, settings: ExecutorSettings) -> None:
        """Test that no more than max_concurrency provider calls overlap."""
        provider = FakeProvider()
        gates = [provider.gate(name) for name in ("A", "B", "C", "D")]
        graph = build_graph(declaration(*(resource(n) for n in ("A", "B", "C", "D"))))

        task = asyncio.create_task(
            apply(graph, store, provider, replace(settings, max_concurrency=2))
        )
        try:
            await wait_for_calls(provider, 2)
            await asyncio.sleep(0.05)
            assert len(provider.calls) == 2
        finally:
            for gate in gates:
                gate.set()
        result = await task

        assert result.success
        assert provider.max_in_flight == 2
        assert sorted(store.names()) == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_dependent_waits_for_dependency(
        self, store: StateStore, settings: ExecutorSettings
    ) -> None:
        """Test that a dependent is not started while its dependency is in flight."""
        provider = FakeProvider()
        gate = provider.gate("A")
        task = asyncio.create_task(
            apply(chain("A", "B"), store, provider, replace(settings, max_concurrency=4))
        )
        try:
            await wait_for_calls(provider, 1)
            await asyncio.sleep(0.05)
            assert provider.created_names() == ["A"]
        finally:
            gate.set()
        await task

        assert provider.created_names() == ["A", "B"]

    @pytest.mark.asyncio
    async def test_state_only_update(self, store: StateStore, settings: ExecutorSettings) -> None:
        """Test that reconciling an unchanged resource does not call the provider."""
        store.put(
            StateRecord(name="A", kind="test:Resource", physical_id="a-1", attributes={"name": "A"})
        )
        store.mark_pending("A", "update", "a-1")
        provider = FakeProvider()

        result = await apply(chain("A"), store, provider, settings)

        assert result.success
        assert provider.calls == []
        assert store.pending() == {}


class TestFailures:
    """Tests for provider failures."""

    @pytest.mark.asyncio
    async def test_transient_error_retried(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that a transient failure is retried until it succeeds."""
        provider.fail("A", TransientProviderError("throttled"), times=2)

        result = await apply(chain("A"), store, provider, settings)

        assert result.outcomes[0].attempts == 3
        assert result.outcomes[0].status == StepStatus.COMMITTED
        assert store.get("A") is not None

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that endless transient failures eventually abort."""
        provider.fail("A", TransientProviderError("throttled"))

        with pytest.raises(ApplyError) as exc_info:
            await apply(chain("A"), store, provider, settings)

        assert exc_info.value.resource == "A"
        assert len(provider.calls) == settings.max_attempts
        assert exc_info.value.result.outcomes[0].status == StepStatus.FAILED
        assert store.pending() == {}

    @pytest.mark.asyncio
    async def test_permanent_error_stops_dispatch(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that a permanent failure keeps committed work and starts nothing new."""
        provider.fail("B", PermanentProviderError("quota exceeded"))

        with pytest.raises(ApplyError) as exc_info:
            await apply(chain("A", "B", "C"), store, provider, settings)

        result = exc_info.value.result
        assert [o.status for o in result.outcomes] == [
            StepStatus.COMMITTED,
            StepStatus.FAILED,
            StepStatus.NOT_ATTEMPTED,
        ]
        assert len(provider.calls) == 2
        assert store.names() == ["A"]
        assert "quota exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_leaves_pending_marker(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that an unconfirmed call flags the resource for reconciliation."""
        gate = provider.gate("A")
        try:
            with pytest.raises(ApplyError) as exc_info:
                await apply(
                    chain("A"), store, provider, replace(settings, operation_timeout_seconds=0.05)
                )
        finally:
            gate.set()

        assert exc_info.value.result.outcomes[0].status == StepStatus.UNKNOWN
        assert exc_info.value.result.outcomes[0].attempts == 1
        assert "A" in store.pending()
        assert store.get("A") is None

    @pytest.mark.asyncio
    async def test_state_unavailable_mid_apply(
        self, store: StateStore, backend, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that losing the State Store stops the run."""
        plan = Planner().plan(chain("A"), store)
        backend.available = False

        with pytest.raises(ApplyError):
            await Executor(provider, store, settings).apply(plan)

        assert provider.calls == []


class TestCancellation:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_in_flight_step_finishes(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that cancellation records the in-flight call and starts nothing new."""
        cancel_event = asyncio.Event()
        gate = provider.gate("A")
        task = asyncio.create_task(apply(chain("A", "B"), store, provider, settings, cancel_event))
        try:
            await wait_for_calls(provider, 1)
            cancel_event.set()
            await asyncio.sleep(0.05)
        finally:
            gate.set()

        with pytest.raises(ApplyCancelledError) as exc_info:
            await task

        result = exc_info.value.result
        assert result.cancelled
        assert [o.status for o in result.outcomes] == [
            StepStatus.COMMITTED,
            StepStatus.NOT_ATTEMPTED,
        ]
        assert store.names() == ["A"]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that a pre-set cancel event dispatches nothing."""
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(ApplyCancelledError):
            await apply(chain("A"), store, provider, settings, cancel_event)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_apply_timeout_stops_like_cancellation(
        self, store: StateStore, provider: FakeProvider, settings: ExecutorSettings
    ) -> None:
        """Test that an expired apply deadline finishes the in-flight step only."""
        settings = replace(settings, apply_timeout_seconds=0.1)
        gate = provider.gate("A")
        task = asyncio.create_task(apply(chain("A", "B"), store, provider, settings))
        try:
            await wait_for_calls(provider, 1)
            await asyncio.sleep(0.3)
        finally:
            gate.set()

        with pytest.raises(ApplyCancelledError) as exc_info:
            await task

        result = exc_info.value.result
        assert result.timed_out
        assert not result.cancelled
        assert [(o.key, o.status) for o in result.outcomes] == [
            ("create:A", StepStatus.COMMITTED),
            ("create:B", StepStatus.NOT_ATTEMPTED),
        ]
        assert provider.created_names() == ["A"]
        assert store.names() == ["A"]


class TestExecutorSettings:
    """Tests for backoff calculation."""

    def test_backoff_is_capped(self) -> None:
        """Test exponential growth up to the ceiling plus jitter."""
        settings = ExecutorSettings(retry_backoff_base_seconds=1.0, retry_backoff_max_seconds=5.0)

        assert 1.0 <= settings.backoff(1) <= 1.2
        assert 4.0 <= settings.backoff(3) <= 4.8
        assert 5.0 <= settings.backoff(10) <= 6.0
