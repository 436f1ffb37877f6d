"""
Unit tests for completion tokens, deferred results and the async engine.
"""

from __future__ import annotations

import numpy as np
import pytest

from pyclutil.backends.base import EventStatus
from pyclutil.backends.cpu import CPUBackend
from pyclutil.core.async_result import (
    AsyncEngine,
    CompletionToken,
    DeferredResult,
    token_of,
    wait_all,
)
from pyclutil.core.context import ComputeContext, TransferStatistics
from pyclutil.core.formats import MemFlag
from pyclutil.exceptions import DeviceError, ResultNotReadyError


def _write(backend: CPUBackend, handle: int, value: float, wait_for: list | None = None) -> object:
    return backend.enqueue_write_buffer(handle, np.array([value], dtype=np.float32), wait_for or [])


@pytest.fixture
def engine(cpu_backend: CPUBackend) -> AsyncEngine:
    """Provide an engine on the CPU device."""
    return AsyncEngine(cpu_backend, TransferStatistics())


class TestCompletionToken:
    """Tests for CompletionToken."""

    def test_status_transitions(self, cpu_backend: CPUBackend) -> None:
        """Test a token goes from QUEUED to COMPLETE."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)

        with cpu_backend.paused():
            token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
            assert token.status is EventStatus.QUEUED
            assert not token.is_signaled

        token.wait()
        assert token.status is EventStatus.COMPLETE
        assert token.is_signaled

    def test_signaled_is_monotonic(self, cpu_backend: CPUBackend) -> None:
        """Test a signaled token stays signaled after its event is gone."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        token.wait()

        token._event = None  # the cached terminal state must be used
        assert token.is_signaled
        assert token.status is EventStatus.COMPLETE

    def test_wait_raises_device_error(self, cpu_backend: CPUBackend) -> None:
        """Test waiting on a failed command raises."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        cpu_backend.fail_next("lost device")
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")

        with pytest.raises(DeviceError, match="lost device"):
            token.wait()
        assert token.status is EventStatus.FAILED

    def test_repr(self, cpu_backend: CPUBackend) -> None:
        """Test string representation."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        token.wait()

        assert repr(token) == "CompletionToken(label='write', status=COMPLETE)"


class TestDeferredResult:
    """Tests for DeferredResult."""

    def test_get_before_signal_raises(self, cpu_backend: CPUBackend) -> None:
        """Test the value is inaccessible until the token signals."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)

        with cpu_backend.paused():
            token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
            result = DeferredResult(token, lambda: 42)
            assert not result.ready
            with pytest.raises(ResultNotReadyError, match="write"):
                result.get()

        assert result.wait() == 42
        assert result.get() == 42

    def test_finalize_runs_once(self, cpu_backend: CPUBackend) -> None:
        """Test the finaliser is evaluated only once."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        calls = []
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        result = DeferredResult(token, lambda: calls.append(1) or len(calls))

        assert result.wait() == 1
        assert result.wait() == 1
        assert calls == [1]

    def test_map_shares_token(self, cpu_backend: CPUBackend) -> None:
        """Test map derives a value bound to the same token."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        result = DeferredResult(token, lambda: 20)

        doubled = result.map(lambda v: v * 2)

        assert doubled.token is token
        assert doubled.wait() == 40

    def test_wait_does_not_finalize_failed_result(self, cpu_backend: CPUBackend) -> None:
        """Test a failed command never produces a value."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        calls = []
        cpu_backend.fail_next()
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        result = DeferredResult(token, lambda: calls.append(1))

        with pytest.raises(DeviceError):
            result.wait()
        assert calls == []

    @pytest.mark.asyncio
    async def test_await(self, cpu_backend: CPUBackend) -> None:
        """Test awaiting a deferred result."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")
        result = DeferredResult(token, lambda: "done", poll_interval=0.0005)

        assert await result == "done"

    @pytest.mark.asyncio
    async def test_await_failure(self, cpu_backend: CPUBackend) -> None:
        """Test awaiting a failed result raises."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        cpu_backend.fail_next()
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")

        with pytest.raises(DeviceError):
            await DeferredResult(token, lambda: None)


class TestWaitAll:
    """Tests for wait_all and token_of."""

    def test_token_of(self, cpu_backend: CPUBackend) -> None:
        """Test tokens are extracted from deferred results."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        token = CompletionToken(cpu_backend, _write(cpu_backend, handle, 1.0), "write")

        assert token_of(token) is token
        assert token_of(DeferredResult(token, lambda: None)) is token
        with pytest.raises(TypeError):
            token_of("not a token")  # type: ignore[arg-type]

    def test_wait_all(self, cpu_backend: CPUBackend) -> None:
        """Test every token is signaled afterwards."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)

        with cpu_backend.paused():
            tokens = [
                CompletionToken(cpu_backend, _write(cpu_backend, handle, float(i)), f"w{i}")
                for i in range(5)
            ]

        wait_all(tokens)

        assert all(t.is_signaled for t in tokens)

    def test_wait_all_empty(self) -> None:
        """Test waiting on nothing returns immediately."""
        wait_all([])

    def test_wait_all_across_contexts(self) -> None:
        """Test tokens of several devices can be waited together."""
        first, second = CPUBackend(), CPUBackend()
        try:
            a = CompletionToken(first, _write(first, first.allocate_buffer(4, MemFlag.READ_WRITE), 1.0))
            b = CompletionToken(second, _write(second, second.allocate_buffer(4, MemFlag.READ_WRITE), 2.0))

            wait_all([a, DeferredResult(b, lambda: None)])

            assert a.is_signaled and b.is_signaled
        finally:
            first.close()
            second.close()


class TestAsyncEngine:
    """Tests for AsyncEngine."""

    def test_submit_and_run(self, engine: AsyncEngine, cpu_backend: CPUBackend) -> None:
        """Test run is submit followed by wait."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        data = np.array([3.0], dtype=np.float32)
        out = np.empty(1, dtype=np.float32)

        written = engine.submit(
            "write_buffer",
            lambda events: cpu_backend.enqueue_write_buffer(handle, data, events),
            lambda: None,
            to_device=data.nbytes,
        )
        value = engine.run(
            "read_buffer",
            lambda events: cpu_backend.enqueue_read_buffer(handle, out, events),
            lambda: out.copy(),
            [written],
            to_host=out.nbytes,
        )

        np.testing.assert_array_equal(value, data)

    def test_wait_list_resolution(self, engine: AsyncEngine, cpu_backend: CPUBackend) -> None:
        """Test tokens and deferred results become backend events."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        event = _write(cpu_backend, handle, 1.0)
        token = CompletionToken(cpu_backend, event)

        assert engine.resolve_wait_list([token, DeferredResult(token, lambda: None)]) == [event, event]

    def test_foreign_token_rejected(self, engine: AsyncEngine) -> None:
        """Test tokens from another context cannot be waited on."""
        with ComputeContext(backend=CPUBackend()) as other:
            handle = other.backend.allocate_buffer(4, MemFlag.READ_WRITE)
            foreign = CompletionToken(other.backend, _write(other.backend, handle, 1.0), "other")

            with pytest.raises(DeviceError, match="different context"):
                engine.resolve_wait_list([foreign])

    def test_statistics_recorded(self, cpu_backend: CPUBackend) -> None:
        """Test submissions update the statistics."""
        stats = TransferStatistics()
        engine = AsyncEngine(cpu_backend, stats)
        handle = cpu_backend.allocate_buffer(8, MemFlag.READ_WRITE)
        data = np.zeros(2, dtype=np.float32)

        engine.run(
            "write_buffer",
            lambda events: cpu_backend.enqueue_write_buffer(handle, data, events),
            lambda: None,
            to_device=8,
        )

        assert stats.submissions == 1
        assert stats.writes == 1
        assert stats.bytes_to_device == 8
        assert stats.by_operation == {"write_buffer": 1}
