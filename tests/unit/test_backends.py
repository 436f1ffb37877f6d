"""
Unit tests for the backend interface and the CPU device.
"""

from __future__ import annotations

import numpy as np
import pytest

from pyclutil.backends.base import BackendType, EventStatus, QueueOrdering
from pyclutil.backends.cpu import CPUBackend
from pyclutil.core.formats import ChannelOrder, ChannelType, ImageFormat, MemFlag
from pyclutil.exceptions import AllocationError, DeviceError, FormatUnsupportedError

RGBA_FLOAT = ImageFormat(ChannelOrder.RGBA, ChannelType.FLOAT)


class TestEventStatus:
    """Tests for EventStatus."""

    def test_terminal_states(self) -> None:
        """Test only COMPLETE and FAILED are terminal."""
        assert not EventStatus.QUEUED.is_terminal
        assert EventStatus.COMPLETE.is_terminal
        assert EventStatus.FAILED.is_terminal


class TestCPUBackend:
    """Tests for CPUBackend."""

    def test_creation(self, cpu_backend: CPUBackend) -> None:
        """Test backend creation."""
        assert cpu_backend.backend_type == BackendType.CPU
        assert cpu_backend.is_available
        assert cpu_backend.ordering is QueueOrdering.IN_ORDER
        assert cpu_backend.used_bytes == 0

    def test_buffer_round_trip(self, cpu_backend: CPUBackend) -> None:
        """Test writing and reading a buffer."""
        data = np.arange(8, dtype=np.float32)
        handle = cpu_backend.allocate_buffer(data.nbytes, MemFlag.READ_WRITE)

        write = cpu_backend.enqueue_write_buffer(handle, data)
        out = np.empty_like(data)
        read = cpu_backend.enqueue_read_buffer(handle, out, [write])
        cpu_backend.wait_for_events([read])

        np.testing.assert_array_equal(out, data)
        assert cpu_backend.event_status(write) is EventStatus.COMPLETE

    def test_allocate_with_initial_data(self, cpu_backend: CPUBackend) -> None:
        """Test initial data is copied at allocation."""
        data = np.arange(16, dtype=np.float32)
        handle = cpu_backend.allocate_image((2, 2, 1), RGBA_FLOAT, MemFlag.READ_WRITE, data, ndim=2)
        out = np.empty_like(data)

        cpu_backend.wait_for_events(
            [cpu_backend.enqueue_read_image(handle, (0, 0, 0), (2, 2, 1), out)]
        )

        np.testing.assert_array_equal(out, data)
        assert cpu_backend.used_bytes == data.nbytes

    def test_image_region_layout(self, cpu_backend: CPUBackend) -> None:
        """Test regions address width first, then height."""
        data = np.arange(4 * 3 * 4, dtype=np.float32)
        handle = cpu_backend.allocate_image((4, 3, 1), RGBA_FLOAT, MemFlag.READ_WRITE, data)
        out = np.empty(4, dtype=np.float32)

        cpu_backend.wait_for_events(
            [cpu_backend.enqueue_read_image(handle, (1, 2, 0), (1, 1, 1), out)]
        )

        # pixel (x=1, y=2) is the 2 * 4 + 1 = 9th pixel
        np.testing.assert_array_equal(out, data[36:40])

    def test_paused_commands_stay_queued(self, cpu_backend: CPUBackend) -> None:
        """Test commands do not start while the device is paused."""
        handle = cpu_backend.allocate_buffer(16, MemFlag.READ_WRITE)
        data = np.ones(4, dtype=np.float32)

        with cpu_backend.paused():
            event = cpu_backend.enqueue_write_buffer(handle, data)
            assert cpu_backend.event_status(event) is EventStatus.QUEUED

        cpu_backend.wait_for_events([event])
        assert cpu_backend.event_status(event) is EventStatus.COMPLETE

    def test_in_order_runs_in_submission_order(self, cpu_backend: CPUBackend) -> None:
        """Test an in-order queue never lets a later command overtake."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        out = np.empty(1, dtype=np.float32)

        with cpu_backend.paused():
            cpu_backend.enqueue_write_buffer(handle, np.array([7.0], dtype=np.float32))
            read = cpu_backend.enqueue_read_buffer(handle, out)

        cpu_backend.wait_for_events([read])
        assert out[0] == 7.0

    def test_out_of_order_without_dependency(self) -> None:
        """Test an out-of-order queue can run an independent read first."""
        backend = CPUBackend(QueueOrdering.OUT_OF_ORDER)
        try:
            handle = backend.allocate_buffer(4, MemFlag.READ_WRITE)
            out = np.empty(1, dtype=np.float32)

            with backend.paused():
                write = backend.enqueue_write_buffer(handle, np.array([7.0], dtype=np.float32))
                read = backend.enqueue_read_buffer(handle, out)

            backend.wait_for_events([write, read])
            assert out[0] == 0.0
        finally:
            backend.close()

    def test_out_of_order_respects_wait_list(self) -> None:
        """Test a wait list orders commands on an out-of-order queue."""
        backend = CPUBackend(QueueOrdering.OUT_OF_ORDER)
        try:
            handle = backend.allocate_buffer(4, MemFlag.READ_WRITE)
            out = np.empty(1, dtype=np.float32)

            with backend.paused():
                write = backend.enqueue_write_buffer(handle, np.array([7.0], dtype=np.float32))
                read = backend.enqueue_read_buffer(handle, out, [write])

            backend.wait_for_events([read])
            assert out[0] == 7.0
        finally:
            backend.close()

    def test_injected_failure(self, cpu_backend: CPUBackend) -> None:
        """Test a device fault surfaces on wait."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        cpu_backend.fail_next("bus error")

        event = cpu_backend.enqueue_write_buffer(handle, np.zeros(1, dtype=np.float32))

        with pytest.raises(DeviceError, match="bus error"):
            cpu_backend.wait_for_events([event])
        assert cpu_backend.event_status(event) is EventStatus.FAILED

    def test_failure_propagates_through_wait_list(self, cpu_backend: CPUBackend) -> None:
        """Test a command waiting on a failed event fails."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)
        out = np.empty(1, dtype=np.float32)

        with cpu_backend.paused():
            cpu_backend.fail_next()
            write = cpu_backend.enqueue_write_buffer(handle, np.zeros(1, dtype=np.float32))
            read = cpu_backend.enqueue_read_buffer(handle, out, [write])

        with pytest.raises(DeviceError, match="wait list failed"):
            cpu_backend.wait_for_events([read])

    def test_unexpected_exception_fails_command(self, cpu_backend: CPUBackend) -> None:
        """Test an arbitrary exception in a command fails only that command."""

        def explode() -> None:
            raise RuntimeError("boom")

        event = cpu_backend._enqueue("explode", explode, ())

        assert event.wait(timeout=2.0)
        with pytest.raises(DeviceError, match="boom") as exc_info:
            cpu_backend.wait_for_events([event])
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        data = np.arange(4, dtype=np.int32)
        handle = cpu_backend.allocate_buffer(data.nbytes, MemFlag.READ_WRITE)
        write = cpu_backend.enqueue_write_buffer(handle, data)
        out = np.empty_like(data)
        read = cpu_backend.enqueue_read_buffer(handle, out, [write])

        assert read.wait(timeout=2.0)
        cpu_backend.wait_for_events([read])
        np.testing.assert_array_equal(out, data)

    def test_use_after_free_fails_on_device(self, cpu_backend: CPUBackend) -> None:
        """Test a command on a freed object fails when it runs."""
        handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)

        with cpu_backend.paused():
            event = cpu_backend.enqueue_read_buffer(handle, np.empty(1, dtype=np.float32))
            cpu_backend.free(handle)

        with pytest.raises(DeviceError, match="released"):
            cpu_backend.wait_for_events([event])

    def test_foreign_event_rejected(self, cpu_backend: CPUBackend) -> None:
        """Test events from another queue cannot be waited on by a command."""
        other = CPUBackend()
        try:
            foreign = other.enqueue_write_buffer(
                other.allocate_buffer(4, MemFlag.READ_WRITE), np.zeros(1, dtype=np.float32)
            )
            handle = cpu_backend.allocate_buffer(4, MemFlag.READ_WRITE)

            assert not cpu_backend.owns_event(foreign)
            with pytest.raises(DeviceError, match="does not belong"):
                cpu_backend.enqueue_read_buffer(handle, np.empty(1, dtype=np.float32), [foreign])
        finally:
            other.close()

    def test_memory_limit(self) -> None:
        """Test allocations beyond the memory limit fail."""
        backend = CPUBackend(memory_limit_bytes=64)
        try:
            handle = backend.allocate_buffer(48, MemFlag.READ_WRITE)
            with pytest.raises(AllocationError) as exc_info:
                backend.allocate_buffer(32, MemFlag.READ_WRITE)
            assert exc_info.value.requested_bytes == 32

            backend.free(handle)
            backend.allocate_buffer(32, MemFlag.READ_WRITE)
            assert backend.used_bytes == 32
        finally:
            backend.close()

    def test_unsupported_format(self) -> None:
        """Test the device rejects formats it was configured without."""
        backend = CPUBackend(unsupported_formats=[RGBA_FLOAT])
        try:
            assert not backend.supports_format(RGBA_FLOAT, MemFlag.READ_WRITE, 2)
            with pytest.raises(FormatUnsupportedError):
                backend.allocate_image((2, 2, 1), RGBA_FLOAT, MemFlag.READ_WRITE)
        finally:
            backend.close()

    def test_free_invalid_handle(self, cpu_backend: CPUBackend) -> None:
        """Test freeing an unknown handle fails."""
        with pytest.raises(DeviceError):
            cpu_backend.free(12345)

    def test_synchronize(self, cpu_backend: CPUBackend) -> None:
        """Test synchronize drains the queue."""
        handle = cpu_backend.allocate_buffer(400, MemFlag.READ_WRITE)
        events = [
            cpu_backend.enqueue_write_buffer(handle, np.full(100, i, dtype=np.float32))
            for i in range(10)
        ]

        cpu_backend.synchronize()

        assert all(cpu_backend.event_status(e) is EventStatus.COMPLETE for e in events)

    def test_close(self) -> None:
        """Test a closed device accepts no more commands."""
        backend = CPUBackend()
        handle = backend.allocate_buffer(4, MemFlag.READ_WRITE)
        backend.close()

        assert not backend.is_available
        with pytest.raises(DeviceError, match="closed"):
            backend.enqueue_write_buffer(handle, np.zeros(1, dtype=np.float32))

    def test_repr(self, cpu_backend: CPUBackend) -> None:
        """Test string representation."""
        cpu_backend.allocate_buffer(8, MemFlag.READ_WRITE)

        assert repr(cpu_backend) == "CPUBackend(ordering=IN_ORDER, objects=1, used=8B)"
