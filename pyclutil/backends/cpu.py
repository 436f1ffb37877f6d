"""
CPU backend for PyCLUtil.

Emulates a compute device in host memory. Commands are executed by a
single device thread that progresses independently of the submitting
thread, so queued work, completion events and wait lists behave as they
do on a real accelerator. Useful for testing and development without
an OpenCL platform.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from pyclutil.backends.base import Backend, BackendType, Dims3, EventStatus, QueueOrdering
from pyclutil.exceptions import AllocationError, DeviceError, FormatUnsupportedError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pyclutil.core.formats import ImageFormat, MemFlag


logger = logging.getLogger(__name__)


class CPUEvent:
    """Completion event of one command on the CPU device."""

    __slots__ = ("seq", "label", "owner", "_done", "_status", "_error")

    def __init__(self, seq: int, label: str, owner: object) -> None:
        self.seq = seq
        self.owner = owner
        self.label = label
        self._done = threading.Event()
        self._status = EventStatus.QUEUED
        self._error: BaseException | None = None

    @property
    def status(self) -> EventStatus:
        """Current state of the command."""
        return self._status

    @property
    def error(self) -> BaseException | None:
        """Failure recorded when the command ran, if any."""
        return self._error

    def _finish(self, error: BaseException | None) -> None:
        self._error = error
        self._status = EventStatus.FAILED if error is not None else EventStatus.COMPLETE
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the command finishes; True unless ``timeout`` expired."""
        return self._done.wait(timeout)

    def __repr__(self) -> str:
        """String representation."""
        return f"CPUEvent(seq={self.seq}, label={self.label!r}, status={self._status.name})"


@dataclass
class _Command:
    event: CPUEvent
    action: Callable[[], None]
    wait_for: tuple[CPUEvent, ...]


@dataclass
class _Allocation:
    data: NDArray[Any]
    flags: MemFlag
    image_format: ImageFormat | None = None
    nbytes: int = field(init=False)

    def __post_init__(self) -> None:
        self.nbytes = self.data.nbytes


class CPUBackend(Backend):
    """
    CPU backend implementation.

    Images are stored as ``(depth, height, width, channels)`` arrays and
    buffers as raw bytes. An in-order queue runs commands strictly in
    submission order. An out-of-order queue runs the most recently
    submitted command whose wait list has finished, which makes missing
    dependencies visible.

    Example:
        >>> backend = CPUBackend(ordering=QueueOrdering.OUT_OF_ORDER)
        >>> with backend.paused():
        ...     ev = backend.enqueue_write_buffer(handle, data)
        ...     assert backend.event_status(ev) is EventStatus.QUEUED
        >>> backend.wait_for_events([ev])
    """

    def __init__(
        self,
        ordering: QueueOrdering = QueueOrdering.IN_ORDER,
        *,
        memory_limit_bytes: int | None = None,
        unsupported_formats: Sequence[ImageFormat] = (),
    ) -> None:
        """
        Initialize the CPU backend.

        Args:
            ordering: Queue execution policy.
            memory_limit_bytes: Device capacity (None for unlimited).
            unsupported_formats: Image formats the device rejects.
        """
        self._ordering = ordering
        self._memory_limit = memory_limit_bytes
        self._unsupported = frozenset(unsupported_formats)

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._pending: list[_Command] = []
        self._running = 0
        self._paused = False
        self._shutdown = False
        self._fail_next: list[str] = []
        self._seq = itertools.count(1)

        self._allocations: dict[int, _Allocation] = {}
        self._handles = itertools.count(1)
        self._used_bytes = 0

        self._worker = threading.Thread(target=self._run, name="pyclutil-cpu-device", daemon=True)
        self._worker.start()
        logger.info(f"CPU backend initialized ({ordering.name})")

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.CPU

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return not self._shutdown

    @property
    def ordering(self) -> QueueOrdering:
        """Get the queue execution policy."""
        return self._ordering

    @property
    def used_bytes(self) -> int:
        """Bytes currently allocated on the device."""
        return self._used_bytes

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def supports_format(self, image_format: ImageFormat, flags: MemFlag, ndim: int) -> bool:
        """Check whether images of ``image_format`` can be created."""
        return image_format not in self._unsupported and 1 <= ndim <= 3

    def _reserve(self, nbytes: int) -> None:
        if self._memory_limit is not None and self._used_bytes + nbytes > self._memory_limit:
            raise AllocationError(
                f"device memory exhausted ({self._used_bytes} of {self._memory_limit} bytes in use)",
                requested_bytes=nbytes,
            )
        self._used_bytes += nbytes

    def _store(self, allocation: _Allocation) -> int:
        with self._lock:
            self._reserve(allocation.nbytes)
            handle = next(self._handles)
            self._allocations[handle] = allocation
        return handle

    def allocate_image(
        self,
        shape: Dims3,
        image_format: ImageFormat,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
        *,
        ndim: int = 3,
    ) -> int:
        """Allocate an image in host memory."""
        if not self.supports_format(image_format, flags, ndim):
            raise FormatUnsupportedError(image_format, "rejected by CPU device")

        width, height, depth = shape
        storage_shape = (depth, height, width, image_format.channel_count)
        data = np.zeros(storage_shape, dtype=image_format.host_dtype)
        if hostbuf is not None:
            data.reshape(-1)[:] = hostbuf

        handle = self._store(_Allocation(data, flags, image_format))
        logger.debug(f"Allocated image {handle}: {shape} {image_format} ({data.nbytes} bytes)")
        return handle

    def allocate_buffer(
        self,
        nbytes: int,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
    ) -> int:
        """Allocate a byte buffer in host memory."""
        data = np.zeros(nbytes, dtype=np.uint8)
        if hostbuf is not None:
            raw = hostbuf.view(np.uint8).reshape(-1)
            data[: raw.size] = raw

        handle = self._store(_Allocation(data, flags))
        logger.debug(f"Allocated buffer {handle}: {nbytes} bytes")
        return handle

    def free(self, handle: int) -> None:
        """Release a memory object."""
        with self._lock:
            allocation = self._allocations.pop(handle, None)
            if allocation is None:
                raise DeviceError(f"Invalid memory object handle {handle}")
            self._used_bytes -= allocation.nbytes
        logger.debug(f"Freed memory object {handle}: {allocation.nbytes} bytes")

    def _lookup(self, handle: int) -> _Allocation:
        with self._lock:
            allocation = self._allocations.get(handle)
        if allocation is None:
            raise DeviceError(f"Memory object {handle} was released")
        return allocation

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _enqueue(self, label: str, action: Callable[[], None], wait_for: Sequence[Any]) -> CPUEvent:
        deps = tuple(wait_for)
        for dep in deps:
            if not self.owns_event(dep):
                raise DeviceError(f"Event {dep!r} does not belong to this queue")

        with self._cond:
            if self._shutdown:
                raise DeviceError("CPU device has been closed")
            event = CPUEvent(next(self._seq), label, self)
            self._pending.append(_Command(event, action, deps))
            self._cond.notify_all()
        logger.debug(f"Queued {label} as event {event.seq} waiting on {[d.seq for d in deps]}")
        return event

    def _next_ready(self) -> _Command | None:
        if self._ordering is QueueOrdering.IN_ORDER:
            # Head-of-line: nothing overtakes the oldest command.
            if self._running:
                return None
            candidates: Iterator[_Command] = iter(self._pending[:1])
        else:
            candidates = reversed(self._pending)

        for command in candidates:
            if all(dep.status.is_terminal for dep in command.wait_for):
                return command
        return None

    def _run(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._shutdown and not self._pending:
                        return
                    command = None if self._paused else self._next_ready()
                    if command is not None:
                        break
                    self._cond.wait()
                self._pending.remove(command)
                self._running += 1
                injected = self._fail_next.pop(0) if self._fail_next else None

            error: BaseException | None = DeviceError(f"{command.event.label}: aborted")
            try:
                error = self._execute(command, injected)
            finally:
                with self._cond:
                    command.event._finish(error)
                    self._running -= 1
                    self._cond.notify_all()

    def _execute(self, command: _Command, injected: str | None) -> BaseException | None:
        failed = [dep for dep in command.wait_for if dep.status is EventStatus.FAILED]
        if failed:
            return DeviceError(
                f"{command.event.label}: event {failed[0].seq} in the wait list failed"
            )
        if injected is not None:
            logger.warning(f"Injected failure in {command.event.label}: {injected}")
            return DeviceError(f"{command.event.label}: {injected}")
        try:
            command.action()
        except DeviceError as e:
            logger.warning(f"{command.event.label} failed: {e}")
            return e
        except Exception as e:
            logger.warning(f"{command.event.label} failed: {e}")
            error = DeviceError(f"{command.event.label}: {e}")
            error.__cause__ = e
            return error
        return None

    def enqueue_read_image(
        self,
        handle: int,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> CPUEvent:
        """Queue an image-to-host copy."""

        def action() -> None:
            view = _region_view(self._lookup(handle).data, origin, region)
            host.reshape(view.shape)[...] = view

        return self._enqueue(f"read_image({handle})", action, wait_for)

    def enqueue_write_image(
        self,
        handle: int,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> CPUEvent:
        """Queue a host-to-image copy."""

        def action() -> None:
            view = _region_view(self._lookup(handle).data, origin, region)
            view[...] = host.reshape(view.shape)

        return self._enqueue(f"write_image({handle})", action, wait_for)

    def enqueue_read_buffer(
        self,
        handle: int,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> CPUEvent:
        """Queue a buffer-to-host copy."""

        def action() -> None:
            raw = host.view(np.uint8).reshape(-1)
            raw[:] = self._lookup(handle).data[: raw.size]

        return self._enqueue(f"read_buffer({handle})", action, wait_for)

    def enqueue_write_buffer(
        self,
        handle: int,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> CPUEvent:
        """Queue a host-to-buffer copy."""

        def action() -> None:
            raw = host.view(np.uint8).reshape(-1)
            self._lookup(handle).data[: raw.size] = raw

        return self._enqueue(f"write_buffer({handle})", action, wait_for)

    def enqueue_copy_buffer_to_image(
        self,
        buffer: int,
        image: int,
        origin: Dims3,
        region: Dims3,
        wait_for: Sequence[Any] = (),
    ) -> CPUEvent:
        """Queue a buffer-to-image copy on the device."""

        def action() -> None:
            target = _region_view(self._lookup(image).data, origin, region)
            source = self._lookup(buffer).data[: target.nbytes]
            target[...] = source.view(target.dtype).reshape(target.shape)

        return self._enqueue(f"copy_buffer_to_image({buffer}->{image})", action, wait_for)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def owns_event(self, event: Any) -> bool:
        """Check whether ``event`` was issued by this queue."""
        return isinstance(event, CPUEvent) and event.owner is self

    def event_status(self, event: CPUEvent) -> EventStatus:
        """Query an event's state without blocking."""
        return event.status

    def wait_for_events(self, events: Sequence[CPUEvent]) -> None:
        """Block until every event finishes; raise if any failed."""
        for event in events:
            event.wait()
        for event in events:
            if event.status is EventStatus.FAILED:
                error = event.error
                if isinstance(error, DeviceError):
                    raise error
                raise DeviceError(f"{event.label} failed: {error}") from error

    def synchronize(self) -> None:
        """Block until the queue is drained."""
        with self._cond:
            self._cond.wait_for(lambda: not self._pending and not self._running)

    def close(self) -> None:
        """Drain the queue and stop the device thread."""
        with self._cond:
            self._paused = False
            self._shutdown = True
            self._cond.notify_all()
        self._worker.join()
        logger.info("CPU backend closed")

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def pause(self) -> None:
        """Stop starting new commands; queued ones stay QUEUED."""
        with self._cond:
            self._paused = True

    def resume(self) -> None:
        """Resume executing queued commands."""
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    @contextlib.contextmanager
    def paused(self) -> Iterator[CPUBackend]:
        """Hold the device for the duration of the block."""
        self.pause()
        try:
            yield self
        finally:
            self.resume()

    def fail_next(self, message: str = "simulated device fault") -> None:
        """Make the next command the device starts fail with ``message``."""
        with self._cond:
            self._fail_next.append(message)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"CPUBackend(ordering={self._ordering.name}, "
            f"objects={len(self._allocations)}, used={self._used_bytes}B)"
        )


def _region_view(data: NDArray[Any], origin: Dims3, region: Dims3) -> NDArray[Any]:
    """View of ``region`` at ``origin`` in a ``(depth, height, width, n)`` array."""
    (ox, oy, oz), (rx, ry, rz) = origin, region
    depth, height, width = data.shape[:3]
    if oz + rz > depth or oy + ry > height or ox + rx > width:
        raise DeviceError(f"region {region} at {origin} outside image {(width, height, depth)}")
    return data[oz : oz + rz, oy : oy + ry, ox : ox + rx]
