"""
Compute context.

Binds one backend (device context plus command queue) to the memory
registry and async engine that operate on it, and keeps transfer
statistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pyclutil.backends.base import Backend, BackendType, QueueOrdering
from pyclutil.backends.cpu import CPUBackend
from pyclutil.core.async_result import AsyncEngine, Waitable, wait_all
from pyclutil.core.memory import MemoryRegistry
from pyclutil.exceptions import BackendNotAvailableError, InvalidConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterable


logger = logging.getLogger(__name__)

_BACKEND_NAMES = {"auto": None, "cpu": BackendType.CPU, "opencl": BackendType.OPENCL}


@dataclass
class ContextConfig:
    """Configuration for a compute context."""

    backend: str | BackendType = "auto"
    ordering: QueueOrdering = QueueOrdering.IN_ORDER
    poll_interval: float = 0.001
    memory_limit_bytes: int | None = None
    platform_index: int | None = None
    device_index: int = 0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if isinstance(self.backend, str):
            if self.backend.lower() not in _BACKEND_NAMES:
                raise InvalidConfigurationError(
                    "backend", self.backend, f"expected one of {sorted(_BACKEND_NAMES)}"
                )
            self.backend = self.backend.lower()
        elif not isinstance(self.backend, BackendType):
            raise InvalidConfigurationError("backend", self.backend, "expected str or BackendType")

        if not isinstance(self.ordering, QueueOrdering):
            raise InvalidConfigurationError("ordering", self.ordering, "expected QueueOrdering")
        if self.poll_interval <= 0:
            raise InvalidConfigurationError("poll_interval", self.poll_interval, "must be positive")
        if self.memory_limit_bytes is not None and self.memory_limit_bytes < 0:
            raise InvalidConfigurationError(
                "memory_limit_bytes", self.memory_limit_bytes, "must be non-negative"
            )
        if self.device_index < 0:
            raise InvalidConfigurationError("device_index", self.device_index, "must be >= 0")

    @property
    def backend_type(self) -> BackendType | None:
        """Requested backend type, None for automatic selection."""
        if isinstance(self.backend, BackendType):
            return self.backend
        return _BACKEND_NAMES[self.backend]


@dataclass
class TransferStatistics:
    """Counters for operations submitted through a context."""

    reads: int = 0
    writes: int = 0
    device_copies: int = 0
    submissions: int = 0
    bytes_to_device: int = 0
    bytes_to_host: int = 0
    by_operation: dict[str, int] = field(default_factory=dict)

    def record(self, label: str, *, to_device: int = 0, to_host: int = 0) -> None:
        """
        Record one submitted operation.

        Args:
            label: Operation name.
            to_device: Bytes moved host-to-device.
            to_host: Bytes moved device-to-host.
        """
        self.submissions += 1
        self.by_operation[label] = self.by_operation.get(label, 0) + 1
        if to_host:
            self.reads += 1
            self.bytes_to_host += to_host
        elif to_device:
            self.writes += 1
            self.bytes_to_device += to_device
        else:
            self.device_copies += 1

    def reset(self) -> None:
        """Reset all counters."""
        self.reads = 0
        self.writes = 0
        self.device_copies = 0
        self.submissions = 0
        self.bytes_to_device = 0
        self.bytes_to_host = 0
        self.by_operation.clear()

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary."""
        return {
            "reads": self.reads,
            "writes": self.writes,
            "device_copies": self.device_copies,
            "submissions": self.submissions,
            "bytes_to_device": self.bytes_to_device,
            "bytes_to_host": self.bytes_to_host,
            "by_operation": dict(self.by_operation),
        }


def _create_backend(config: ContextConfig) -> Backend:
    """Instantiate the backend ``config`` asks for."""
    requested = config.backend_type

    if requested in (None, BackendType.OPENCL):
        from pyclutil.backends.opencl import OpenCLBackend, opencl_available

        if opencl_available():
            return OpenCLBackend(
                config.ordering,
                platform_index=config.platform_index,
                device_index=config.device_index,
            )
        if requested is BackendType.OPENCL:
            raise BackendNotAvailableError("OpenCL", "no OpenCL platform with a device found")
        logger.info("OpenCL not available, falling back to CPU backend")

    return CPUBackend(config.ordering, memory_limit_bytes=config.memory_limit_bytes)


class ComputeContext:
    """
    Host-side handle on one device queue.

    Owns the backend, the registry of memory objects created through it
    and the engine that submits transfers. Closing the context drains the
    queue and releases every object still alive.

    Example:
        >>> with ComputeContext(ContextConfig(backend="cpu")) as ctx:
        ...     img = init_image(ctx, MemFlag.READ_WRITE, (2, 2), pixels)
        ...     assert (read_image(img) == pixels).all()
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        *,
        backend: Backend | None = None,
    ) -> None:
        """
        Initialize the context.

        Args:
            config: Context configuration (defaults apply when None).
            backend: Pre-built backend; takes precedence over ``config.backend``.
        """
        self._config = config or ContextConfig()
        self._backend = backend if backend is not None else _create_backend(self._config)
        self._stats = TransferStatistics()
        self._engine = AsyncEngine(
            self._backend, self._stats, poll_interval=self._config.poll_interval
        )
        self._registry = MemoryRegistry(self)
        self._active = True
        logger.debug(f"Created {self!r}")

    def __enter__(self) -> ComputeContext:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()

    async def __aenter__(self) -> ComputeContext:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        self.close()

    @property
    def config(self) -> ContextConfig:
        """Get the configuration."""
        return self._config

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        return self._backend

    @property
    def engine(self) -> AsyncEngine:
        """Get the async engine."""
        return self._engine

    @property
    def registry(self) -> MemoryRegistry:
        """Get the memory object registry."""
        return self._registry

    @property
    def stats(self) -> TransferStatistics:
        """Get transfer statistics."""
        return self._stats

    @property
    def ordering(self) -> QueueOrdering:
        """Get the queue execution policy."""
        return self._backend.ordering

    @property
    def is_active(self) -> bool:
        """Check if the context is still open."""
        return self._active

    def wait_all(self, items: Iterable[Waitable]) -> None:
        """Block until every given token has signaled."""
        wait_all(items)

    def synchronize(self) -> None:
        """Block until every queued command has finished."""
        self._backend.synchronize()

    def close(self) -> None:
        """Drain the queue, release all memory objects and the backend."""
        if not self._active:
            return
        self._active = False
        try:
            self._backend.synchronize()
        finally:
            self._registry.release_all()
            self._backend.close()
        logger.debug("Compute context closed")

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ComputeContext(backend={self._backend.backend_type.name}, "
            f"ordering={self._backend.ordering.name}, "
            f"objects={len(self._registry)})"
        )
