"""
Backend base classes and interfaces.

Defines the interface a compute runtime must expose: allocation of image
and buffer objects, queued copies that return an event, and waiting on or
querying those events.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pyclutil.core.formats import ImageFormat, MemFlag


Dims3 = tuple[int, int, int]


class BackendType(Enum):
    """Type of compute backend."""

    CPU = auto()
    OPENCL = auto()


class QueueOrdering(Enum):
    """Execution policy of a command queue."""

    IN_ORDER = auto()
    OUT_OF_ORDER = auto()


class EventStatus(Enum):
    """Host-observable state of a queued command."""

    QUEUED = auto()
    COMPLETE = auto()
    FAILED = auto()

    @property
    def is_terminal(self) -> bool:
        """Whether the command has finished, successfully or not."""
        return self is not EventStatus.QUEUED


class Backend(ABC):
    """
    Abstract base class for compute backends.

    A backend owns one device context and one command queue. Memory
    handles and events it returns are opaque to the rest of the package
    and only ever handed back to the same backend.

    All ``enqueue_*`` methods return immediately with an event; the copy
    starts once every event in ``wait_for`` has completed.
    """

    @property
    @abstractmethod
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is available."""
        ...

    @property
    @abstractmethod
    def ordering(self) -> QueueOrdering:
        """Get the queue execution policy."""
        ...

    @abstractmethod
    def supports_format(self, image_format: ImageFormat, flags: MemFlag, ndim: int) -> bool:
        """
        Check whether images of ``image_format`` can be created.

        Args:
            image_format: Requested storage format.
            flags: Creation flags.
            ndim: Number of image dimensions (1-3).

        Returns:
            True if the device accepts the format.
        """
        ...

    @abstractmethod
    def allocate_image(
        self,
        shape: Dims3,
        image_format: ImageFormat,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
        *,
        ndim: int = 3,
    ) -> Any:
        """
        Allocate an image.

        Args:
            shape: ``(width, height, depth)``, unused trailing axes set to 1.
            image_format: Storage format.
            flags: Creation flags.
            hostbuf: Flat initial contents, copied before returning.
            ndim: Number of significant dimensions.

        Returns:
            Opaque image handle.

        Raises:
            AllocationError: If the device cannot satisfy the request.
            FormatUnsupportedError: If the format is rejected.
        """
        ...

    @abstractmethod
    def allocate_buffer(
        self,
        nbytes: int,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
    ) -> Any:
        """
        Allocate a linear buffer.

        Args:
            nbytes: Size in bytes.
            flags: Creation flags.
            hostbuf: Initial contents, copied before returning.

        Returns:
            Opaque buffer handle.
        """
        ...

    @abstractmethod
    def free(self, handle: Any) -> None:
        """
        Release a memory object.

        Args:
            handle: Handle returned by an ``allocate_*`` method.
        """
        ...

    @abstractmethod
    def enqueue_read_image(
        self,
        handle: Any,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue an image-to-host copy of ``region`` at ``origin`` into ``host``."""
        ...

    @abstractmethod
    def enqueue_write_image(
        self,
        handle: Any,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a host-to-image copy of ``host`` into ``region`` at ``origin``."""
        ...

    @abstractmethod
    def enqueue_read_buffer(
        self,
        handle: Any,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a buffer-to-host copy filling ``host``."""
        ...

    @abstractmethod
    def enqueue_write_buffer(
        self,
        handle: Any,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a host-to-buffer copy of ``host``."""
        ...

    @abstractmethod
    def enqueue_copy_buffer_to_image(
        self,
        buffer: Any,
        image: Any,
        origin: Dims3,
        region: Dims3,
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a device-side copy from the start of ``buffer`` into ``image``."""
        ...

    @abstractmethod
    def event_status(self, event: Any) -> EventStatus:
        """Query the state of an event without blocking."""
        ...

    @abstractmethod
    def wait_for_events(self, events: Sequence[Any]) -> None:
        """
        Block until every event has finished.

        Raises:
            DeviceError: If any of the commands failed.
        """
        ...

    @abstractmethod
    def owns_event(self, event: Any) -> bool:
        """Check whether ``event`` was issued by this backend's queue."""
        ...

    @abstractmethod
    def synchronize(self) -> None:
        """Block until every queued command has finished."""
        ...

    def close(self) -> None:
        """Release the backend's queue and context."""
        self.synchronize()
