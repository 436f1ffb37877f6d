"""
OpenCL backend for PyCLUtil.

Provides an implementation of the backend interface on top of pyopencl.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pyclutil.backends.base import Backend, BackendType, Dims3, EventStatus, QueueOrdering
from pyclutil.core.formats import MemFlag
from pyclutil.exceptions import (
    AllocationError,
    BackendNotAvailableError,
    DeviceError,
    FormatUnsupportedError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pyclutil.core.formats import ImageFormat


logger = logging.getLogger(__name__)


def _check_opencl_available() -> bool:
    """Check if an OpenCL platform with at least one device is present."""
    try:
        import pyopencl as cl

        return any(platform.get_devices() for platform in cl.get_platforms())
    except ImportError:
        return False
    except Exception:
        return False


def opencl_available() -> bool:
    """Check if OpenCL is available."""
    return _check_opencl_available()


class OpenCLBackend(Backend):
    """
    OpenCL backend implementation using pyopencl.

    Opens one context and one command queue on the selected device. All
    transfers are issued non-blocking; completion is observed through the
    returned ``pyopencl.Event`` objects.

    Example:
        >>> backend = OpenCLBackend()
        >>> if backend.is_available:
        ...     handle = backend.allocate_buffer(1024, MemFlag.READ_WRITE)
    """

    def __init__(
        self,
        ordering: QueueOrdering = QueueOrdering.IN_ORDER,
        *,
        platform_index: int | None = None,
        device_index: int = 0,
        context: Any = None,
    ) -> None:
        """
        Initialize the OpenCL backend.

        Args:
            ordering: Queue execution policy.
            platform_index: Platform to use (None for the first with devices).
            device_index: Device within the platform.
            context: Existing ``pyopencl.Context`` to reuse.

        Raises:
            BackendNotAvailableError: If pyopencl or a device is missing.
        """
        try:
            import pyopencl as cl
        except ImportError as e:
            raise BackendNotAvailableError("OpenCL", f"pyopencl not installed: {e}") from e

        self._cl = cl
        self._ordering = ordering

        try:
            if context is None:
                device = self._select_device(platform_index, device_index)
                context = cl.Context([device])
            self._context = context
            self._device = context.devices[0]

            properties = 0
            if ordering is QueueOrdering.OUT_OF_ORDER:
                properties = cl.command_queue_properties.OUT_OF_ORDER_EXEC_MODE_ENABLE
            self._queue = cl.CommandQueue(context, self._device, properties=properties)
        except cl.Error as e:
            raise BackendNotAvailableError("OpenCL", str(e)) from e

        logger.info(f"OpenCL backend initialized on {self._device.name} ({ordering.name})")

    def _select_device(self, platform_index: int | None, device_index: int) -> Any:
        platforms = self._cl.get_platforms()
        if platform_index is not None:
            if not 0 <= platform_index < len(platforms):
                raise BackendNotAvailableError(
                    "OpenCL", f"platform {platform_index} not found ({len(platforms)} available)"
                )
            platforms = [platforms[platform_index]]

        for platform in platforms:
            devices = platform.get_devices()
            if device_index < len(devices):
                return devices[device_index]
        raise BackendNotAvailableError("OpenCL", f"no device with index {device_index}")

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.OPENCL

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return True

    @property
    def ordering(self) -> QueueOrdering:
        """Get the queue execution policy."""
        return self._ordering

    @property
    def context(self) -> Any:
        """Get the underlying ``pyopencl.Context``."""
        return self._context

    @property
    def queue(self) -> Any:
        """Get the underlying ``pyopencl.CommandQueue``."""
        return self._queue

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def _cl_flags(self, flags: MemFlag) -> int:
        mf = self._cl.mem_flags
        result = 0
        for flag in MemFlag:
            if flag is not MemFlag.NONE and flag in flags:
                result |= getattr(mf, flag.name)
        return result

    def _cl_format(self, image_format: ImageFormat) -> Any:
        return self._cl.ImageFormat(
            getattr(self._cl.channel_order, image_format.channel_order.name),
            getattr(self._cl.channel_type, image_format.channel_type.name),
        )

    def _image_type(self, ndim: int) -> Any:
        mot = self._cl.mem_object_type
        return {1: mot.IMAGE1D, 2: mot.IMAGE2D, 3: mot.IMAGE3D}[ndim]

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def supports_format(self, image_format: ImageFormat, flags: MemFlag, ndim: int) -> bool:
        """Check the device's supported image format list."""
        try:
            supported = self._cl.get_supported_image_formats(
                self._context, self._cl_flags(flags), self._image_type(ndim)
            )
        except self._cl.Error as e:
            logger.debug(f"Failed to query image formats: {e}")
            return False
        return self._cl_format(image_format) in supported

    def allocate_image(
        self,
        shape: Dims3,
        image_format: ImageFormat,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
        *,
        ndim: int = 3,
    ) -> Any:
        """Create a ``pyopencl.Image``."""
        if not self.supports_format(image_format, flags, ndim):
            raise FormatUnsupportedError(image_format, f"not listed by {self._device.name}")

        cl_flags = self._cl_flags(flags)
        if hostbuf is not None:
            cl_flags |= self._cl.mem_flags.COPY_HOST_PTR

        try:
            image = self._cl.Image(
                self._context,
                cl_flags,
                self._cl_format(image_format),
                shape=tuple(shape[:ndim]),
                hostbuf=hostbuf,
            )
        except self._cl.Error as e:
            raise AllocationError(str(e), requested_bytes=_nbytes(shape, image_format)) from e

        logger.debug(f"Allocated image {shape[:ndim]} {image_format}")
        return image

    def allocate_buffer(
        self,
        nbytes: int,
        flags: MemFlag,
        hostbuf: NDArray[Any] | None = None,
    ) -> Any:
        """Create a ``pyopencl.Buffer``."""
        cl_flags = self._cl_flags(flags)
        if hostbuf is not None:
            cl_flags |= self._cl.mem_flags.COPY_HOST_PTR
        try:
            buffer = self._cl.Buffer(self._context, cl_flags, size=nbytes, hostbuf=hostbuf)
        except self._cl.Error as e:
            raise AllocationError(str(e), requested_bytes=nbytes) from e

        logger.debug(f"Allocated buffer: {nbytes} bytes")
        return buffer

    def free(self, handle: Any) -> None:
        """Release a memory object."""
        try:
            handle.release()
        except self._cl.Error as e:
            raise DeviceError(f"Failed to release memory object: {e}") from e

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _copy(self, dest: Any, src: Any, wait_for: Sequence[Any], **kwargs: Any) -> Any:
        try:
            return self._cl.enqueue_copy(
                self._queue, dest, src, wait_for=list(wait_for) or None, **kwargs
            )
        except self._cl.Error as e:
            raise DeviceError(f"Failed to enqueue copy: {e}") from e

    def enqueue_read_image(
        self,
        handle: Any,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a non-blocking image-to-host copy."""
        return self._copy(
            host, handle, wait_for, origin=origin, region=region, is_blocking=False
        )

    def enqueue_write_image(
        self,
        handle: Any,
        origin: Dims3,
        region: Dims3,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a non-blocking host-to-image copy."""
        return self._copy(
            handle, host, wait_for, origin=origin, region=region, is_blocking=False
        )

    def enqueue_read_buffer(
        self,
        handle: Any,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a non-blocking buffer-to-host copy."""
        return self._copy(host, handle, wait_for, is_blocking=False)

    def enqueue_write_buffer(
        self,
        handle: Any,
        host: NDArray[Any],
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a non-blocking host-to-buffer copy."""
        return self._copy(handle, host, wait_for, is_blocking=False)

    def enqueue_copy_buffer_to_image(
        self,
        buffer: Any,
        image: Any,
        origin: Dims3,
        region: Dims3,
        wait_for: Sequence[Any] = (),
    ) -> Any:
        """Queue a buffer-to-image copy on the device."""
        return self._copy(image, buffer, wait_for, offset=0, origin=origin, region=region)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def owns_event(self, event: Any) -> bool:
        """Check whether ``event`` was issued on this backend's context."""
        if not isinstance(event, self._cl.Event):
            return False
        return event.get_info(self._cl.event_info.CONTEXT) == self._context

    def event_status(self, event: Any) -> EventStatus:
        """Map the event's execution status onto ``EventStatus``."""
        status = event.command_execution_status
        if status == self._cl.command_execution_status.COMPLETE:
            return EventStatus.COMPLETE
        if status < 0:
            return EventStatus.FAILED
        return EventStatus.QUEUED

    def wait_for_events(self, events: Sequence[Any]) -> None:
        """Block on the events; wrap runtime errors."""
        if not events:
            return
        try:
            self._cl.wait_for_events(list(events))
        except self._cl.Error as e:
            logger.warning(f"OpenCL wait failed: {e}")
            raise DeviceError(f"OpenCL command failed: {e}") from e

    def synchronize(self) -> None:
        """Finish the command queue."""
        try:
            self._queue.finish()
        except self._cl.Error as e:
            raise DeviceError(f"Failed to finish queue: {e}") from e

    def __repr__(self) -> str:
        """String representation."""
        return f"OpenCLBackend(device={self._device.name!r}, ordering={self._ordering.name})"


def _nbytes(shape: Dims3, image_format: ImageFormat) -> int:
    width, height, depth = shape
    return width * height * depth * image_format.pixel_size
