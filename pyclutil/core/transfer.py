"""
Typed transfers between host pixel vectors and device memory objects.

Every operation comes in a non-blocking form returning a DeferredResult
and a blocking form; both validate the same way and differ only in whether
the operation goes to ``AsyncEngine.submit`` or ``AsyncEngine.run``.
Pixel vectors are flattened on the way in and unflattened on the way out
without copying, except that strided host input is gathered first.
Geometry and layout are validated before anything is submitted.

Host arrays handed to a non-blocking write are read by the device while
the operation is queued and must not be modified until its token signals.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from pyclutil.core.formats import host_can_read, host_can_write
from pyclutil.core.memory import DeviceBuffer, DeviceImage, DeviceMemory, pad3
from pyclutil.exceptions import (
    DeviceError,
    DimensionMismatchError,
    LayoutIncompatibleError,
    OutOfBoundsError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pyclutil.core.async_result import DeferredResult, Waitable


Origin = Sequence[int]
Region = Sequence[int]


def check_region(
    image: DeviceImage,
    origin: Origin,
    region: Region,
) -> tuple[tuple[int, int, int], tuple[int, int, int]]:
    """
    Validate a sub-region of ``image``.

    Args:
        image: Target image.
        origin: Up to three non-negative start coordinates.
        region: Up to three positive extents.

    Returns:
        ``(origin, region)`` padded to three dimensions.

    Raises:
        OutOfBoundsError: If the region does not fit inside the image.
    """
    dims3 = image.dims3
    if len(origin) > 3 or len(region) > 3:
        raise OutOfBoundsError(origin, region, image.dims)
    origin3 = pad3(origin, 0)
    region3 = pad3(region, 1)
    for start, extent, size in zip(origin3, region3, dims3):
        if start < 0 or extent <= 0 or start + extent > size:
            raise OutOfBoundsError(origin3, region3, dims3)
    return origin3, region3


def _check_live(*objects: DeviceMemory) -> None:
    for obj in objects:
        obj.ensure_live()
        if not obj.context.is_active:
            raise DeviceError(f"{obj!r} belongs to a closed context")


def _check_host_readable(obj: DeviceMemory) -> None:
    if not host_can_read(obj.flags):
        raise DeviceError(f"{obj!r} was created with flags {obj.flags} forbidding host reads")


def _check_host_writable(obj: DeviceMemory) -> None:
    if not host_can_write(obj.flags):
        raise DeviceError(f"{obj!r} was created with flags {obj.flags} forbidding host writes")


def _dispatch(
    obj: DeviceMemory,
    blocking: bool,
    label: str,
    enqueue: Callable[[list[Any]], Any],
    finalize: Callable[[], Any],
    wait_for: Sequence[Waitable],
    **nbytes: int,
) -> Any:
    engine = obj.context.engine
    if blocking:
        return engine.run(label, enqueue, finalize, wait_for, **nbytes)
    return engine.submit(label, enqueue, finalize, wait_for, **nbytes)


# ----------------------------------------------------------------------
# Images
# ----------------------------------------------------------------------


def _read_image_region(
    image: DeviceImage,
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable],
    blocking: bool,
) -> Any:
    _check_live(image)
    origin3, region3 = check_region(image, origin, region)
    _check_host_readable(image)

    layout = image.layout
    host = np.empty(layout.flat_length(math.prod(region3)), dtype=layout.scalar)
    backend = image.context.backend
    return _dispatch(
        image,
        blocking,
        "read_image",
        lambda events: backend.enqueue_read_image(image.handle, origin3, region3, host, events),
        lambda: layout.unflatten(host),
        wait_for,
        to_host=host.nbytes,
    )


def read_image_region_async(
    image: DeviceImage,
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[NDArray[Any]]:
    """
    Read ``region`` of ``image`` starting at ``origin`` without blocking.

    The copy starts after every token in ``wait_for`` has signaled. The
    returned value is only valid once its token has signaled.

    Args:
        image: Source image.
        origin: ``(x, y, z)`` start coordinate (shorter tuples are padded).
        region: ``(width, height, depth)`` extent.
        wait_for: Tokens the read must wait for.

    Returns:
        Deferred ``(prod(region), n)`` pixel array.

    Raises:
        OutOfBoundsError: If the region does not fit inside the image.
    """
    return _read_image_region(image, origin, region, wait_for, blocking=False)


def read_image_region(
    image: DeviceImage,
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable] = (),
) -> NDArray[Any]:
    """Blocking form of ``read_image_region_async``."""
    return _read_image_region(image, origin, region, wait_for, blocking=True)


def read_image_async(image: DeviceImage) -> DeferredResult[NDArray[Any]]:
    """Read the whole image without blocking."""
    return read_image_region_async(image, (0, 0, 0), image.dims3)


def read_image(image: DeviceImage) -> NDArray[Any]:
    """Read the whole image, blocking until the data has arrived."""
    return read_image_region(image, (0, 0, 0), image.dims3)


def _write_image_region(
    image: DeviceImage,
    pixels: NDArray[Any],
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable],
    blocking: bool,
) -> Any:
    _check_live(image)
    origin3, region3 = check_region(image, origin, region)
    flat = image.layout.flatten(pixels)
    expected = image.layout.flat_length(math.prod(region3))
    if flat.size != expected:
        raise DimensionMismatchError(expected, flat.size, f"write of region {region3}")
    _check_host_writable(image)

    backend = image.context.backend
    return _dispatch(
        image,
        blocking,
        "write_image",
        lambda events: backend.enqueue_write_image(image.handle, origin3, region3, flat, events),
        lambda: None,
        wait_for,
        to_device=flat.nbytes,
    )


def write_image_region_async(
    image: DeviceImage,
    pixels: NDArray[Any],
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[None]:
    """
    Write ``pixels`` into ``region`` of ``image`` without blocking.

    Raises:
        OutOfBoundsError: If the region does not fit inside the image.
        DimensionMismatchError: If ``pixels`` does not cover the region.
        LayoutIncompatibleError: If ``pixels`` do not match the image layout.
    """
    return _write_image_region(image, pixels, origin, region, wait_for, blocking=False)


def write_image_region(
    image: DeviceImage,
    pixels: NDArray[Any],
    origin: Origin,
    region: Region,
    wait_for: Sequence[Waitable] = (),
) -> None:
    """Blocking form of ``write_image_region_async``."""
    _write_image_region(image, pixels, origin, region, wait_for, blocking=True)


def write_image_async(
    image: DeviceImage,
    pixels: NDArray[Any],
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[None]:
    """
    Write a full image's worth of pixels without blocking.

    A flat vector must hold ``n * prod(dims)`` scalars, e.g. an RGBA 2D
    image of 640x480 takes 4 * 640 * 480 floats.

    Raises:
        DimensionMismatchError: If ``pixels`` does not cover the image.
    """
    return write_image_region_async(image, pixels, (0, 0, 0), image.dims3, wait_for)


def write_image(image: DeviceImage, pixels: NDArray[Any]) -> None:
    """Blocking form of ``write_image_async``."""
    write_image_region(image, pixels, (0, 0, 0), image.dims3)


# ----------------------------------------------------------------------
# Buffers
# ----------------------------------------------------------------------


def _copy_buffer_to_image(
    buffer: DeviceBuffer,
    image: DeviceImage,
    wait_for: Sequence[Waitable],
    blocking: bool,
) -> Any:
    _check_live(buffer, image)
    if buffer.context is not image.context:
        raise DeviceError(f"{buffer!r} and {image!r} belong to different contexts")
    if buffer.layout != image.layout:
        raise LayoutIncompatibleError(
            f"buffer elements are {buffer.layout!r}, image pixels are {image.layout!r}"
        )
    if buffer.count < image.pixel_count:
        raise OutOfBoundsError((0,), (image.pixel_count,), (buffer.count,))

    backend = image.context.backend
    dims3 = image.dims3
    return _dispatch(
        image,
        blocking,
        "copy_buffer_to_image",
        lambda events: backend.enqueue_copy_buffer_to_image(
            buffer.handle, image.handle, (0, 0, 0), dims3, events
        ),
        lambda: None,
        wait_for,
    )


def copy_buffer_to_image_async(
    buffer: DeviceBuffer,
    image: DeviceImage,
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[None]:
    """
    Copy packed pixels from the start of ``buffer`` into ``image`` on the device.

    Raises:
        LayoutIncompatibleError: If channel counts or scalar types differ.
        OutOfBoundsError: If the buffer holds fewer pixels than the image.
    """
    return _copy_buffer_to_image(buffer, image, wait_for, blocking=False)


def copy_buffer_to_image(buffer: DeviceBuffer, image: DeviceImage) -> None:
    """Blocking form of ``copy_buffer_to_image_async``."""
    _copy_buffer_to_image(buffer, image, (), blocking=True)


def _read_buffer(buffer: DeviceBuffer, wait_for: Sequence[Waitable], blocking: bool) -> Any:
    _check_live(buffer)
    _check_host_readable(buffer)

    layout = buffer.layout
    host = np.empty(buffer.flat_length, dtype=layout.scalar)
    backend = buffer.context.backend
    return _dispatch(
        buffer,
        blocking,
        "read_buffer",
        lambda events: backend.enqueue_read_buffer(buffer.handle, host, events),
        lambda: layout.unflatten(host),
        wait_for,
        to_host=host.nbytes,
    )


def read_buffer_async(
    buffer: DeviceBuffer,
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[NDArray[Any]]:
    """Read every pixel of ``buffer`` without blocking."""
    return _read_buffer(buffer, wait_for, blocking=False)


def read_buffer(buffer: DeviceBuffer, wait_for: Sequence[Waitable] = ()) -> NDArray[Any]:
    """Blocking form of ``read_buffer_async``."""
    return _read_buffer(buffer, wait_for, blocking=True)


def _write_buffer(
    buffer: DeviceBuffer,
    pixels: NDArray[Any],
    wait_for: Sequence[Waitable],
    blocking: bool,
) -> Any:
    _check_live(buffer)
    flat = buffer.layout.flatten(pixels)
    if flat.size != buffer.flat_length:
        raise DimensionMismatchError(buffer.flat_length, flat.size, "buffer write")
    _check_host_writable(buffer)

    backend = buffer.context.backend
    return _dispatch(
        buffer,
        blocking,
        "write_buffer",
        lambda events: backend.enqueue_write_buffer(buffer.handle, flat, events),
        lambda: None,
        wait_for,
        to_device=flat.nbytes,
    )


def write_buffer_async(
    buffer: DeviceBuffer,
    pixels: NDArray[Any],
    wait_for: Sequence[Waitable] = (),
) -> DeferredResult[None]:
    """
    Overwrite ``buffer`` with ``pixels`` without blocking.

    Raises:
        DimensionMismatchError: If ``pixels`` does not match the buffer size.
    """
    return _write_buffer(buffer, pixels, wait_for, blocking=False)


def write_buffer(
    buffer: DeviceBuffer,
    pixels: NDArray[Any],
    wait_for: Sequence[Waitable] = (),
) -> None:
    """Blocking form of ``write_buffer_async``."""
    _write_buffer(buffer, pixels, wait_for, blocking=True)
