"""
Device memory objects and the registry that creates them.

Images and buffers are allocated from host pixel data (or empty), with a
pixel format deduced from the host layout or supplied explicitly. The
registry tracks every live object so a closing context can release them.
"""

from __future__ import annotations

import logging
import math
import operator
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

import numpy as np

from pyclutil.core.channels import PixelLayout
from pyclutil.core.formats import ImageFormat, MemFlag, as_flags, deduce_format, validate_flags
from pyclutil.exceptions import (
    DeviceError,
    DimensionMismatchError,
    FormatUnsupportedError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from pyclutil.core.context import ComputeContext


logger = logging.getLogger(__name__)

Flags = Union[MemFlag, Sequence[MemFlag], None]


def normalize_dims(dims: Sequence[int] | int) -> tuple[int, ...]:
    """
    Validate image dimensions.

    Args:
        dims: Width, or ``(width, height)`` or ``(width, height, depth)``.

    Returns:
        Dimensions as a tuple of ints.

    Raises:
        DimensionMismatchError: If there are not 1-3 positive dimensions.
            Non-integral values such as ``2.7`` are rejected rather than
            truncated.
    """
    if np.ndim(dims) == 0:
        dims = (dims,)  # type: ignore[assignment]
    dims = tuple(_as_extent(d, "image dimensions") for d in dims)
    if not 1 <= len(dims) <= 3:
        raise DimensionMismatchError(3, len(dims), "image rank (1 to 3 dimensions)")
    for d in dims:
        if d <= 0:
            raise DimensionMismatchError(1, d, f"image dimensions {dims} (must be positive)")
    return dims


def _as_extent(value: Any, what: str) -> int:
    try:
        return operator.index(value)
    except TypeError:
        raise DimensionMismatchError(1, value, f"{what} (values must be integers)") from None


def pad3(values: Sequence[int], fill: int) -> tuple[int, int, int]:
    """Extend a 1-3 element tuple to three elements."""
    values = tuple(_as_extent(v, "origin or region") for v in values)
    return (values + (fill,) * (3 - len(values)))[:3]  # type: ignore[return-value]


@dataclass(eq=False)
class DeviceMemory:
    """Common state of device-resident memory objects."""

    context: ComputeContext
    handle: Any
    layout: PixelLayout
    flags: MemFlag
    released: bool = field(default=False, init=False)

    def ensure_live(self) -> None:
        """
        Check that the object is still allocated.

        Raises:
            DeviceError: If the object has been released.
        """
        if self.released:
            raise DeviceError(f"{self!r} has been released")

    def release(self) -> None:
        """Release the object on the device."""
        self.context.registry.release(self)


@dataclass(eq=False)
class DeviceImage(DeviceMemory):
    """A device-resident 1D, 2D or 3D array of pixels."""

    dims: tuple[int, ...] = (1,)
    image_format: ImageFormat | None = None

    @property
    def ndim(self) -> int:
        """Number of image dimensions."""
        return len(self.dims)

    @property
    def dims3(self) -> tuple[int, int, int]:
        """``(width, height, depth)`` with unused axes set to 1."""
        return pad3(self.dims, 1)

    @property
    def pixel_count(self) -> int:
        """Number of pixels in the image."""
        return math.prod(self.dims)

    @property
    def flat_length(self) -> int:
        """Number of scalars in a full-image host vector."""
        return self.layout.flat_length(self.pixel_count)

    @property
    def nbytes(self) -> int:
        """Size of the image contents in bytes."""
        return self.pixel_count * self.layout.itemsize

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"DeviceImage(dims={self.dims}, format={self.image_format}, "
            f"released={self.released})"
        )


@dataclass(eq=False)
class DeviceBuffer(DeviceMemory):
    """A device-resident linear array of packed pixels."""

    count: int = 0

    @property
    def flat_length(self) -> int:
        """Number of scalars in the buffer."""
        return self.layout.flat_length(self.count)

    @property
    def nbytes(self) -> int:
        """Size of the buffer in bytes."""
        return self.count * self.layout.itemsize

    def __repr__(self) -> str:
        """String representation."""
        return f"DeviceBuffer(count={self.count}, layout={self.layout!r}, released={self.released})"


class MemoryRegistry:
    """
    Creates and tracks the memory objects of one context.

    Example:
        >>> registry = ctx.registry
        >>> img = registry.init_image(MemFlag.READ_ONLY, (640, 480), rgba_pixels)
        >>> registry.allocated_bytes
        4915200
    """

    def __init__(self, context: ComputeContext) -> None:
        """
        Initialize the registry.

        Args:
            context: Context whose backend allocates the objects.
        """
        self._context = context
        self._objects: dict[int, DeviceMemory] = {}

    @property
    def live_objects(self) -> list[DeviceMemory]:
        """Objects not yet released."""
        return list(self._objects.values())

    @property
    def allocated_bytes(self) -> int:
        """Total size of live objects."""
        return sum(obj.nbytes for obj in self._objects.values())  # type: ignore[attr-defined]

    def __len__(self) -> int:
        """Number of live objects."""
        return len(self._objects)

    def _track(self, obj: DeviceMemory) -> None:
        self._objects[id(obj)] = obj

    def _allocate_image(
        self,
        flags: Flags,
        image_format: ImageFormat,
        dims: Sequence[int] | int,
        layout: PixelLayout,
        flat: NDArray[Any] | None,
    ) -> DeviceImage:
        dims = normalize_dims(dims)
        flags = as_flags(flags)
        image_format.check_compatible(layout)

        expected = layout.flat_length(math.prod(dims))
        if flat is not None and flat.size != expected:
            raise DimensionMismatchError(expected, flat.size, f"image of dimensions {dims}")

        validate_flags(flags, has_initial_data=flat is not None)
        backend = self._context.backend
        if not backend.supports_format(image_format, flags, len(dims)):
            raise FormatUnsupportedError(image_format)

        handle = backend.allocate_image(
            pad3(dims, 1), image_format, flags, flat, ndim=len(dims)
        )
        image = DeviceImage(
            self._context, handle, layout, flags, dims=dims, image_format=image_format
        )
        self._track(image)
        logger.debug(f"Created {image!r}")
        return image

    def init_image(
        self,
        flags: Flags,
        dims: Sequence[int] | int,
        pixels: NDArray[Any],
        layout: PixelLayout | None = None,
    ) -> DeviceImage:
        """
        Create an image initialised with ``pixels``, deducing its format.

        Args:
            flags: Creation flags.
            dims: Image dimensions, width first.
            pixels: ``prod(dims)`` pixels (``(N, n)``, structured or flat).
            layout: Pixel layout; inferred from ``pixels`` when None. Needed
                to interpret a flat vector of multi-channel pixels.

        Returns:
            The new image.

        Raises:
            DimensionMismatchError: If ``pixels`` does not cover ``dims``.
            AllocationError: If the device cannot satisfy the request.
        """
        layout = layout or PixelLayout.of(pixels)
        flat = layout.flatten(pixels)
        return self._allocate_image(flags, deduce_format(layout), dims, layout, flat)

    def init_image_fmt(
        self,
        flags: Flags,
        image_format: ImageFormat,
        dims: Sequence[int] | int,
        pixels: NDArray[Any],
    ) -> DeviceImage:
        """
        Create an image of an explicit format initialised with ``pixels``.

        Raises:
            DimensionMismatchError: If ``pixels`` does not cover ``dims``.
            LayoutIncompatibleError: If ``pixels`` do not match the format.
            FormatUnsupportedError: If the device rejects the format.
            AllocationError: If the device cannot satisfy the request.
        """
        layout = image_format.layout
        flat = layout.flatten(pixels)
        return self._allocate_image(flags, image_format, dims, layout, flat)

    def alloc_image(
        self,
        flags: Flags,
        dims: Sequence[int] | int,
        layout: PixelLayout,
        image_format: ImageFormat | None = None,
    ) -> DeviceImage:
        """Create an uninitialised (zeroed where the device allows) image."""
        image_format = image_format or deduce_format(layout)
        return self._allocate_image(flags, image_format, dims, layout, None)

    def _allocate_buffer(
        self,
        flags: Flags,
        count: int,
        layout: PixelLayout,
        flat: NDArray[Any] | None,
    ) -> DeviceBuffer:
        if count <= 0:
            raise DimensionMismatchError(1, count, "buffer element count (must be positive)")
        flags = as_flags(flags)
        validate_flags(flags, has_initial_data=flat is not None)

        nbytes = count * layout.itemsize
        handle = self._context.backend.allocate_buffer(nbytes, flags, flat)
        buffer = DeviceBuffer(self._context, handle, layout, flags, count=count)
        self._track(buffer)
        logger.debug(f"Created {buffer!r}")
        return buffer

    def init_buffer(
        self,
        flags: Flags,
        pixels: NDArray[Any],
        layout: PixelLayout | None = None,
    ) -> DeviceBuffer:
        """Create a buffer holding ``pixels``."""
        layout = layout or PixelLayout.of(pixels)
        flat = layout.flatten(pixels)
        return self._allocate_buffer(flags, flat.size // layout.channels, layout, flat)

    def alloc_buffer(self, flags: Flags, count: int, layout: PixelLayout) -> DeviceBuffer:
        """Create an uninitialised buffer of ``count`` pixels."""
        return self._allocate_buffer(flags, count, layout, None)

    def release(self, obj: DeviceMemory) -> None:
        """
        Release a memory object.

        Raises:
            DeviceError: If it was already released or belongs to another context.
        """
        if obj.context is not self._context:
            raise DeviceError(f"{obj!r} belongs to a different context")
        obj.ensure_live()
        self._objects.pop(id(obj), None)
        obj.released = True
        self._context.backend.free(obj.handle)

    def release_all(self) -> None:
        """Release every live object, reporting the first failure."""
        first_error: DeviceError | None = None
        for obj in list(self._objects.values()):
            try:
                self.release(obj)
            except DeviceError as e:
                logger.warning(f"Failed to release {obj!r}: {e}")
                first_error = first_error or e
        if first_error is not None:
            raise first_error


def init_image(
    ctx: ComputeContext,
    flags: Flags,
    dims: Sequence[int] | int,
    pixels: NDArray[Any],
    layout: PixelLayout | None = None,
) -> DeviceImage:
    """Create an image of ``dims`` initialised with ``pixels``; see ``MemoryRegistry``."""
    return ctx.registry.init_image(flags, dims, pixels, layout)


def init_image_fmt(
    ctx: ComputeContext,
    flags: Flags,
    image_format: ImageFormat,
    dims: Sequence[int] | int,
    pixels: NDArray[Any],
) -> DeviceImage:
    """Create an image with an explicit format; see ``MemoryRegistry``."""
    return ctx.registry.init_image_fmt(flags, image_format, dims, pixels)


def alloc_image(
    ctx: ComputeContext,
    flags: Flags,
    dims: Sequence[int] | int,
    layout: PixelLayout,
    image_format: ImageFormat | None = None,
) -> DeviceImage:
    """Create an image without initial contents."""
    return ctx.registry.alloc_image(flags, dims, layout, image_format)


def init_buffer(
    ctx: ComputeContext,
    flags: Flags,
    pixels: NDArray[Any],
    layout: PixelLayout | None = None,
) -> DeviceBuffer:
    """Create a buffer holding ``pixels``."""
    return ctx.registry.init_buffer(flags, pixels, layout)


def alloc_buffer(ctx: ComputeContext, flags: Flags, count: int, layout: PixelLayout) -> DeviceBuffer:
    """Create a buffer of ``count`` pixels without initial contents."""
    return ctx.registry.alloc_buffer(flags, count, layout)
