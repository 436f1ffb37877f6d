"""
Image formats and memory flags.

Describes how a device stores pixels (channel order plus channel data
type) and the access flags a memory object is created with.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import Any

import numpy as np

from pyclutil.core.channels import NumChan, PixelLayout
from pyclutil.exceptions import AllocationError, LayoutIncompatibleError


class MemFlag(Flag):
    """Access and allocation flags for device memory objects."""

    NONE = 0
    READ_WRITE = auto()
    WRITE_ONLY = auto()
    READ_ONLY = auto()
    USE_HOST_PTR = auto()
    ALLOC_HOST_PTR = auto()
    COPY_HOST_PTR = auto()
    HOST_WRITE_ONLY = auto()
    HOST_READ_ONLY = auto()
    HOST_NO_ACCESS = auto()


_DEVICE_ACCESS = (MemFlag.READ_WRITE, MemFlag.WRITE_ONLY, MemFlag.READ_ONLY)
_HOST_ACCESS = (MemFlag.HOST_WRITE_ONLY, MemFlag.HOST_READ_ONLY, MemFlag.HOST_NO_ACCESS)


def as_flags(flags: MemFlag | list[MemFlag] | tuple[MemFlag, ...] | None) -> MemFlag:
    """Combine a flag list into a single flag value."""
    if flags is None:
        return MemFlag.NONE
    if isinstance(flags, MemFlag):
        return flags
    combined = MemFlag.NONE
    for flag in flags:
        combined |= flag
    return combined


def validate_flags(flags: MemFlag, *, has_initial_data: bool) -> None:
    """
    Reject flag combinations no device can honour.

    Raises:
        AllocationError: If access flags conflict, or if initial data is
            supplied for an object the host may not write.
    """
    device_access = [f for f in _DEVICE_ACCESS if f in flags]
    if len(device_access) > 1:
        raise AllocationError(f"conflicting device access flags {device_access}")

    host_access = [f for f in _HOST_ACCESS if f in flags]
    if len(host_access) > 1:
        raise AllocationError(f"conflicting host access flags {host_access}")

    if MemFlag.USE_HOST_PTR in flags and flags & (MemFlag.ALLOC_HOST_PTR | MemFlag.COPY_HOST_PTR):
        raise AllocationError("USE_HOST_PTR cannot be combined with ALLOC_HOST_PTR or COPY_HOST_PTR")

    if has_initial_data and flags & (MemFlag.HOST_READ_ONLY | MemFlag.HOST_NO_ACCESS):
        raise AllocationError("initial data supplied for an object the host may not write")


def host_can_read(flags: MemFlag) -> bool:
    """Whether the host may read an object created with ``flags``."""
    return not flags & (MemFlag.HOST_WRITE_ONLY | MemFlag.HOST_NO_ACCESS)


def host_can_write(flags: MemFlag) -> bool:
    """Whether the host may write an object created with ``flags``."""
    return not flags & (MemFlag.HOST_READ_ONLY | MemFlag.HOST_NO_ACCESS)


class ChannelOrder(Enum):
    """Order of the channels in a stored pixel."""

    R = auto()
    A = auto()
    INTENSITY = auto()
    LUMINANCE = auto()
    RG = auto()
    RA = auto()
    RGB = auto()
    RGBA = auto()
    BGRA = auto()
    ARGB = auto()

    @property
    def channel_count(self) -> int:
        """Number of channels stored per pixel."""
        return _ORDER_CHANNELS[self]


_ORDER_CHANNELS = {
    ChannelOrder.R: 1,
    ChannelOrder.A: 1,
    ChannelOrder.INTENSITY: 1,
    ChannelOrder.LUMINANCE: 1,
    ChannelOrder.RG: 2,
    ChannelOrder.RA: 2,
    ChannelOrder.RGB: 3,
    ChannelOrder.RGBA: 4,
    ChannelOrder.BGRA: 4,
    ChannelOrder.ARGB: 4,
}

_DEFAULT_ORDER = {
    NumChan.ONE: ChannelOrder.R,
    NumChan.TWO: ChannelOrder.RG,
    NumChan.THREE: ChannelOrder.RGB,
    NumChan.FOUR: ChannelOrder.RGBA,
}


class ChannelType(Enum):
    """Data type of each stored channel."""

    SNORM_INT8 = auto()
    SNORM_INT16 = auto()
    UNORM_INT8 = auto()
    UNORM_INT16 = auto()
    SIGNED_INT8 = auto()
    SIGNED_INT16 = auto()
    SIGNED_INT32 = auto()
    UNSIGNED_INT8 = auto()
    UNSIGNED_INT16 = auto()
    UNSIGNED_INT32 = auto()
    HALF_FLOAT = auto()
    FLOAT = auto()

    @property
    def host_dtype(self) -> np.dtype[Any]:
        """Scalar type the host reads and writes for this channel type."""
        return np.dtype(_TYPE_TO_DTYPE[self])


_TYPE_TO_DTYPE = {
    ChannelType.SNORM_INT8: np.int8,
    ChannelType.SNORM_INT16: np.int16,
    ChannelType.UNORM_INT8: np.uint8,
    ChannelType.UNORM_INT16: np.uint16,
    ChannelType.SIGNED_INT8: np.int8,
    ChannelType.SIGNED_INT16: np.int16,
    ChannelType.SIGNED_INT32: np.int32,
    ChannelType.UNSIGNED_INT8: np.uint8,
    ChannelType.UNSIGNED_INT16: np.uint16,
    ChannelType.UNSIGNED_INT32: np.uint32,
    ChannelType.HALF_FLOAT: np.float16,
    ChannelType.FLOAT: np.float32,
}

# Non-normalized channel type for each host scalar type.
_DTYPE_TO_TYPE = {
    np.dtype(np.int8): ChannelType.SIGNED_INT8,
    np.dtype(np.int16): ChannelType.SIGNED_INT16,
    np.dtype(np.int32): ChannelType.SIGNED_INT32,
    np.dtype(np.uint8): ChannelType.UNSIGNED_INT8,
    np.dtype(np.uint16): ChannelType.UNSIGNED_INT16,
    np.dtype(np.uint32): ChannelType.UNSIGNED_INT32,
    np.dtype(np.float16): ChannelType.HALF_FLOAT,
    np.dtype(np.float32): ChannelType.FLOAT,
}


@dataclass(frozen=True)
class ImageFormat:
    """Storage format of an image: channel order and channel data type."""

    channel_order: ChannelOrder
    channel_type: ChannelType

    @property
    def channel_count(self) -> int:
        """Number of channels per pixel."""
        return self.channel_order.channel_count

    @property
    def host_dtype(self) -> np.dtype[Any]:
        """Scalar type of host-side pixel data."""
        return self.channel_type.host_dtype

    @property
    def pixel_size(self) -> int:
        """Bytes per stored pixel."""
        return self.channel_count * self.host_dtype.itemsize

    @property
    def layout(self) -> PixelLayout:
        """Host pixel layout matching this format."""
        return PixelLayout(NumChan.of(self.channel_count), self.host_dtype)

    def check_compatible(self, layout: PixelLayout) -> None:
        """
        Check that host pixels of ``layout`` can fill this format.

        Raises:
            LayoutIncompatibleError: If channel counts or scalar types differ.
        """
        if self.channel_count != layout.channels:
            raise LayoutIncompatibleError(
                f"{self} stores {self.channel_count} channels, "
                f"pixels have {int(layout.channels)}"
            )
        if self.host_dtype != layout.scalar:
            raise LayoutIncompatibleError(
                f"{self} stores {self.host_dtype} channels, pixels are {layout.scalar}"
            )

    def __str__(self) -> str:
        """Short form such as ``RGBA/FLOAT``."""
        return f"{self.channel_order.name}/{self.channel_type.name}"


def deduce_format(layout: PixelLayout) -> ImageFormat:
    """Default image format for pixels of ``layout``."""
    return ImageFormat(_DEFAULT_ORDER[layout.channels], _DTYPE_TO_TYPE[layout.scalar])
