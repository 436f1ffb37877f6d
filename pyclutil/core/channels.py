"""
Channel layout adapter.

Reinterprets sequences of n-channel pixels as flat sequences of scalars
and back. Pixels are held either as ``(N, n)`` arrays of the scalar type
or as 1-D arrays of a packed structured dtype with fields ``x, y, z, w``.
Both forms share their memory with the flat view; nothing is copied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any

import numpy as np

from pyclutil.exceptions import DimensionMismatchError, LayoutIncompatibleError

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray


FIELD_NAMES = ("x", "y", "z", "w")

# Scalar types a device channel can hold.
SCALAR_TYPES: tuple[np.dtype[Any], ...] = tuple(
    np.dtype(t)
    for t in (
        np.int8,
        np.int16,
        np.int32,
        np.uint8,
        np.uint16,
        np.uint32,
        np.float16,
        np.float32,
    )
)


class NumChan(IntEnum):
    """Number of channels in a pixel."""

    ONE = 1
    TWO = 2
    THREE = 3
    FOUR = 4

    @classmethod
    def of(cls, channels: int) -> NumChan:
        """Look up the channel count, rejecting anything outside 1-4."""
        try:
            return cls(int(channels))
        except ValueError as e:
            raise LayoutIncompatibleError(
                f"pixels must have 1 to 4 channels, got {channels}"
            ) from e


def pixel_dtype(scalar: DTypeLike, channels: int) -> np.dtype[Any]:
    """Packed structured dtype of one ``channels``-wide pixel."""
    scalar = np.dtype(scalar)
    names = FIELD_NAMES[: NumChan.of(channels)]
    return np.dtype([(name, scalar) for name in names])


def check_layout(dtype: np.dtype[Any], scalar: DTypeLike, channels: int) -> None:
    """
    Check that a pixel dtype is laid out exactly like ``channels`` scalars.

    Args:
        dtype: Structured pixel dtype to check.
        scalar: Scalar type of each channel.
        channels: Expected number of channels.

    Raises:
        LayoutIncompatibleError: If size, field types or field offsets differ
            from ``channels`` consecutive scalars.
    """
    scalar = np.dtype(scalar)
    if dtype.names is None:
        raise LayoutIncompatibleError(f"{dtype} is not a structured pixel type")
    if len(dtype.names) != channels:
        raise LayoutIncompatibleError(
            f"{dtype} has {len(dtype.names)} fields, expected {channels}"
        )
    if dtype.itemsize != channels * scalar.itemsize:
        raise LayoutIncompatibleError(
            f"{dtype} is {dtype.itemsize} bytes wide, "
            f"{channels} x {scalar} needs {channels * scalar.itemsize}"
        )
    for index, name in enumerate(dtype.names):
        field_dtype, offset = dtype.fields[name][:2]
        if field_dtype != scalar:
            raise LayoutIncompatibleError(
                f"field '{name}' has type {field_dtype}, expected {scalar}"
            )
        if offset != index * scalar.itemsize:
            raise LayoutIncompatibleError(
                f"field '{name}' sits at byte {offset}, expected {index * scalar.itemsize}"
            )


def _require_contiguous(array: NDArray[Any], what: str) -> None:
    if not array.flags.c_contiguous:
        raise LayoutIncompatibleError(f"{what} must be C-contiguous to be viewed without a copy")


def _channels_of(pixels: NDArray[Any]) -> int:
    if pixels.dtype.names is not None:
        return len(pixels.dtype.names)
    if pixels.ndim == 2:
        return pixels.shape[1]
    if pixels.ndim == 1:
        return 1
    raise DimensionMismatchError(2, pixels.ndim, "pixel vector rank")


def _flat_view(pixels: NDArray[Any], scalar: np.dtype[Any], channels: int) -> NDArray[Any]:
    if pixels.dtype.names is not None:
        if pixels.ndim != 1:
            raise DimensionMismatchError(1, pixels.ndim, "structured pixel vector rank")
        check_layout(pixels.dtype, scalar, channels)
        _require_contiguous(pixels, "pixel vector")
        return pixels.view(scalar).reshape(-1)

    if pixels.dtype != scalar:
        raise LayoutIncompatibleError(f"pixel scalars are {pixels.dtype}, expected {scalar}")
    _require_contiguous(pixels, "pixel vector")

    if pixels.ndim == 2:
        if pixels.shape[1] != channels:
            raise LayoutIncompatibleError(
                f"pixels have {pixels.shape[1]} channels, expected {channels}"
            )
        return pixels.reshape(-1)
    if pixels.ndim == 1:
        # Already flat; must still hold a whole number of pixels.
        if pixels.size % channels:
            raise DimensionMismatchError(
                (pixels.size // channels + 1) * channels, pixels.size, "flat pixel vector"
            )
        return pixels
    raise DimensionMismatchError(2, pixels.ndim, "pixel vector rank")


def flatten(pixels: NDArray[Any]) -> NDArray[Any]:
    """
    View a vector of n-channel pixels as a flat vector of scalars.

    The channel count comes from the input itself: the last axis of an
    ``(N, n)`` array or the field count of a structured pixel array.

    Args:
        pixels: Contiguous pixel vector.

    Returns:
        1-D view over the same memory holding ``N * n`` scalars.

    Raises:
        LayoutIncompatibleError: If the pixel type is not n packed scalars
            or the array is not contiguous.
    """
    pixels = np.asarray(pixels)
    channels = NumChan.of(_channels_of(pixels))
    if pixels.dtype.names is not None:
        scalar = pixels.dtype.fields[pixels.dtype.names[0]][0]
    else:
        scalar = pixels.dtype
    return _flat_view(pixels, scalar, channels)


def unflatten(flat: NDArray[Any], channels: int) -> NDArray[Any]:
    """
    View a flat vector of scalars as ``(N, channels)`` pixels.

    Raises:
        DimensionMismatchError: If the length is not a multiple of ``channels``.
    """
    flat = np.asarray(flat)
    channels = NumChan.of(channels)
    if flat.ndim != 1:
        raise DimensionMismatchError(1, flat.ndim, "flat vector rank")
    if flat.size % channels:
        raise DimensionMismatchError(
            (flat.size // channels + 1) * channels, flat.size, f"{int(channels)}-channel unflatten"
        )
    _require_contiguous(flat, "flat vector")
    return flat.reshape(-1, int(channels))


@dataclass(frozen=True)
class PixelLayout:
    """
    Channel count and scalar type of one pixel.

    Plays the role of a per-channel-count pixel type: the packed structured
    dtype is built and checked once, here, and every flatten/unflatten
    through this layout enforces the scalar type.

    Example:
        >>> rgb = PixelLayout(NumChan.THREE, np.float32)
        >>> rgb.flatten(np.zeros((4, 3), dtype=np.float32)).shape
        (12,)
    """

    channels: NumChan
    scalar: np.dtype[Any]
    pixel_dtype: np.dtype[Any] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Normalize fields and assert the packed layout."""
        object.__setattr__(self, "channels", NumChan.of(self.channels))
        scalar = np.dtype(self.scalar)
        if scalar not in SCALAR_TYPES:
            raise LayoutIncompatibleError(f"{scalar} cannot be used as a channel type")
        object.__setattr__(self, "scalar", scalar)
        dtype = pixel_dtype(scalar, self.channels)
        check_layout(dtype, scalar, self.channels)
        object.__setattr__(self, "pixel_dtype", dtype)

    @classmethod
    def of(cls, pixels: NDArray[Any]) -> PixelLayout:
        """Infer the layout of a pixel vector."""
        pixels = np.asarray(pixels)
        if pixels.dtype.names is not None:
            scalar = pixels.dtype.fields[pixels.dtype.names[0]][0]
            return cls(NumChan.of(len(pixels.dtype.names)), scalar)
        return cls(NumChan.of(_channels_of(pixels)), pixels.dtype)

    @property
    def itemsize(self) -> int:
        """Bytes per pixel."""
        return self.pixel_dtype.itemsize

    def flat_length(self, pixel_count: int) -> int:
        """Number of scalars in ``pixel_count`` pixels."""
        return pixel_count * int(self.channels)

    def flatten(self, pixels: NDArray[Any] | Any) -> NDArray[Any]:
        """
        Flat scalar vector of ``pixels``, which must match this layout.

        Contiguous input is viewed in place. Strided or Fortran-ordered
        input is first gathered into a C-ordered copy, so host data of
        any memory order can be uploaded.
        """
        if not isinstance(pixels, np.ndarray):
            pixels = np.asarray(pixels, dtype=self.scalar)
        elif not pixels.flags.c_contiguous:
            pixels = np.ascontiguousarray(pixels)
        return _flat_view(pixels, self.scalar, self.channels)

    def unflatten(self, flat: NDArray[Any]) -> NDArray[Any]:
        """``(N, n)`` pixel view of a flat scalar vector of this layout."""
        flat = np.asarray(flat)
        if flat.dtype != self.scalar:
            raise LayoutIncompatibleError(f"flat scalars are {flat.dtype}, expected {self.scalar}")
        return unflatten(flat, self.channels)

    def records(self, flat: NDArray[Any]) -> NDArray[Any]:
        """Structured view of a flat vector, one record per pixel."""
        return self.unflatten(flat).reshape(-1).view(self.pixel_dtype)

    def __repr__(self) -> str:
        """String representation."""
        return f"PixelLayout(channels={int(self.channels)}, scalar={self.scalar})"
