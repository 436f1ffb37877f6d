"""
PyCLUtil - typed asynchronous image and buffer transfers for compute devices.

Moves host pixel data in and out of device images and buffers with
zero-copy channel flattening, non-blocking transfers that return a
deferred result paired with a completion token, and blocking wrappers
built from the same primitives.

Core Features:
    - Channel Layout Adapter: (N, n) pixel vectors viewed as flat scalars
    - Memory Registry: images and buffers created from typed host data
    - Async Engine: deferred results, completion tokens and wait lists
    - OpenCL backend via pyopencl, with an emulated CPU device fallback

Quick Start:
    >>> import numpy as np
    >>> from pyclutil import ComputeContext, ContextConfig, MemFlag
    >>> from pyclutil import init_image, read_image_region_async, write_image_async
    >>>
    >>> rgb = np.arange(12, dtype=np.float32).reshape(4, 3)
    >>> with ComputeContext(ContextConfig(backend="cpu")) as ctx:
    ...     img = init_image(ctx, MemFlag.READ_WRITE, (2, 2), np.zeros_like(rgb))
    ...     written = write_image_async(img, rgb)
    ...     pending = read_image_region_async(img, (0, 0), (2, 2), [written])
    ...     pixels = pending.wait()
"""

from pyclutil.backends.base import BackendType, EventStatus, QueueOrdering
from pyclutil.core.async_result import CompletionToken, DeferredResult, wait_all
from pyclutil.core.channels import NumChan, PixelLayout, flatten, unflatten
from pyclutil.core.context import ComputeContext, ContextConfig, TransferStatistics
from pyclutil.core.formats import ChannelOrder, ChannelType, ImageFormat, MemFlag
from pyclutil.core.memory import (
    DeviceBuffer,
    DeviceImage,
    alloc_buffer,
    alloc_image,
    init_buffer,
    init_image,
    init_image_fmt,
)
from pyclutil.core.transfer import (
    copy_buffer_to_image,
    copy_buffer_to_image_async,
    read_buffer,
    read_buffer_async,
    read_image,
    read_image_async,
    read_image_region,
    read_image_region_async,
    write_buffer,
    write_buffer_async,
    write_image,
    write_image_async,
    write_image_region,
    write_image_region_async,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Context
    "ComputeContext",
    "ContextConfig",
    "TransferStatistics",
    "BackendType",
    "QueueOrdering",
    "EventStatus",
    # Channels and formats
    "NumChan",
    "PixelLayout",
    "flatten",
    "unflatten",
    "ChannelOrder",
    "ChannelType",
    "ImageFormat",
    "MemFlag",
    # Memory objects
    "DeviceImage",
    "DeviceBuffer",
    "init_image",
    "init_image_fmt",
    "alloc_image",
    "init_buffer",
    "alloc_buffer",
    # Async
    "CompletionToken",
    "DeferredResult",
    "wait_all",
    # Transfers
    "read_image",
    "read_image_async",
    "read_image_region",
    "read_image_region_async",
    "write_image",
    "write_image_async",
    "write_image_region",
    "write_image_region_async",
    "copy_buffer_to_image",
    "copy_buffer_to_image_async",
    "read_buffer",
    "read_buffer_async",
    "write_buffer",
    "write_buffer_async",
]
