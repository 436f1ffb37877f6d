"""
Core abstractions for PyCLUtil.
"""

from pyclutil.core.channels import NumChan, PixelLayout, flatten, unflatten
from pyclutil.core.formats import ChannelOrder, ChannelType, ImageFormat, MemFlag
from pyclutil.core.async_result import AsyncEngine, CompletionToken, DeferredResult, wait_all
from pyclutil.core.memory import DeviceBuffer, DeviceImage, MemoryRegistry
from pyclutil.core.context import ComputeContext, ContextConfig, TransferStatistics

__all__ = [
    "NumChan",
    "PixelLayout",
    "flatten",
    "unflatten",
    "ChannelOrder",
    "ChannelType",
    "ImageFormat",
    "MemFlag",
    "AsyncEngine",
    "CompletionToken",
    "DeferredResult",
    "wait_all",
    "DeviceBuffer",
    "DeviceImage",
    "MemoryRegistry",
    "ComputeContext",
    "ContextConfig",
    "TransferStatistics",
]
