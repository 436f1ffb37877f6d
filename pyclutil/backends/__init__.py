"""
Backend implementations for PyCLUtil.
"""

from pyclutil.backends.base import Backend, BackendType, EventStatus, QueueOrdering
from pyclutil.backends.cpu import CPUBackend, CPUEvent

__all__ = [
    "Backend",
    "BackendType",
    "EventStatus",
    "QueueOrdering",
    "CPUBackend",
    "CPUEvent",
]

# Conditionally export OpenCL backend if available
try:
    import pyopencl  # noqa: F401

    from pyclutil.backends.opencl import OpenCLBackend  # noqa: F401

    __all__.append("OpenCLBackend")
except ImportError:
    pass
