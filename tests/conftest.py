"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from typing import Generator

import numpy as np
import pytest

from pyclutil.backends.base import QueueOrdering
from pyclutil.backends.cpu import CPUBackend
from pyclutil.core.context import ComputeContext, ContextConfig


@pytest.fixture
def cpu_backend() -> Generator[CPUBackend, None, None]:
    """Provide an in-order CPU device."""
    backend = CPUBackend()
    yield backend
    backend.close()


@pytest.fixture
def context() -> Generator[ComputeContext, None, None]:
    """Provide an in-order CPU context."""
    with ComputeContext(ContextConfig(backend="cpu")) as ctx:
        yield ctx


@pytest.fixture(params=[QueueOrdering.IN_ORDER, QueueOrdering.OUT_OF_ORDER], ids=["in_order", "out_of_order"])
def any_order_context(request: pytest.FixtureRequest) -> Generator[ComputeContext, None, None]:
    """Provide a CPU context for each queue ordering."""
    with ComputeContext(ContextConfig(backend="cpu", ordering=request.param)) as ctx:
        yield ctx


@pytest.fixture
def out_of_order_context() -> Generator[ComputeContext, None, None]:
    """Provide an out-of-order CPU context."""
    config = ContextConfig(backend="cpu", ordering=QueueOrdering.OUT_OF_ORDER)
    with ComputeContext(config) as ctx:
        yield ctx


@pytest.fixture
def rgb_pixels() -> np.ndarray:
    """Provide four RGB float pixels (a 2x2 image)."""
    return np.arange(12, dtype=np.float32).reshape(4, 3)


@pytest.fixture
def rgba_pixels() -> np.ndarray:
    """Provide a 4x4 RGBA uint8 image worth of pixels."""
    return np.arange(64, dtype=np.uint8).reshape(16, 4)


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip OpenCL tests if no OpenCL device is available."""
    from pyclutil.backends.opencl import opencl_available

    if not opencl_available():
        skip_opencl = pytest.mark.skip(reason="OpenCL not available")
        for item in items:
            if "opencl" in item.keywords:
                item.add_marker(skip_opencl)
