"""
PyCLUtil examples.

This module contains example programs demonstrating typed image and
buffer transfers.
"""

from examples.rgb_roundtrip import run_async_example, run_rgb_example

__all__ = [
    "run_async_example",
    "run_rgb_example",
]
