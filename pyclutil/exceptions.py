"""
PyCLUtil exception hierarchy.

This module defines the complete exception hierarchy for PyCLUtil,
providing specific exception types for different error categories:

- ValidationError: Problems detected before any work is submitted
  (geometry, bounds, channel layout, configuration)
- DeviceError: Failures reported by the compute runtime, either when an
  object is created or when a completion token is waited upon
- ResultNotReadyError: A deferred value consumed before its token signaled
- BackendError: Compute backend availability

All exceptions inherit from PyCLUtilError for easy catching.
"""

from __future__ import annotations

from collections.abc import Sequence


class PyCLUtilError(Exception):
    """Base exception for all PyCLUtil errors."""

    pass


class ValidationError(PyCLUtilError):
    """Base exception for errors detected at submission time."""

    pass


class DimensionMismatchError(ValidationError):
    """Raised when a vector length disagrees with the declared geometry."""

    def __init__(self, expected: int, actual: int, context: str) -> None:
        self.expected = expected
        self.actual = actual
        self.context = context
        super().__init__(
            f"Dimension mismatch in {context}: expected {expected} elements, got {actual}"
        )


class OutOfBoundsError(ValidationError):
    """Raised when a requested region exceeds an object's geometry."""

    def __init__(
        self,
        origin: Sequence[int],
        region: Sequence[int],
        dims: Sequence[int],
    ) -> None:
        self.origin = tuple(origin)
        self.region = tuple(region)
        self.dims = tuple(dims)
        super().__init__(
            f"Region {self.region} at origin {self.origin} exceeds dimensions {self.dims}"
        )


class LayoutIncompatibleError(ValidationError):
    """Raised when a host pixel layout cannot be viewed as flat scalars."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Incompatible channel layout: {reason}")


class InvalidConfigurationError(ValidationError):
    """Raised when configuration is invalid."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid configuration: {parameter}={value!r} - {reason}")


class DeviceError(PyCLUtilError):
    """Raised for failures surfaced by the underlying compute runtime."""

    pass


class AllocationError(DeviceError):
    """Raised when the device cannot satisfy an allocation request."""

    def __init__(self, reason: str, requested_bytes: int | None = None) -> None:
        self.reason = reason
        self.requested_bytes = requested_bytes
        msg = f"Allocation failed: {reason}"
        if requested_bytes is not None:
            msg += f" (requested {requested_bytes} bytes)"
        super().__init__(msg)


class FormatUnsupportedError(DeviceError):
    """Raised when the device rejects an image format."""

    def __init__(self, image_format: object, reason: str = "") -> None:
        self.image_format = image_format
        msg = f"Image format {image_format!r} is not supported by the device"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ResultNotReadyError(PyCLUtilError):
    """Raised when a deferred value is read before its token signaled."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(
            f"Result of '{label}' is not available yet.\n"
            "Hint: call wait() on the deferred result or its token first."
        )


class BackendError(PyCLUtilError):
    """Base exception for backend-related errors."""

    pass


class BackendNotAvailableError(BackendError):
    """Raised when a requested backend is not available."""

    def __init__(self, backend_name: str, reason: str) -> None:
        self.backend_name = backend_name
        self.reason = reason
        super().__init__(f"Backend '{backend_name}' is not available: {reason}")
