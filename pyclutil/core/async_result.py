"""
Asynchronous execution of queued device operations.

Every device operation is submitted without blocking and handed back as a
DeferredResult: the value it will produce paired with the CompletionToken
of the queued command. Blocking variants are always ``submit(...).wait()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Generator, Iterable, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

from pyclutil.backends.base import EventStatus
from pyclutil.exceptions import DeviceError, ResultNotReadyError

if TYPE_CHECKING:
    from pyclutil.backends.base import Backend
    from pyclutil.core.context import TransferStatistics


T = TypeVar("T")
U = TypeVar("U")

logger = logging.getLogger(__name__)


class CompletionToken:
    """
    Opaque handle to one queued command's finish state.

    Tokens are used to wait and as wait-list entries for later commands.
    Once a token has been observed signaled it stays signaled.
    """

    __slots__ = ("_backend", "_event", "_label", "_terminal")

    def __init__(self, backend: Backend, event: Any, label: str = "") -> None:
        """
        Initialize a token.

        Args:
            backend: Backend whose queue issued ``event``.
            event: Backend event handle.
            label: Human readable name of the command.
        """
        self._backend = backend
        self._event = event
        self._label = label
        self._terminal: EventStatus | None = None

    @property
    def event(self) -> Any:
        """Get the backend event handle."""
        return self._event

    @property
    def backend(self) -> Backend:
        """Get the backend that issued this token."""
        return self._backend

    @property
    def label(self) -> str:
        """Get the command label."""
        return self._label

    @property
    def status(self) -> EventStatus:
        """Current state; monotonic once terminal."""
        if self._terminal is not None:
            return self._terminal
        status = self._backend.event_status(self._event)
        if status.is_terminal:
            self._terminal = status
        return status

    @property
    def is_signaled(self) -> bool:
        """Whether the command has finished (successfully or not)."""
        return self.status.is_terminal

    def wait(self) -> None:
        """
        Block until the command finishes.

        Raises:
            DeviceError: If the command failed on the device.
        """
        try:
            self._backend.wait_for_events([self._event])
        finally:
            status = self._backend.event_status(self._event)
            if status.is_terminal:
                self._terminal = status

    def __repr__(self) -> str:
        """String representation."""
        return f"CompletionToken(label={self._label!r}, status={self.status.name})"


class DeferredResult(Generic[T]):
    """
    A value that becomes valid once its completion token signals.

    Example:
        >>> pending = read_image_async(img)
        >>> ...  # overlap host work with the transfer
        >>> pixels = pending.wait()
    """

    __slots__ = ("_token", "_finalize", "_poll_interval", "_value", "_has_value")

    def __init__(
        self,
        token: CompletionToken,
        finalize: Callable[[], T],
        *,
        poll_interval: float = 0.001,
    ) -> None:
        """
        Initialize a deferred result.

        Args:
            token: Token of the command producing the value.
            finalize: Produces the value once the command has completed.
            poll_interval: Seconds between status checks when awaited.
        """
        self._token = token
        self._finalize = finalize
        self._poll_interval = poll_interval
        self._value: T | None = None
        self._has_value = False

    @property
    def token(self) -> CompletionToken:
        """Get the completion token."""
        return self._token

    @property
    def ready(self) -> bool:
        """Whether the token has signaled."""
        return self._token.is_signaled

    def _resolve(self) -> T:
        if not self._has_value:
            self._value = self._finalize()
            self._has_value = True
        return self._value  # type: ignore[return-value]

    def wait(self) -> T:
        """
        Block on the token, then return the value.

        Raises:
            DeviceError: If the command failed on the device.
        """
        self._token.wait()
        return self._resolve()

    def get(self) -> T:
        """
        Return the value of an already signaled result without blocking.

        Raises:
            ResultNotReadyError: If the token has not signaled yet.
            DeviceError: If the command failed on the device.
        """
        if not self._token.is_signaled:
            raise ResultNotReadyError(self._token.label)
        return self.wait()

    def map(self, func: Callable[[T], U]) -> DeferredResult[U]:
        """Deferred result of ``func`` applied to this value, sharing the token."""
        return DeferredResult(
            self._token,
            lambda: func(self._resolve()),
            poll_interval=self._poll_interval,
        )

    async def wait_async(self) -> T:
        """Await the value by polling the token from the event loop."""
        while not self._token.is_signaled:
            await asyncio.sleep(self._poll_interval)
        return self.wait()

    def __await__(self) -> Generator[Any, None, T]:
        """Support ``await deferred``."""
        return self.wait_async().__await__()

    def __repr__(self) -> str:
        """String representation."""
        return f"DeferredResult(token={self._token!r})"


Waitable = Union[CompletionToken, DeferredResult[Any]]


def token_of(item: Waitable) -> CompletionToken:
    """Get the token of a token or deferred result."""
    if isinstance(item, DeferredResult):
        return item.token
    if isinstance(item, CompletionToken):
        return item
    raise TypeError(f"Expected CompletionToken or DeferredResult, got {type(item).__name__}")


def wait_all(items: Iterable[Waitable]) -> None:
    """
    Block until every token has signaled.

    Raises:
        DeviceError: If any of the commands failed.
    """
    tokens = [token_of(item) for item in items]
    if not tokens:
        return
    by_backend: dict[int, list[CompletionToken]] = {}
    for token in tokens:
        by_backend.setdefault(id(token.backend), []).append(token)
    for group in by_backend.values():
        backend = group[0].backend
        try:
            backend.wait_for_events([token.event for token in group])
        finally:
            for token in group:
                _ = token.status


class AsyncEngine:
    """
    Submits device operations and wraps them as deferred results.

    Validation happens in the caller before ``submit``; the engine resolves
    the wait list, hands the operation to the backend and records transfer
    statistics. It never retries.
    """

    def __init__(
        self,
        backend: Backend,
        stats: TransferStatistics,
        *,
        poll_interval: float = 0.001,
    ) -> None:
        """
        Initialize the engine.

        Args:
            backend: Backend executing the operations.
            stats: Statistics updated on every submission.
            poll_interval: Poll interval for awaited results.
        """
        self._backend = backend
        self._stats = stats
        self._poll_interval = poll_interval

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        return self._backend

    def resolve_wait_list(self, wait_for: Sequence[Waitable]) -> list[Any]:
        """
        Turn tokens and deferred results into backend events.

        Raises:
            DeviceError: If a token was issued by another backend.
        """
        events = []
        for item in wait_for:
            token = token_of(item)
            if token.backend is not self._backend:
                raise DeviceError(f"Token {token.label!r} belongs to a different context")
            events.append(token.event)
        return events

    def submit(
        self,
        label: str,
        enqueue: Callable[[list[Any]], Any],
        finalize: Callable[[], T],
        wait_for: Sequence[Waitable] = (),
        *,
        to_device: int = 0,
        to_host: int = 0,
    ) -> DeferredResult[T]:
        """
        Queue an operation without blocking.

        Args:
            label: Name of the operation for logs and errors.
            enqueue: Submits the operation given the resolved wait list and
                returns the backend event.
            finalize: Produces the result value after completion.
            wait_for: Tokens that must signal before the operation starts.
            to_device: Bytes the operation moves host-to-device.
            to_host: Bytes the operation moves device-to-host.

        Returns:
            Deferred result bound to the operation's token.
        """
        events = self.resolve_wait_list(wait_for)
        event = enqueue(events)
        self._stats.record(label, to_device=to_device, to_host=to_host)
        logger.debug(f"Submitted {label} after {len(events)} event(s)")
        token = CompletionToken(self._backend, event, label)
        return DeferredResult(token, finalize, poll_interval=self._poll_interval)

    def run(
        self,
        label: str,
        enqueue: Callable[[list[Any]], Any],
        finalize: Callable[[], T],
        wait_for: Sequence[Waitable] = (),
        *,
        to_device: int = 0,
        to_host: int = 0,
    ) -> T:
        """Blocking form of ``submit``: submit, then wait."""
        return self.submit(
            label, enqueue, finalize, wait_for, to_device=to_device, to_host=to_host
        ).wait()
