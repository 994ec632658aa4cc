"""Interfaces for the externally supplied signing and relay capabilities.

The core never talks to relays or key material directly.  Callers supply a
:class:`RecordNetwork` (query/broadcast) and a :class:`RecordSigner`; both are
awaited through :func:`await_bounded` so every suspension point is bounded by
a timeout and can be aborted by a caller-supplied cancellation event.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
from collections.abc import Awaitable, Sequence
from typing import TypeVar

from almanac.errors import AlmanacError, MutationCancelledError, QueryFailedError
from almanac.records import RecordFilter, SignedRecord, UnsignedRecord

T = TypeVar("T")

DEFAULT_QUERY_TIMEOUT_SECONDS = 5.0
DEFAULT_PUBLISH_TIMEOUT_SECONDS = 5.0


class RecordNetwork(abc.ABC):
    """Broadcast/query client for the record network."""

    @abc.abstractmethod
    async def query(
        self,
        filters: Sequence[RecordFilter],
        *,
        timeout: float,
    ) -> list[SignedRecord]:
        """Return every record matching any of *filters* seen within *timeout* seconds."""
        ...

    @abc.abstractmethod
    async def publish(self, record: SignedRecord, *, timeout: float) -> bool:
        """Broadcast *record*; ``True`` when at least one store accepted it."""
        ...


class RecordSigner(abc.ABC):
    """Local signing capability bound to the current identity."""

    @property
    @abc.abstractmethod
    def author_id(self) -> str | None:
        """Public identity of the signer, or ``None`` when logged out."""
        ...

    @abc.abstractmethod
    async def sign(self, record: UnsignedRecord) -> SignedRecord:
        """Sign *record*.

        Raises ``NotAuthenticatedError`` when no identity is available.
        """
        ...


async def await_bounded(
    awaitable: Awaitable[T],
    *,
    timeout: float,
    cancel: asyncio.Event | None = None,
    stage: str,
) -> T:
    """Await *awaitable* for at most *timeout* seconds.

    Raises ``TimeoutError`` when the deadline passes and
    :class:`MutationCancelledError` when *cancel* is set first.  In both
    cases the in-flight operation is cancelled before returning.
    """
    if cancel is not None and cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise MutationCancelledError(stage)

    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Task | None = None
    if cancel is not None:
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    if cancel_waiter is not None and cancel_waiter in done:
        raise MutationCancelledError(stage)
    raise TimeoutError(f"{stage} did not complete within {timeout:g}s")


async def query_records(
    network: RecordNetwork,
    filters: Sequence[RecordFilter],
    *,
    timeout: float,
    cancel: asyncio.Event | None = None,
    stage: str = "query",
) -> list[SignedRecord]:
    """Run a bounded query.

    ``TimeoutError`` and core errors pass through; any other client failure
    becomes :class:`QueryFailedError`.
    """
    try:
        return await await_bounded(
            network.query(filters, timeout=timeout),
            timeout=timeout,
            cancel=cancel,
            stage=stage,
        )
    except (AlmanacError, TimeoutError):
        raise
    except Exception as exc:
        raise QueryFailedError(str(exc) or type(exc).__name__) from exc
