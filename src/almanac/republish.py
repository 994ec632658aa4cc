"""Read-modify-republish protocol for replaceable container records.

Each attempt walks ``idle → fetching → computing → publishing`` and settles in
``confirmed`` or ``failed``.  Nothing is retried: a failed attempt must be
re-initiated by the caller, and because every step re-derives from fetched
state a retry behaves correctly whether or not the earlier attempt landed.

Two writers racing on one coordinate both get their records accepted; the
version with the greatest ``created_at`` (ties: greatest ``id``) wins and the
other edit is silently dropped.  This is the network's last-write-wins model
and is intentionally left as-is.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from almanac.coordinates import Coordinate, is_replaceable_type_code, parse_coordinate
from almanac.core.telemetry import operation_span
from almanac.errors import (
    AlmanacError,
    ContainerNotFoundError,
    ErrorKind,
    InvalidCoordinateError,
    MutationCancelledError,
)
from almanac.membership import compute_addition, compute_removal
from almanac.network import DEFAULT_QUERY_TIMEOUT_SECONDS, RecordNetwork, query_records
from almanac.publisher import RecordPublisher
from almanac.records import SLUG_ATTRIBUTE, RecordFilter, SignedRecord

logger = logging.getLogger(__name__)


class MutationState(StrEnum):
    """Protocol states for one mutation attempt."""

    idle = "idle"
    fetching = "fetching"
    computing = "computing"
    publishing = "publishing"
    confirmed = "confirmed"
    failed = "failed"


class MembershipAction(StrEnum):
    add = "add"
    remove = "remove"


_VALID_TRANSITIONS: dict[MutationState, set[MutationState]] = {
    MutationState.idle: {MutationState.fetching},
    MutationState.fetching: {MutationState.computing, MutationState.failed},
    MutationState.computing: {MutationState.publishing, MutationState.failed},
    MutationState.publishing: {MutationState.confirmed, MutationState.failed},
    MutationState.confirmed: set(),
    MutationState.failed: set(),
}

_TERMINAL_STATES = frozenset(state for state, nxt in _VALID_TRANSITIONS.items() if not nxt)


class InvalidTransitionError(RuntimeError):
    """Raised when a mutation is moved along an edge the protocol does not allow."""

    def __init__(self, from_state: MutationState, to_state: MutationState) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid mutation transition: {from_state} -> {to_state}")

AttributeComputation = Callable[[Sequence[Sequence[str]], str], list[list[str]]]

_COMPUTATIONS: dict[MembershipAction, AttributeComputation] = {
    MembershipAction.add: compute_addition,
    MembershipAction.remove: compute_removal,
}


def select_latest(records: Iterable[SignedRecord]) -> SignedRecord | None:
    """Pick the authoritative version: greatest ``created_at``, ties by greatest ``id``."""
    return max(records, key=lambda record: (record.created_at, record.id), default=None)


def container_filter(coordinate: Coordinate) -> RecordFilter:
    return RecordFilter(
        type_codes=[coordinate.type_code],
        authors=[coordinate.author_id],
        attribute_values={SLUG_ATTRIBUTE: [coordinate.slug]},
    )


def _parse_container_coordinate(value: str) -> Coordinate:
    coordinate = parse_coordinate(value)
    if not is_replaceable_type_code(coordinate.type_code):
        raise InvalidCoordinateError(value, f"type code {coordinate.type_code} is not replaceable")
    return coordinate


@dataclass
class MembershipMutation:
    """State machine for one add/remove attempt against one container."""

    action: MembershipAction
    container: str
    reference: str
    state: MutationState = MutationState.idle
    history: list[MutationState] = field(default_factory=lambda: [MutationState.idle])
    snapshot: SignedRecord | None = None
    result: SignedRecord | None = None
    error: BaseException | None = None

    @property
    def failure_kind(self) -> ErrorKind | None:
        if isinstance(self.error, AlmanacError):
            return self.error.kind
        if isinstance(self.error, asyncio.CancelledError):
            return ErrorKind.cancelled
        return None

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL_STATES

    def transition(self, state: MutationState) -> None:
        if state not in _VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, state)
        logger.debug(
            "Calendar mutation %s %s -> %s (container=%s reference=%s)",
            self.action,
            self.state,
            state,
            self.container,
            self.reference,
        )
        self.state = state
        self.history.append(state)


class ContainerRepublisher:
    """Runs the read-modify-republish protocol against a record network."""

    def __init__(
        self,
        network: RecordNetwork,
        publisher: RecordPublisher,
        *,
        query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_SECONDS,
    ) -> None:
        self._network = network
        self._publisher = publisher
        self._query_timeout_s = query_timeout_s

    async def fetch_latest(
        self,
        container: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        """Fetch the newest version of the container at *container*.

        Raises
        ------
        InvalidCoordinateError
            If *container* is not a replaceable coordinate.
        ContainerNotFoundError
            If no version arrives within the query timeout.
        MutationCancelledError
            If *cancel* fires first.
        QueryFailedError
            If the network client raises.
        """
        coordinate = _parse_container_coordinate(container)
        try:
            records = await query_records(
                self._network,
                [container_filter(coordinate)],
                timeout=self._query_timeout_s,
                cancel=cancel,
                stage="fetch",
            )
        except TimeoutError as exc:
            raise ContainerNotFoundError(container, timed_out=True) from exc

        # Relays may return records outside the filter; keep only true versions.
        versions = [
            record
            for record in records
            if record.type_code == coordinate.type_code
            and record.author_id == coordinate.author_id
            and record.slug == coordinate.slug
        ]
        latest = select_latest(versions)
        if latest is None:
            raise ContainerNotFoundError(container)
        return latest

    def begin(self, action: MembershipAction, container: str, reference: str) -> MembershipMutation:
        return MembershipMutation(action=action, container=container, reference=reference)

    async def add_reference(
        self,
        container: str,
        reference: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        mutation = self.begin(MembershipAction.add, container, reference)
        return await self.run(mutation, cancel=cancel)

    async def remove_reference(
        self,
        container: str,
        reference: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        mutation = self.begin(MembershipAction.remove, container, reference)
        return await self.run(mutation, cancel=cancel)

    async def run(
        self,
        mutation: MembershipMutation,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        """Drive *mutation* to a terminal state and return the republished record.

        The first failure is recorded on the mutation and re-raised.
        """
        if mutation.state is not MutationState.idle:
            raise RuntimeError("Mutation attempts cannot be restarted; begin a new one")

        with operation_span(
            f"membership.{mutation.action}",
            container=mutation.container,
            reference=mutation.reference,
        ):
            try:
                mutation.transition(MutationState.fetching)
                snapshot = await self.fetch_latest(mutation.container, cancel=cancel)
                mutation.snapshot = snapshot

                mutation.transition(MutationState.computing)
                attributes = _COMPUTATIONS[mutation.action](snapshot.attributes, mutation.reference)
                if cancel is not None and cancel.is_set():
                    raise MutationCancelledError("computing")

                mutation.transition(MutationState.publishing)
                result = await self._publisher.publish(
                    snapshot.type_code,
                    snapshot.content,
                    attributes,
                    created_at=max(self._publisher.now(), snapshot.created_at + 1),
                    cancel=cancel,
                )
            except BaseException as exc:
                mutation.error = exc
                mutation.transition(MutationState.failed)
                logger.warning(
                    "Calendar mutation %s failed (container=%s reference=%s): %s",
                    mutation.action,
                    mutation.container,
                    mutation.reference,
                    exc,
                )
                raise

            mutation.result = result
            mutation.transition(MutationState.confirmed)
            return result
