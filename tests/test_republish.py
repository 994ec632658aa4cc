"""Tests for almanac.republish: the read-modify-republish protocol."""

from __future__ import annotations

import asyncio

import pytest
from _test_helpers import (
    ALICE,
    BOB,
    CALENDAR_COORDINATE,
    EVENT_COORDINATE,
    FAST_TIMEOUT,
    NOW,
    calendar_record,
)

from almanac.errors import (
    ContainerNotFoundError,
    ErrorKind,
    InvalidCoordinateError,
    MutationCancelledError,
    NotAuthenticatedError,
    PublishFailedError,
    QueryFailedError,
    ReferenceAlreadyPresentError,
    ReferenceNotPresentError,
)
from almanac.publisher import RecordPublisher
from almanac.records import reference_values
from almanac.republish import (
    ContainerRepublisher,
    InvalidTransitionError,
    MembershipAction,
    MembershipMutation,
    MutationState,
    select_latest,
)
from almanac.testing import StaticSigner

pytestmark = pytest.mark.unit

FULL_WALK = [
    MutationState.idle,
    MutationState.fetching,
    MutationState.computing,
    MutationState.publishing,
    MutationState.confirmed,
]


# ---------------------------------------------------------------------------
# Version selection
# ---------------------------------------------------------------------------


class TestSelectLatest:
    def test_greatest_created_at_wins(self):
        old = calendar_record(created_at=10)
        new = calendar_record(created_at=20, title="Renamed")
        assert select_latest([new, old]) is new
        assert select_latest([old, new]) is new

    def test_tie_broken_by_greatest_id(self):
        a = calendar_record(created_at=10, title="A")
        b = calendar_record(created_at=10, title="B")
        expected = max((a, b), key=lambda r: r.id)
        assert select_latest([a, b]) is expected
        assert select_latest([b, a]) is expected

    def test_empty(self):
        assert select_latest([]) is None


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestAddReference:
    async def test_publishes_new_version_with_reference(self, network, republisher):
        network.add(calendar_record())
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)

        assert network.published == [result]
        assert ["a", EVENT_COORDINATE] in result.attributes
        assert result.slug == "team"
        assert result.content == "Our shared calendar"
        assert result.created_at == NOW

    async def test_preserves_existing_attributes(self, network, republisher):
        network.add(calendar_record(events=["id-1"], extra=[["image", "https://x/y.png"]]))
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert result.attributes[:4] == [
            ["d", "team"],
            ["title", "Team"],
            ["e", "id-1"],
            ["image", "https://x/y.png"],
        ]

    async def test_state_walk(self, network, republisher):
        network.add(calendar_record())
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)
        await republisher.run(mutation)

        assert mutation.history == FULL_WALK
        assert mutation.done
        assert mutation.error is None
        assert mutation.result is not None
        assert mutation.snapshot is not None

    async def test_derives_from_latest_version(self, network, republisher):
        network.add(
            calendar_record(created_at=NOW - 300, events=["stale-id"]),
            calendar_record(created_at=NOW - 200, events=["fresh-id"]),
        )
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert reference_values(result.attributes) == ["fresh-id", EVENT_COORDINATE]

    async def test_ignores_other_authors_and_slugs(self, network, republisher):
        network.add(
            calendar_record(),
            calendar_record(author_id=BOB, created_at=NOW - 1, events=["bob-event"]),
            calendar_record(slug="other", created_at=NOW - 1, events=["other-event"]),
        )
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert reference_values(result.attributes) == [EVENT_COORDINATE]

    async def test_new_version_supersedes_future_dated_snapshot(self, network, republisher):
        network.add(calendar_record(created_at=NOW + 50))
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert result.created_at == NOW + 51
        latest = await republisher.fetch_latest(CALENDAR_COORDINATE)
        assert latest.id == result.id


class TestRemoveReference:
    async def test_removes_reference(self, network, republisher):
        network.add(calendar_record(events=[EVENT_COORDINATE, "id-1"]))
        result = await republisher.remove_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert reference_values(result.attributes) == ["id-1"]

    async def test_not_present_fails_without_publishing(self, network, republisher):
        network.add(calendar_record())
        mutation = republisher.begin(
            MembershipAction.remove, CALENDAR_COORDINATE, EVENT_COORDINATE
        )
        with pytest.raises(ReferenceNotPresentError):
            await republisher.run(mutation)

        assert mutation.history[-2:] == [MutationState.computing, MutationState.failed]
        assert mutation.failure_kind is ErrorKind.not_present
        assert network.published == []


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_already_present(self, network, republisher):
        network.add(calendar_record(events=[EVENT_COORDINATE]))
        with pytest.raises(ReferenceAlreadyPresentError):
            await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert network.published == []

    async def test_container_not_found(self, network, republisher):
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)
        with pytest.raises(ContainerNotFoundError) as excinfo:
            await republisher.run(mutation)

        assert not excinfo.value.timed_out
        assert mutation.history == [
            MutationState.idle,
            MutationState.fetching,
            MutationState.failed,
        ]
        assert mutation.failure_kind is ErrorKind.container_not_found
        assert network.published == []

    async def test_query_timeout_reports_not_found(self, network, publisher):
        network.add(calendar_record())
        network.query_delay = 1.0
        republisher = ContainerRepublisher(network, publisher, query_timeout_s=FAST_TIMEOUT)

        with pytest.raises(ContainerNotFoundError) as excinfo:
            await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert excinfo.value.timed_out
        assert network.published == []

    async def test_query_error_wrapped(self, network, republisher):
        network.query_error = ConnectionError("relay closed")
        with pytest.raises(QueryFailedError, match="relay closed"):
            await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)

    @pytest.mark.parametrize("container", ["not-a-coordinate", f"1:{ALICE}:team"])
    async def test_invalid_container(self, network, republisher, container):
        mutation = republisher.begin(MembershipAction.add, container, EVENT_COORDINATE)
        with pytest.raises(InvalidCoordinateError):
            await republisher.run(mutation)
        assert mutation.failure_kind is ErrorKind.invalid_format
        assert network.queries == []

    async def test_publish_rejected(self, network, republisher):
        network.add(calendar_record())
        network.accept = False
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)
        with pytest.raises(PublishFailedError):
            await republisher.run(mutation)
        assert mutation.history[-2:] == [MutationState.publishing, MutationState.failed]
        assert mutation.failure_kind is ErrorKind.publish_failed

    async def test_not_authenticated(self, network, clock):
        network.add(calendar_record())
        publisher = RecordPublisher(network, StaticSigner(None), clock=clock)
        republisher = ContainerRepublisher(network, publisher)
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)

        with pytest.raises(NotAuthenticatedError):
            await republisher.run(mutation)
        assert mutation.failure_kind is ErrorKind.not_authenticated
        assert network.published == []

    async def test_cannot_restart_settled_mutation(self, network, republisher):
        network.add(calendar_record())
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)
        await republisher.run(mutation)
        with pytest.raises(RuntimeError):
            await republisher.run(mutation)

    def test_skipping_a_state_is_rejected(self):
        mutation = MembershipMutation(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)
        with pytest.raises(InvalidTransitionError, match="idle -> publishing"):
            mutation.transition(MutationState.publishing)
        assert mutation.history == [MutationState.idle]

    def test_settled_mutation_cannot_move(self):
        mutation = MembershipMutation(
            MembershipAction.remove, CALENDAR_COORDINATE, EVENT_COORDINATE
        )
        for state in (
            MutationState.fetching,
            MutationState.computing,
            MutationState.publishing,
            MutationState.confirmed,
        ):
            mutation.transition(state)
        assert mutation.done
        with pytest.raises(InvalidTransitionError):
            mutation.transition(MutationState.failed)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cancel_before_fetch(self, network, republisher):
        network.add(calendar_record())
        cancel = asyncio.Event()
        cancel.set()
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)

        with pytest.raises(MutationCancelledError) as excinfo:
            await republisher.run(mutation, cancel=cancel)
        assert excinfo.value.stage == "fetch"
        assert mutation.failure_kind is ErrorKind.cancelled
        assert network.published == []

    async def test_cancel_during_publish(self, network, republisher):
        network.add(calendar_record())
        network.publish_delay = 1.0
        cancel = asyncio.Event()
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)

        task = asyncio.create_task(republisher.run(mutation, cancel=cancel))
        while mutation.state is not MutationState.publishing:
            await asyncio.sleep(0)
        cancel.set()

        with pytest.raises(MutationCancelledError) as excinfo:
            await task
        assert excinfo.value.stage == "publish"
        assert mutation.state is MutationState.failed
        assert network.published == []

    async def test_task_cancellation_is_recorded_and_propagated(self, network, republisher):
        network.add(calendar_record())
        network.query_delay = 1.0
        mutation = republisher.begin(MembershipAction.add, CALENDAR_COORDINATE, EVENT_COORDINATE)

        task = asyncio.create_task(republisher.run(mutation))
        while mutation.state is not MutationState.fetching:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert mutation.state is MutationState.failed
        assert mutation.failure_kind is ErrorKind.cancelled


# ---------------------------------------------------------------------------
# Retry and concurrency
# ---------------------------------------------------------------------------


class TestRetryAndRaces:
    async def test_retry_after_failed_publish(self, network, republisher):
        network.add(calendar_record())
        network.accept = False
        with pytest.raises(PublishFailedError):
            await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)

        network.accept = True
        result = await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        assert ["a", EVENT_COORDINATE] in result.attributes

    async def test_retry_after_landed_publish_reports_already_present(
        self, network, republisher
    ):
        network.add(calendar_record())
        await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)
        with pytest.raises(ReferenceAlreadyPresentError):
            await republisher.add_reference(CALENDAR_COORDINATE, EVENT_COORDINATE)

    async def test_sequential_edits_accumulate(self, network, republisher, clock):
        network.add(calendar_record())
        await republisher.add_reference(CALENDAR_COORDINATE, "31923:bob:one")
        await republisher.add_reference(CALENDAR_COORDINATE, "31923:bob:two")

        latest = await republisher.fetch_latest(CALENDAR_COORDINATE)
        assert reference_values(latest.attributes) == ["31923:bob:one", "31923:bob:two"]
        assert latest.created_at == NOW + 1

    async def test_concurrent_writers_last_write_wins(self, network, republisher):
        """Both versions land; the loser's edit is absent from the latest one."""
        network.add(calendar_record())
        network.query_delay = 0.01

        first, second = await asyncio.gather(
            republisher.add_reference(CALENDAR_COORDINATE, "31923:bob:one"),
            republisher.add_reference(CALENDAR_COORDINATE, "31923:bob:two"),
        )
        assert len(network.published) == 2

        network.query_delay = 0.0
        latest = await republisher.fetch_latest(CALENDAR_COORDINATE)
        assert latest.id == max(first.id, second.id)
        assert len(reference_values(latest.attributes)) == 1
