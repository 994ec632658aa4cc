"""Comments, reactions, and new events, posted optimistically."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from almanac.cache import CacheKey, Fetcher, OptimisticReconciler, QueryCache, is_temporary_id
from almanac.coordinates import is_replaceable_type_code, make_coordinate
from almanac.errors import NotAuthenticatedError, QueryFailedError
from almanac.network import DEFAULT_QUERY_TIMEOUT_SECONDS, RecordNetwork, query_records
from almanac.publisher import RecordPublisher
from almanac.records import RecordFilter, SignedRecord

logger = logging.getLogger(__name__)

COMMENT_TYPE_CODE = 1111
REACTION_TYPE_CODE = 7
LIKE_CONTENT = "+"
COMMENTS_LIMIT = 100
REACTIONS_LIMIT = 500
OPTIMISTIC_SIGNATURE = ""

EVENTS_CACHE_KEY = ("events",)


@dataclass(frozen=True)
class CommentTarget:
    """The event being commented on."""

    event_id: str
    type_code: int | None = None
    author_id: str | None = None
    slug: str | None = None

    @classmethod
    def for_record(cls, record: SignedRecord) -> CommentTarget:
        return cls(
            event_id=record.id,
            type_code=record.type_code,
            author_id=record.author_id,
            slug=record.slug,
        )

    @property
    def coordinate(self) -> str | None:
        if (
            self.type_code is None
            or not is_replaceable_type_code(self.type_code)
            or not self.author_id
            or not self.slug
        ):
            return None
        return make_coordinate(self.type_code, self.author_id, self.slug)


def comment_attributes(target: CommentTarget) -> list[list[str]]:
    coordinate = target.coordinate
    if coordinate is not None:
        attributes = [
            ["e", target.event_id],
            ["a", coordinate],
            ["E", target.event_id],
            ["A", coordinate],
            ["k", str(target.type_code)],
        ]
    else:
        kind = str(target.type_code) if target.type_code is not None else "1"
        attributes = [["e", target.event_id], ["E", target.event_id], ["k", kind]]
    if target.author_id:
        attributes.append(["p", target.author_id])
    return attributes


def comments_cache_key(target: CommentTarget) -> CacheKey:
    return ("comments", target.event_id, target.coordinate)


def reactions_cache_key(target: CommentTarget, comment_ids: Sequence[str]) -> CacheKey:
    return ("reactions", target.event_id, target.coordinate, *comment_ids)


def _references(record: SignedRecord, comment_id: str) -> bool:
    return any(len(a) >= 2 and a[0] == "e" and a[1] == comment_id for a in record.attributes)


def like_count(reactions: Sequence[SignedRecord], comment_id: str) -> int:
    return sum(
        1 for r in reactions if r.content == LIKE_CONTENT and _references(r, comment_id)
    )


def has_liked(reactions: Sequence[SignedRecord], comment_id: str, author_id: str | None) -> bool:
    if author_id is None:
        return False
    return any(
        r.author_id == author_id and r.content == LIKE_CONTENT and _references(r, comment_id)
        for r in reactions
    )


def _by_created_at(record: SignedRecord) -> int:
    return record.created_at


def _newest_first(record: SignedRecord) -> int:
    return -record.created_at


class EventInteractions:
    """Fetch and post comments, reactions, and events through the shared query cache."""

    def __init__(
        self,
        network: RecordNetwork,
        publisher: RecordPublisher,
        reconciler: OptimisticReconciler,
        *,
        query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_SECONDS,
    ) -> None:
        self._network = network
        self._publisher = publisher
        self._reconciler = reconciler
        self._query_timeout_s = query_timeout_s

    @property
    def cache(self) -> QueryCache:
        return self._reconciler.cache

    async def _query(self, filters: list[RecordFilter], stage: str) -> list[SignedRecord]:
        try:
            return await query_records(
                self._network, filters, timeout=self._query_timeout_s, stage=stage
            )
        except TimeoutError as exc:
            raise QueryFailedError(str(exc)) from exc

    def _require_author(self, action: str) -> str:
        author_id = self._publisher.signer.author_id
        if author_id is None:
            raise NotAuthenticatedError(f"User must be logged in to {action}")
        return author_id

    # -- comments ----------------------------------------------------------

    async def fetch_comments(self, target: CommentTarget) -> list[SignedRecord]:
        """Comments on *target* by id and, for replaceable targets, by coordinate."""
        filters = [
            RecordFilter(
                type_codes=[COMMENT_TYPE_CODE],
                attribute_values={"e": [target.event_id]},
                limit=COMMENTS_LIMIT,
            )
        ]
        if target.coordinate is not None:
            filters.append(
                RecordFilter(
                    type_codes=[COMMENT_TYPE_CODE],
                    attribute_values={"a": [target.coordinate]},
                    limit=COMMENTS_LIMIT,
                )
            )
        records = await self._query(filters, "fetch comments")

        unique: dict[str, SignedRecord] = {}
        for record in records:
            unique.setdefault(record.id, record)
        return sorted(unique.values(), key=_by_created_at)

    async def load_comments(self, target: CommentTarget) -> tuple[SignedRecord, ...]:
        return await self.cache.refetch(
            comments_cache_key(target), lambda: self.fetch_comments(target)
        )

    async def post_comment(self, target: CommentTarget, content: str) -> SignedRecord:
        """Publish a comment, showing it in the cached thread until confirmed."""
        author_id = self._require_author("comment")
        attributes = comment_attributes(target)
        created_at = self._publisher.now()

        def build(temp_id: str) -> SignedRecord:
            return SignedRecord(
                id=temp_id,
                author_id=author_id,
                type_code=COMMENT_TYPE_CODE,
                created_at=created_at,
                content=content,
                attributes=attributes,
                signature=OPTIMISTIC_SIGNATURE,
            )

        return await self._reconciler.run(
            comments_cache_key(target),
            build,
            lambda: self._publisher.publish(
                COMMENT_TYPE_CODE, content, attributes, created_at=created_at
            ),
            order_by=_by_created_at,
            refetch=lambda: self.fetch_comments(target),
        )

    # -- reactions ---------------------------------------------------------

    async def fetch_reactions(self, comment_ids: Sequence[str]) -> list[SignedRecord]:
        if not comment_ids:
            return []
        return await self._query(
            [
                RecordFilter(
                    type_codes=[REACTION_TYPE_CODE],
                    attribute_values={"e": list(comment_ids)},
                    limit=REACTIONS_LIMIT,
                )
            ],
            "fetch reactions",
        )

    async def load_reactions(
        self, target: CommentTarget, comment_ids: Sequence[str]
    ) -> tuple[SignedRecord, ...]:
        return await self.cache.refetch(
            reactions_cache_key(target, comment_ids),
            lambda: self.fetch_reactions(comment_ids),
        )

    async def like_comment(self, target: CommentTarget, comment_id: str) -> SignedRecord | None:
        """Like *comment_id*; ``None`` when the current user already liked it."""
        author_id = self._require_author("react")
        comments = self.cache.get(comments_cache_key(target)) or ()
        comment_ids = [comment.id for comment in comments]
        if comment_id not in comment_ids:
            comment_ids.append(comment_id)
        key = reactions_cache_key(target, comment_ids)

        if has_liked(self.cache.get(key) or (), comment_id, author_id):
            return None

        comment_author = next((c.author_id for c in comments if c.id == comment_id), None)
        attributes = [["e", comment_id]]
        if comment_author:
            attributes.append(["p", comment_author])
        created_at = self._publisher.now()

        def build(temp_id: str) -> SignedRecord:
            return SignedRecord(
                id=temp_id,
                author_id=author_id,
                type_code=REACTION_TYPE_CODE,
                created_at=created_at,
                content=LIKE_CONTENT,
                attributes=attributes,
                signature=OPTIMISTIC_SIGNATURE,
            )

        return await self._reconciler.run(
            key,
            build,
            lambda: self._publisher.publish(
                REACTION_TYPE_CODE, LIKE_CONTENT, attributes, created_at=created_at
            ),
            refetch=lambda: self.fetch_reactions(comment_ids),
        )

    # -- events ------------------------------------------------------------

    async def publish_event(
        self,
        type_code: int,
        content: str,
        attributes: Sequence[Sequence[str]],
        *,
        list_key: CacheKey = EVENTS_CACHE_KEY,
        refetch: Fetcher | None = None,
    ) -> SignedRecord:
        """Publish an event record, showing it at the top of *list_key* until confirmed.

        Once the network accepts the record, every cached list sharing the
        first element of *list_key* receives it through
        :func:`insert_published_event`.  A failed publish removes only the
        tentative entry.
        """
        author_id = self._require_author("publish events")
        attributes = [list(attribute) for attribute in attributes]
        created_at = self._publisher.now()
        temp_ids: list[str] = []

        def build(temp_id: str) -> SignedRecord:
            temp_ids.append(temp_id)
            return SignedRecord(
                id=temp_id,
                author_id=author_id,
                type_code=type_code,
                created_at=created_at,
                content=content,
                attributes=attributes,
                signature=OPTIMISTIC_SIGNATURE,
            )

        async def publish() -> SignedRecord:
            record = await self._publisher.publish(
                type_code, content, attributes, created_at=created_at
            )
            insert_published_event(self.cache, list_key[:1], record, replaces=temp_ids[0])
            return record

        return await self._reconciler.run(
            list_key,
            build,
            publish,
            order_by=_newest_first,
            refetch=refetch,
        )


def _same_coordinate(existing: SignedRecord, record: SignedRecord) -> bool:
    return (
        record.slug is not None
        and existing.type_code == record.type_code
        and existing.author_id == record.author_id
        and existing.slug == record.slug
    )


def insert_published_event(
    cache: QueryCache,
    list_prefix: CacheKey,
    record: SignedRecord,
    *,
    replaces: str | None = None,
) -> None:
    """Reflect a freshly published event in every cached list under *list_prefix*.

    The first settled entry with the same coordinate is replaced in place;
    otherwise the record is prepended.  Other versions of the coordinate and
    the tentative entry *replaces* are dropped.  The lists are then marked
    stale.
    """

    def _merge(current: tuple[SignedRecord, ...] | None) -> list[SignedRecord]:
        kept: list[SignedRecord] = []
        position: int | None = None
        for existing in current or ():
            if existing.id == replaces:
                continue
            if _same_coordinate(existing, record):
                if position is None and not is_temporary_id(existing.id):
                    position = len(kept)
                continue
            kept.append(existing)
        kept.insert(position or 0, record)
        return kept

    for key in cache.keys():
        if key[: len(list_prefix)] == list_prefix:
            cache.update(key, _merge)
    cache.invalidate(list_prefix, prefix=True)
