"""Client assembly: one configured set of services over an injected network.

:func:`start_client` mirrors a process startup sequence:

1. Load ``almanac.toml``.
2. Configure logging.
3. Initialize telemetry.
4. Build the publishing, membership, and interaction services.

:class:`AlmanacClient` can also be built directly from an
:class:`~almanac.config.AlmanacConfig`, without the logging and telemetry side
effects, for embedding in an application that owns those.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import date
from pathlib import Path
from typing import Any

from almanac.cache import OptimisticReconciler, QueryCache
from almanac.calendars import (
    CalendarData,
    CalendarMembershipService,
    build_occurrence_records,
    list_user_calendars,
)
from almanac.config import AlmanacConfig, load_config
from almanac.core.logging import configure_logging
from almanac.core.telemetry import init_telemetry
from almanac.errors import NotAuthenticatedError
from almanac.interactions import EVENTS_CACHE_KEY, EventInteractions
from almanac.network import RecordNetwork, RecordSigner
from almanac.publisher import RecordPublisher
from almanac.records import SignedRecord
from almanac.recurrence import Occurrence, RecurrenceConfig, generate_occurrences
from almanac.republish import ContainerRepublisher

logger = logging.getLogger(__name__)


class AlmanacClient:
    """Services wired from one :class:`AlmanacConfig`."""

    def __init__(
        self,
        config: AlmanacConfig,
        network: RecordNetwork,
        signer: RecordSigner,
        *,
        cache: QueryCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.network = network
        self.cache = cache if cache is not None else QueryCache()
        self.publisher = RecordPublisher(
            network,
            signer,
            timeout_s=config.network.publish_timeout_s,
            client_name=config.client_name,
            clock=clock,
        )
        self.republisher = ContainerRepublisher(
            network, self.publisher, query_timeout_s=config.network.query_timeout_s
        )
        self.reconciler = OptimisticReconciler(self.cache)
        self.interactions = EventInteractions(
            network,
            self.publisher,
            self.reconciler,
            query_timeout_s=config.network.query_timeout_s,
        )
        self.memberships = CalendarMembershipService(self.republisher, self.cache)

    async def list_calendars(
        self,
        author_id: str | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[CalendarData]:
        """Calendars of *author_id*, or of the signed-in user when omitted."""
        author_id = author_id or self.publisher.signer.author_id
        if author_id is None:
            raise NotAuthenticatedError("User must be logged in to list calendars")
        return await list_user_calendars(
            self.network,
            author_id,
            type_code=self.config.calendar.type_code,
            timeout_s=self.config.network.query_timeout_s,
            cancel=cancel,
        )

    def expand(
        self,
        start_date: date | str,
        end_date: date | str,
        recurrence: RecurrenceConfig | Mapping[str, Any],
        *,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> list[Occurrence]:
        """Expand a series with the configured weekly seed policy."""
        return generate_occurrences(
            start_date,
            end_date,
            recurrence,
            start_time=start_time,
            end_time=end_time,
            seed_policy=self.config.recurrence.weekly_seed_policy,
        )

    async def publish_series(
        self,
        start_date: date | str,
        end_date: date | str,
        recurrence: RecurrenceConfig | Mapping[str, Any],
        *,
        series_slug: str,
        title: str,
        content: str = "",
        timezone: str = "UTC",
        start_time: str | None = None,
        end_time: str | None = None,
        extra_attributes: Sequence[Sequence[str]] = (),
    ) -> list[SignedRecord]:
        """Expand a series and publish one event record per occurrence.

        Records are published in occurrence order; the first failure stops
        the series and propagates, leaving earlier occurrences published.
        """
        occurrences = self.expand(
            start_date, end_date, recurrence, start_time=start_time, end_time=end_time
        )
        unsigned = build_occurrence_records(
            occurrences,
            series_slug=series_slug,
            title=title,
            content=content,
            timezone=timezone,
            created_at=self.publisher.now(),
            extra_attributes=extra_attributes,
        )
        published: list[SignedRecord] = []
        for record in unsigned:
            published.append(
                await self.interactions.publish_event(
                    record.type_code,
                    record.content,
                    record.attributes,
                    list_key=EVENTS_CACHE_KEY,
                )
            )
        logger.info("Published series %s with %d occurrence(s)", series_slug, len(published))
        return published


def start_client(
    config_dir: Path,
    network: RecordNetwork,
    signer: RecordSigner,
    *,
    cache: QueryCache | None = None,
    clock: Callable[[], float] = time.time,
) -> AlmanacClient:
    """Load configuration from *config_dir*, set up observability, and build a client."""
    # 1. Load config
    config = load_config(config_dir)

    # 2. Logging
    configure_logging(config.logging, client_name=config.name)
    logger.info("Loaded config for client: %s", config.name)

    # 3. Telemetry
    init_telemetry(f"almanac.{config.name}")

    # 4. Services
    return AlmanacClient(config, network, signer, cache=cache, clock=clock)
