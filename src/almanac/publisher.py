"""Sign-and-broadcast helper shared by every write path."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from almanac.errors import AlmanacError, PublishFailedError
from almanac.network import (
    DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    RecordNetwork,
    RecordSigner,
    await_bounded,
)
from almanac.records import SignedRecord, UnsignedRecord

logger = logging.getLogger(__name__)

CLIENT_ATTRIBUTE = "client"


class RecordPublisher:
    """Build, sign, and broadcast records with a bounded publish step.

    When *client_name* is set, a ``["client", client_name]`` attribute is
    appended to outgoing records that do not already carry one.
    """

    def __init__(
        self,
        network: RecordNetwork,
        signer: RecordSigner,
        *,
        timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
        client_name: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._network = network
        self._signer = signer
        self._timeout_s = timeout_s
        self._client_name = client_name
        self._clock = clock

    @property
    def signer(self) -> RecordSigner:
        return self._signer

    def now(self) -> int:
        return int(self._clock())

    def build(
        self,
        type_code: int,
        content: str,
        attributes: Sequence[Sequence[str]],
        *,
        created_at: int | None = None,
    ) -> UnsignedRecord:
        outgoing = [list(attribute) for attribute in attributes]
        if self._client_name and not any(
            attribute and attribute[0] == CLIENT_ATTRIBUTE for attribute in outgoing
        ):
            outgoing.append([CLIENT_ATTRIBUTE, self._client_name])
        return UnsignedRecord(
            type_code=type_code,
            created_at=self.now() if created_at is None else created_at,
            content=content,
            attributes=outgoing,
        )

    async def publish(
        self,
        type_code: int,
        content: str,
        attributes: Sequence[Sequence[str]],
        *,
        created_at: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SignedRecord:
        """Sign and broadcast a new record; returns the signed record.

        Raises
        ------
        NotAuthenticatedError
            Propagated from the signer.
        MutationCancelledError
            When *cancel* fires before the broadcast completes.
        PublishFailedError
            When the broadcast is rejected, raises, or times out.
        """
        unsigned = self.build(type_code, content, attributes, created_at=created_at)
        signed = await self._signer.sign(unsigned)

        try:
            accepted = await await_bounded(
                self._network.publish(signed, timeout=self._timeout_s),
                timeout=self._timeout_s,
                cancel=cancel,
                stage="publish",
            )
        except AlmanacError:
            raise
        except TimeoutError as exc:
            raise PublishFailedError(f"no relay confirmed within {self._timeout_s:g}s") from exc
        except Exception as exc:
            raise PublishFailedError(str(exc) or type(exc).__name__) from exc

        if not accepted:
            raise PublishFailedError("rejected by all relays")

        logger.debug(
            "Published record id=%s type_code=%s created_at=%s",
            signed.id,
            signed.type_code,
            signed.created_at,
        )
        return signed
