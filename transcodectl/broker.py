import logging
from typing import Any, Dict, Iterable, List, Tuple

import redis
from redis.exceptions import RedisError, ResponseError

from .models import StreamEntry

logger = logging.getLogger(__name__)

# Cursor that starts an XAUTOCLAIM scan; the broker hands it back once the
# whole pending list has been walked.
CLAIM_START = "0-0"
# Offset a new group reads from: the beginning of the stream.
GROUP_ORIGIN = "0"


class BrokerError(RuntimeError):
    """The broker could not be reached or rejected the command."""


class BrokerClient:
    """Explicitly constructed handle on one Redis connection pool.

    The dispatcher and each scheduler receive the same instance; nothing in
    the package reaches for a module-level client.
    """

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 10.0) -> "BrokerClient":
        # socket_timeout must outlive the blocking read below
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            health_check_interval=30,
        )
        return cls(client)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            raise BrokerError(f"Redis ping failed: {exc}") from exc

    def append(self, stream: str, fields: Dict[str, Any]) -> str:
        """Append an entry and return the broker-assigned id."""

        try:
            return self._client.xadd(stream, fields, id="*")
        except RedisError as exc:
            raise BrokerError(f"XADD {stream} failed: {exc}") from exc

    def ensure_group(self, stream: str, group: str) -> bool:
        """Create ``group`` at the stream origin. Returns False if it already existed."""

        try:
            self._client.xgroup_create(stream, group, id=GROUP_ORIGIN, mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" in str(exc):
                logger.debug("Consumer group %s on %s already exists", group, stream)
                return False
            raise BrokerError(f"XGROUP CREATE {stream} {group} failed: {exc}") from exc
        except RedisError as exc:
            raise BrokerError(f"XGROUP CREATE {stream} {group} failed: {exc}") from exc
        logger.info("Created consumer group %s on %s", group, stream)
        return True

    def read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        count: int,
        block_ms: int,
    ) -> List[StreamEntry]:
        """Read entries never delivered to ``group``; empty list on timeout."""

        try:
            response = self._client.xreadgroup(
                group,
                consumer,
                {stream: ">"},
                count=count,
                block=block_ms,
            )
        except RedisError as exc:
            raise BrokerError(f"XREADGROUP {stream} {group} failed: {exc}") from exc
        if not response:
            return []
        # RESP2 answers [[stream, messages]], RESP3 answers {stream: [messages]}
        if isinstance(response, dict):
            batches: Iterable[Any] = (batch for value in response.values() for batch in value)
        else:
            batches = (messages for _name, messages in response)
        entries: List[StreamEntry] = []
        for messages in batches:
            entries.extend(_to_entries(messages))
        return entries

    def auto_claim(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        min_idle_ms: int,
        cursor: str = CLAIM_START,
        count: int,
    ) -> Tuple[List[StreamEntry], str]:
        """Take over entries idle for at least ``min_idle_ms``.

        Returns the claimed entries and the cursor to continue the scan from.
        """

        try:
            response = self._client.xautoclaim(
                stream,
                group,
                consumer,
                min_idle_ms,
                start_id=cursor,
                count=count,
            )
        except RedisError as exc:
            raise BrokerError(f"XAUTOCLAIM {stream} {group} failed: {exc}") from exc
        if not response:
            return [], CLAIM_START
        next_cursor = response[0] or CLAIM_START
        return _to_entries(response[1] or []), next_cursor

    def ack(self, stream: str, group: str, entry_id: str) -> bool:
        """Drop ``entry_id`` from the pending list.

        Returns False when the entry was not pending (already acknowledged or
        unknown); that is not an error.
        """

        try:
            return int(self._client.xack(stream, group, entry_id)) > 0
        except RedisError as exc:
            raise BrokerError(f"XACK {stream} {group} {entry_id} failed: {exc}") from exc

    def pending_count(self, stream: str, group: str) -> int:
        try:
            summary = self._client.xpending(stream, group)
        except RedisError as exc:
            raise BrokerError(f"XPENDING {stream} {group} failed: {exc}") from exc
        return int((summary or {}).get("pending", 0))


def _to_entries(messages: Iterable[Any]) -> List[StreamEntry]:
    entries: List[StreamEntry] = []
    for message in messages:
        if not message:
            continue
        entry_id, fields = message[0], message[1]
        if entry_id is None:
            # XAUTOCLAIM on Redis 6.2 reports trimmed entries as nil
            continue
        entries.append(StreamEntry(entry_id=entry_id, fields=dict(fields or {})))
    return entries

