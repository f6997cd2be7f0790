"""Per-entity sliding-window state.

Each window keeps an ordered sequence of (timestamp, amount) entries. Before
every read, entries older than ``now - duration`` are dropped, so counters
never include transactions outside the window. There are no fixed buckets.

Two backends share the ``EntityStateStore`` interface:

- ``InMemoryEntityStateStore`` keeps everything in process.
- ``RedisEntityStateStore`` keeps a per-entity hash + sorted set in Redis so
  several workers can share state. Redis errors surface as
  ``StateStoreUnavailableError`` so the pipeline can degrade.

Writers for the same entity must be serialized by the caller (the ingestion
pipeline holds a per-entity lock while it records and evaluates).
"""

import json
from abc import ABC, abstractmethod
from bisect import insort
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from .config import WindowConfig
from .errors import StateStoreUnavailableError
from .models import WindowCounters, WindowEntry, WindowSnapshot

logger = structlog.get_logger()


def build_counters(
    window: str,
    duration_seconds: int,
    entries: Iterable[WindowEntry],
    now: datetime,
) -> WindowCounters:
    """Aggregate the entries that fall inside ``[now - duration, now]``."""
    cutoff = now - timedelta(seconds=duration_seconds)
    in_window = tuple(e for e in entries if cutoff <= e.timestamp <= now)
    merchants = {e.merchant_category for e in in_window if e.merchant_category}
    return WindowCounters(
        window=window,
        duration_seconds=duration_seconds,
        count=len(in_window),
        total_amount=sum(e.amount for e in in_window),
        distinct_merchants=len(merchants),
        entries=in_window,
    )


class EntityStateStore(ABC):
    """Rolling per-entity window counters."""

    def __init__(self, config: WindowConfig | None = None) -> None:
        self._config = config or WindowConfig()

    @property
    def windows(self) -> dict[str, int]:
        return dict(self._config.durations)

    @abstractmethod
    async def record_transaction(
        self,
        entity_id: str,
        transaction_id: str,
        amount: int,
        timestamp: datetime,
        merchant_category: str | None = None,
    ) -> WindowSnapshot:
        """Record a transaction and return the snapshot that includes it.

        Recording a transaction id already held for the entity is a no-op
        and returns the current snapshot with ``duplicate`` set.
        """

    @abstractmethod
    async def contains(self, entity_id: str, transaction_id: str) -> bool:
        """Whether the transaction id is already recorded for the entity."""

    @abstractmethod
    async def get_windows(self, entity_id: str, now: datetime) -> WindowSnapshot:
        """Snapshot of all window counters for ``entity_id`` as of ``now``."""

    @abstractmethod
    async def last_timestamp(self, entity_id: str) -> datetime | None:
        """Timestamp of the latest recorded transaction for the entity."""

    @abstractmethod
    async def sweep(self, now: datetime) -> int:
        """Drop entities idle longer than the longest window. Returns count."""

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


@dataclass
class _EntityState:
    windows: dict[str, deque[WindowEntry]] = field(default_factory=dict)
    seen: dict[str, datetime] = field(default_factory=dict)
    last_timestamp: datetime | None = None


class InMemoryEntityStateStore(EntityStateStore):
    def __init__(self, config: WindowConfig | None = None) -> None:
        super().__init__(config)
        self._entities: dict[str, _EntityState] = {}

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    async def record_transaction(
        self,
        entity_id: str,
        transaction_id: str,
        amount: int,
        timestamp: datetime,
        merchant_category: str | None = None,
    ) -> WindowSnapshot:
        state = self._entities.setdefault(entity_id, _EntityState())

        if transaction_id in state.seen:
            logger.debug(
                "duplicate_transaction_skipped",
                entity_id=entity_id,
                transaction_id=transaction_id,
            )
            return self._snapshot(
                entity_id, state, max(timestamp, state.last_timestamp), duplicate=True
            )

        entry = WindowEntry(
            transaction_id=transaction_id,
            timestamp=timestamp,
            amount=amount,
            merchant_category=merchant_category,
        )
        max_entries = self._config.max_entries_per_window
        for name in self._config.durations:
            seq = state.windows.setdefault(name, deque())
            if not seq or timestamp >= seq[-1].timestamp:
                seq.append(entry)
            else:
                # Late arrival: keep the sequence ordered
                ordered = list(seq)
                insort(ordered, entry, key=lambda e: e.timestamp)
                state.windows[name] = seq = deque(ordered)
            if len(seq) > max_entries:
                dropped = seq.popleft()
                logger.warning(
                    "window_entries_truncated",
                    entity_id=entity_id,
                    window=name,
                    max_entries=max_entries,
                    dropped_transaction_id=dropped.transaction_id,
                )

        state.seen[transaction_id] = timestamp
        if state.last_timestamp is None or timestamp > state.last_timestamp:
            state.last_timestamp = timestamp

        return self._snapshot(entity_id, state, state.last_timestamp)

    async def contains(self, entity_id: str, transaction_id: str) -> bool:
        state = self._entities.get(entity_id)
        return state is not None and transaction_id in state.seen

    async def get_windows(self, entity_id: str, now: datetime) -> WindowSnapshot:
        state = self._entities.get(entity_id)
        if state is None:
            return WindowSnapshot.empty(entity_id, now)
        return self._snapshot(entity_id, state, now)

    async def last_timestamp(self, entity_id: str) -> datetime | None:
        state = self._entities.get(entity_id)
        return state.last_timestamp if state else None

    async def sweep(self, now: datetime) -> int:
        cutoff = now - timedelta(seconds=self._config.longest_seconds)
        idle = [
            entity_id
            for entity_id, state in self._entities.items()
            if state.last_timestamp is None or state.last_timestamp < cutoff
        ]
        for entity_id in idle:
            del self._entities[entity_id]
        if idle:
            logger.info("entity_state_swept", evicted=len(idle), remaining=len(self._entities))
        return len(idle)

    def _snapshot(
        self, entity_id: str, state: _EntityState, now: datetime, duplicate: bool = False
    ) -> WindowSnapshot:
        self._prune(state, now)
        windows = {
            name: build_counters(name, duration, state.windows.get(name, ()), now)
            for name, duration in self._config.durations.items()
        }
        return WindowSnapshot(entity_id=entity_id, as_of=now, windows=windows, duplicate=duplicate)

    def _prune(self, state: _EntityState, now: datetime) -> None:
        for name, duration in self._config.durations.items():
            seq = state.windows.get(name)
            if not seq:
                continue
            cutoff = now - timedelta(seconds=duration)
            while seq and seq[0].timestamp < cutoff:
                seq.popleft()

        longest_cutoff = now - timedelta(seconds=self._config.longest_seconds)
        expired = [tid for tid, ts in state.seen.items() if ts < longest_cutoff]
        for tid in expired:
            del state.seen[tid]


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


def _to_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


# KEYS: txns hash, idx zset
# ARGV: transaction_id, JSON entry, score (epoch ms), expiry cutoff (epoch ms), ttl seconds
# Returns 1 when recorded, 0 when the transaction id is already held.
RECORD_SCRIPT = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', '(' .. ARGV[4])
for _, tid in ipairs(expired) do
    redis.call('ZREM', KEYS[2], tid)
    redis.call('HDEL', KEYS[1], tid)
end
redis.call('EXPIRE', KEYS[1], ARGV[5])
redis.call('EXPIRE', KEYS[2], ARGV[5])
return 1
"""


class RedisEntityStateStore(EntityStateStore):
    """Redis-backed windows.

    Per entity:
      ``{prefix}:{entity_id}:txns``  hash  transaction_id -> JSON entry
      ``{prefix}:{entity_id}:idx``   zset  transaction_id scored by epoch ms

    Both keys are written by one server-side script, so a transaction is
    either fully recorded or not at all. Both expire after the longest
    window, which replaces ``sweep``.
    """

    def __init__(
        self,
        client,
        config: WindowConfig | None = None,
        key_prefix: str = "risk:entity",
    ) -> None:
        super().__init__(config)
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, config: WindowConfig | None = None) -> "RedisEntityStateStore":
        return cls(aioredis.from_url(url, decode_responses=True), config=config)

    def _keys(self, entity_id: str) -> tuple[str, str]:
        base = f"{self._prefix}:{entity_id}"
        return f"{base}:txns", f"{base}:idx"

    async def record_transaction(
        self,
        entity_id: str,
        transaction_id: str,
        amount: int,
        timestamp: datetime,
        merchant_category: str | None = None,
    ) -> WindowSnapshot:
        txns_key, idx_key = self._keys(entity_id)
        ts_ms = _to_ms(timestamp)
        payload = json.dumps(
            {
                "transaction_id": transaction_id,
                "ts": ts_ms,
                "amount": amount,
                "merchant_category": merchant_category,
            }
        )
        longest = self._config.longest_seconds
        try:
            added = await self._client.eval(
                RECORD_SCRIPT,
                2,
                txns_key,
                idx_key,
                transaction_id,
                payload,
                ts_ms,
                ts_ms - longest * 1000,
                longest,
            )
            last = await self.last_timestamp(entity_id)
        except (RedisError, OSError) as e:
            logger.warning("state_store_unavailable", entity_id=entity_id, error=str(e))
            raise StateStoreUnavailableError(str(e)) from e

        duplicate = not int(added)
        if duplicate:
            logger.debug(
                "duplicate_transaction_skipped",
                entity_id=entity_id,
                transaction_id=transaction_id,
            )
        now = max(timestamp, last) if last else timestamp
        snapshot = await self.get_windows(entity_id, now)
        return replace(snapshot, duplicate=duplicate) if duplicate else snapshot

    async def contains(self, entity_id: str, transaction_id: str) -> bool:
        txns_key, _ = self._keys(entity_id)
        try:
            return bool(await self._client.hexists(txns_key, transaction_id))
        except (RedisError, OSError) as e:
            logger.warning("state_store_unavailable", entity_id=entity_id, error=str(e))
            raise StateStoreUnavailableError(str(e)) from e

    async def get_windows(self, entity_id: str, now: datetime) -> WindowSnapshot:
        txns_key, idx_key = self._keys(entity_id)
        lower_ms = _to_ms(now) - self._config.longest_seconds * 1000
        try:
            ids = await self._client.zrangebyscore(idx_key, lower_ms, _to_ms(now))
            raw = await self._client.hmget(txns_key, ids) if ids else []
        except (RedisError, OSError) as e:
            logger.warning("state_store_unavailable", entity_id=entity_id, error=str(e))
            raise StateStoreUnavailableError(str(e)) from e

        entries = [self._decode(item) for item in raw if item]
        entries.sort(key=lambda e: e.timestamp)
        max_entries = self._config.max_entries_per_window
        windows = {}
        for name, duration in self._config.durations.items():
            counters = build_counters(name, duration, entries, now)
            if counters.count > max_entries:
                counters = build_counters(name, duration, counters.entries[-max_entries:], now)
            windows[name] = counters
        return WindowSnapshot(entity_id=entity_id, as_of=now, windows=windows)

    async def last_timestamp(self, entity_id: str) -> datetime | None:
        _, idx_key = self._keys(entity_id)
        try:
            latest = await self._client.zrange(idx_key, -1, -1, withscores=True)
        except (RedisError, OSError) as e:
            raise StateStoreUnavailableError(str(e)) from e
        if not latest:
            return None
        _, score = latest[0]
        return datetime.fromtimestamp(score / 1000, tz=UTC)

    async def sweep(self, now: datetime) -> int:
        # Key TTLs evict idle entities
        return 0

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _decode(raw: str) -> WindowEntry:
        data = json.loads(raw)
        return WindowEntry(
            transaction_id=data["transaction_id"],
            timestamp=datetime.fromtimestamp(data["ts"] / 1000, tz=UTC),
            amount=int(data["amount"]),
            merchant_category=data.get("merchant_category"),
        )
