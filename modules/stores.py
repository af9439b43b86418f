"""
Attribution and Dedup Stores

Time-bounded in-memory stores behind small abstract interfaces, so the
pipeline can be handed an external cache later without touching its logic.

- AttributionStore: attribution key -> AttributionRecord, with a PII index
  for reverse lookup when a booking carries no explicit key
- DedupStore: outbound event ids already delivered

Both expire lazily on read, and writes sweep the whole store at most once per
sweep interval so keys that are never read again still go away. Sync FastAPI
handlers run in a thread pool, so every mutation happens under a lock.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple
import threading
import time

from loguru import logger

from models.conversion import AttributionRecord
from modules.normalizer import hash_name_combo

Clock = Callable[[], float]

DEFAULT_SWEEP_INTERVAL = 300


class AttributionStore(ABC):
    """Attribution key -> record, expiring after the attribution window"""

    @abstractmethod
    def put(self, key: str, record: AttributionRecord) -> AttributionRecord:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[AttributionRecord]:
        pass

    @abstractmethod
    def find_by_identity(
        self,
        em: Optional[str] = None,
        ph: Optional[str] = None,
        name_combo: Optional[str] = None
    ) -> Optional[str]:
        pass


class DedupStore(ABC):
    """Outbound event ids already delivered, expiring after the dedup window"""

    @abstractmethod
    def has_been_sent(self, event_id: str) -> bool:
        pass

    @abstractmethod
    def mark_sent(self, event_id: str) -> None:
        pass

    @abstractmethod
    def reserve(self, event_id: str) -> bool:
        pass

    @abstractmethod
    def release(self, event_id: str) -> None:
        pass


def _index_keys(record: AttributionRecord) -> Dict[str, str]:
    """PII index entries for a record, keyed by field kind"""
    keys = {}
    if record.em:
        keys["em"] = record.em
    if record.ph:
        keys["ph"] = record.ph
    combo = hash_name_combo(record.fn, record.ln)
    if combo:
        keys["name"] = combo
    return keys


class InMemoryAttributionStore(AttributionStore):
    """Process-local attribution store; contents are lost on restart"""

    def __init__(
        self,
        window_seconds: int,
        clock: Clock = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    ):
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._records: Dict[str, AttributionRecord] = {}
        # (kind, token) -> {attribution key: created_at}
        self._pii_index: Dict[Tuple[str, str], Dict[str, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _expired(self, created_at: float, now: float) -> bool:
        return now - created_at > self.window_seconds

    def put(self, key: str, record: AttributionRecord) -> AttributionRecord:
        """Insert or overwrite the record for key, stamped with the current time"""
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep()
        stored = record.model_copy(update={"created_at": now})
        with self._lock:
            self._records[key] = stored
            for kind, token in _index_keys(stored).items():
                self._pii_index.setdefault((kind, token), {})[key] = now
        logger.debug(f"Stored attribution record for key {key}")
        return stored

    def get(self, key: str) -> Optional[AttributionRecord]:
        """Return the record if it is still inside the window; evict it otherwise"""
        if not key:
            return None
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if self._expired(record.created_at, now):
                del self._records[key]
                logger.debug(f"Attribution record for key {key} expired")
                return None
            return record

    def find_by_identity(
        self,
        em: Optional[str] = None,
        ph: Optional[str] = None,
        name_combo: Optional[str] = None
    ) -> Optional[str]:
        """
        Most recently created attribution key matching any supplied token.

        Index rows older than the window are dropped. A row whose key has
        since been overwritten with different PII does not match.
        """
        wanted = [(kind, token) for kind, token in (("em", em), ("ph", ph), ("name", name_combo)) if token]
        if not wanted:
            return None

        now = self._clock()
        best_key = None
        best_created = float("-inf")
        with self._lock:
            for index_key in wanted:
                candidates = self._pii_index.get(index_key)
                if not candidates:
                    continue
                for key, created_at in list(candidates.items()):
                    if self._expired(created_at, now):
                        del candidates[key]
                        continue
                    record = self._records.get(key)
                    if record is None or _index_keys(record).get(index_key[0]) != index_key[1]:
                        continue
                    if self._expired(record.created_at, now):
                        continue
                    if record.created_at > best_created:
                        best_key, best_created = key, record.created_at
                if not candidates:
                    del self._pii_index[index_key]
        return best_key

    def sweep(self) -> int:
        """Evict every expired record and index row; returns records evicted"""
        now = self._clock()
        with self._lock:
            self._last_sweep = now
            stale = [k for k, r in self._records.items() if self._expired(r.created_at, now)]
            for key in stale:
                del self._records[key]
            for index_key in list(self._pii_index):
                candidates = self._pii_index[index_key]
                for key, created_at in list(candidates.items()):
                    if self._expired(created_at, now):
                        del candidates[key]
                if not candidates:
                    del self._pii_index[index_key]
        if stale:
            logger.info(f"Swept {len(stale)} expired attribution records")
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryDedupStore(DedupStore):
    """Process-local dedup store; contents are lost on restart"""

    def __init__(
        self,
        window_seconds: int,
        clock: Clock = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    ):
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sent: Dict[str, float] = {}
        # event id -> time the delivery claim was taken
        self._in_flight: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def _sent_locked(self, event_id: str, now: float) -> bool:
        sent_at = self._sent.get(event_id)
        if sent_at is None:
            return False
        if now - sent_at > self.window_seconds:
            del self._sent[event_id]
            return False
        return True

    def _in_flight_locked(self, event_id: str, now: float) -> bool:
        claimed_at = self._in_flight.get(event_id)
        if claimed_at is None:
            return False
        if now - claimed_at > self.window_seconds:
            del self._in_flight[event_id]
            logger.warning(f"Abandoned delivery claim for event {event_id} expired")
            return False
        return True

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep()

    def has_been_sent(self, event_id: str) -> bool:
        now = self._clock()
        with self._lock:
            return self._sent_locked(event_id, now)

    def mark_sent(self, event_id: str) -> None:
        now = self._clock()
        self._maybe_sweep(now)
        with self._lock:
            self._sent[event_id] = now
            self._in_flight.pop(event_id, None)

    def reserve(self, event_id: str) -> bool:
        """Claim event_id for delivery; False if already sent or in flight"""
        now = self._clock()
        self._maybe_sweep(now)
        with self._lock:
            if self._in_flight_locked(event_id, now) or self._sent_locked(event_id, now):
                return False
            self._in_flight[event_id] = now
            return True

    def release(self, event_id: str) -> None:
        """Drop an in-flight claim after a failed delivery"""
        with self._lock:
            self._in_flight.pop(event_id, None)

    def sweep(self) -> int:
        """Evict expired sent ids and abandoned claims; returns sent ids evicted"""
        now = self._clock()
        with self._lock:
            self._last_sweep = now
            stale = [k for k, t in self._sent.items() if now - t > self.window_seconds]
            for key in stale:
                del self._sent[key]
            for key in [k for k, t in self._in_flight.items() if now - t > self.window_seconds]:
                del self._in_flight[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sent)
