"""Tests for the attribution and dedup stores."""

import hashlib

from models.conversion import AttributionRecord
from modules.normalizer import hash_name_combo
from modules.stores import InMemoryAttributionStore, InMemoryDedupStore

from tests.conftest import FakeClock

WINDOW = 24 * 3600


def sha(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class TestAttributionStore:
    """Test InMemoryAttributionStore get/put and expiry."""

    def test_put_stamps_created_at(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        stored = store.put("abc123", AttributionRecord(fbp="fb.1.111.222"))
        assert stored.created_at == clock.now
        assert store.get("abc123").fbp == "fb.1.111.222"

    def test_record_retrievable_just_inside_window(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("abc123", AttributionRecord(fbp="fb.1.111.222"))
        clock.advance(WINDOW - 1)
        assert store.get("abc123") is not None

    def test_record_gone_just_outside_window(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("abc123", AttributionRecord(fbp="fb.1.111.222"))
        clock.advance(WINDOW + 1)
        assert store.get("abc123") is None
        assert len(store) == 0

    def test_put_overwrites(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("abc123", AttributionRecord(fbp="fb.1.111.222"))
        clock.advance(60)
        store.put("abc123", AttributionRecord(fbc="fb.1.333.clickid"))
        record = store.get("abc123")
        assert record.fbp is None
        assert record.fbc == "fb.1.333.clickid"
        assert record.created_at == clock.now

    def test_missing_key(self):
        store = InMemoryAttributionStore(WINDOW, clock=FakeClock())
        assert store.get("nope") is None
        assert store.get("") is None

    def test_sweep_evicts_expired(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("old", AttributionRecord(fbp="fb.1.1.1", em=sha("a@b.co")))
        clock.advance(WINDOW - 10)
        store.put("new", AttributionRecord(fbp="fb.1.2.2"))
        clock.advance(20)
        assert store.sweep() == 1
        assert len(store) == 1
        assert store.find_by_identity(em=sha("a@b.co")) is None


class TestPiiIndex:
    """Test find_by_identity."""

    def test_match_by_email(self):
        store = InMemoryAttributionStore(WINDOW, clock=FakeClock())
        store.put("abc123", AttributionRecord(fbp="fb.1.1.1", em=sha("jane@example.com")))
        assert store.find_by_identity(em=sha("jane@example.com")) == "abc123"

    def test_match_by_phone_or_name(self):
        store = InMemoryAttributionStore(WINDOW, clock=FakeClock())
        store.put("k1", AttributionRecord(fbp="fb.1.1.1", ph=sha("+15145550199")))
        store.put("k2", AttributionRecord(fbp="fb.1.2.2", fn=sha("jane"), ln=sha("doe")))
        assert store.find_by_identity(ph=sha("+15145550199")) == "k1"
        assert store.find_by_identity(name_combo=hash_name_combo(sha("jane"), sha("doe"))) == "k2"

    def test_most_recent_candidate_wins(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("first", AttributionRecord(fbp="fb.1.1.1", em=sha("jane@example.com")))
        clock.advance(300)
        store.put("second", AttributionRecord(fbp="fb.1.2.2", ph=sha("+15145550199")))
        assert store.find_by_identity(em=sha("jane@example.com"), ph=sha("+15145550199")) == "second"

    def test_expired_candidates_never_returned(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(WINDOW, clock=clock)
        store.put("abc123", AttributionRecord(fbp="fb.1.1.1", em=sha("jane@example.com")))
        clock.advance(WINDOW + 1)
        assert store.find_by_identity(em=sha("jane@example.com")) is None

    def test_overwritten_key_no_longer_matches_old_pii(self):
        store = InMemoryAttributionStore(WINDOW, clock=FakeClock())
        store.put("abc123", AttributionRecord(fbp="fb.1.1.1", em=sha("old@example.com")))
        store.put("abc123", AttributionRecord(fbp="fb.1.1.1", em=sha("new@example.com")))
        assert store.find_by_identity(em=sha("old@example.com")) is None
        assert store.find_by_identity(em=sha("new@example.com")) == "abc123"

    def test_no_tokens_supplied(self):
        store = InMemoryAttributionStore(WINDOW, clock=FakeClock())
        assert store.find_by_identity() is None


class TestDedupStore:
    """Test InMemoryDedupStore."""

    def test_mark_then_has_been_sent(self):
        store = InMemoryDedupStore(WINDOW, clock=FakeClock())
        assert store.has_been_sent("abc123") is False
        store.mark_sent("abc123")
        assert store.has_been_sent("abc123") is True

    def test_mark_sent_is_idempotent(self):
        store = InMemoryDedupStore(WINDOW, clock=FakeClock())
        store.mark_sent("abc123")
        store.mark_sent("abc123")
        assert len(store) == 1

    def test_expires_after_window(self):
        clock = FakeClock()
        store = InMemoryDedupStore(WINDOW, clock=clock)
        store.mark_sent("abc123")
        clock.advance(WINDOW + 1)
        assert store.has_been_sent("abc123") is False

    def test_window_independent_of_attribution_window(self):
        clock = FakeClock()
        dedup = InMemoryDedupStore(2 * 3600, clock=clock)
        attribution = InMemoryAttributionStore(6 * 3600, clock=clock)
        dedup.mark_sent("abc123")
        attribution.put("abc123", AttributionRecord(fbp="fb.1.1.1"))
        clock.advance(3 * 3600)
        assert dedup.has_been_sent("abc123") is False
        assert attribution.get("abc123") is not None

    def test_reserve_blocks_second_claim(self):
        store = InMemoryDedupStore(WINDOW, clock=FakeClock())
        assert store.reserve("abc123") is True
        assert store.reserve("abc123") is False
        store.release("abc123")
        assert store.reserve("abc123") is True

    def test_reserve_refused_after_sent(self):
        store = InMemoryDedupStore(WINDOW, clock=FakeClock())
        assert store.reserve("abc123") is True
        store.mark_sent("abc123")
        assert store.reserve("abc123") is False


class TestPeriodicSweep:
    """Test that writes evict keys nobody reads again."""

    def test_put_evicts_unread_expired_records(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(3600, clock=clock)
        for n in range(1000):
            store.put(f"intent-{n}", AttributionRecord(fbp="fb.1.1.1", em=sha(f"user{n}@example.com")))
        clock.advance(10 * 3600)
        store.put("latest", AttributionRecord(fbp="fb.1.2.2"))
        assert len(store) == 1
        assert store.get("latest") is not None

    def test_no_sweep_before_interval(self):
        clock = FakeClock()
        store = InMemoryAttributionStore(60, clock=clock, sweep_interval=300)
        store.put("old", AttributionRecord(fbp="fb.1.1.1"))
        clock.advance(120)
        store.put("new", AttributionRecord(fbp="fb.1.2.2"))
        assert len(store) == 2
        clock.advance(200)
        store.put("newer", AttributionRecord(fbp="fb.1.3.3"))
        assert len(store) == 1

    def test_mark_sent_evicts_expired_ids(self):
        clock = FakeClock()
        store = InMemoryDedupStore(3600, clock=clock)
        for n in range(50):
            store.mark_sent(f"booking_{n}")
        clock.advance(2 * 3600)
        store.mark_sent("booking_new")
        assert len(store) == 1

    def test_abandoned_claim_expires(self):
        clock = FakeClock()
        store = InMemoryDedupStore(WINDOW, clock=clock)
        assert store.reserve("abc123") is True
        clock.advance(WINDOW - 1)
        assert store.reserve("abc123") is False
        clock.advance(2)
        assert store.reserve("abc123") is True

    def test_sweep_drops_abandoned_claims(self):
        clock = FakeClock()
        store = InMemoryDedupStore(3600, clock=clock)
        store.reserve("abc123")
        clock.advance(3601)
        store.sweep()
        assert store.reserve("abc123") is True
