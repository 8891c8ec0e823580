"""
Tests for the TTL lease store
"""

from quiz_escrow.lease_store import LeaseStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestLeaseStore:
    """Test lease expiry and ownership"""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = LeaseStore('test', default_ttl=10, clock=self.clock)

    def test_get_before_and_after_expiry(self):
        self.store.put('a', 1)
        assert self.store.get('a') == 1

        self.clock.now += 10
        assert self.store.get('a') is None
        assert 'a' not in self.store

    def test_add_only_when_absent(self):
        assert self.store.add('a', 1) is True
        assert self.store.add('a', 2) is False
        assert self.store.get('a') == 1

    def test_add_replaces_expired_lease(self):
        self.store.put('a', 1, ttl=1)
        self.clock.now += 2
        assert self.store.add('a', 2) is True
        assert self.store.get('a') == 2

    def test_renew_extends_lease(self):
        self.store.put('a', 1)
        self.clock.now += 8
        assert self.store.renew('a') is True
        self.clock.now += 8
        assert self.store.get('a') == 1

    def test_release_owner(self):
        self.store.put('a', 1, owner='u1:q1')
        self.store.put('b', 2, owner='u1:q1')
        self.store.put('c', 3, owner='u2:q1')

        assert self.store.release_owner('u1:q1') == 2
        assert len(self.store) == 1

    def test_cleanup_counts_expired(self):
        self.store.put('a', 1, ttl=1)
        self.store.put('b', 2, ttl=100)
        self.clock.now += 5

        assert self.store.expired_items() == [('a', 1)]
        assert self.store.cleanup() == 1
        assert self.store.items() == [('b', 2)]

    def test_pop_returns_live_value_only(self):
        self.store.put('a', 1, ttl=1)
        self.clock.now += 5
        assert self.store.pop('a') is None

        self.store.put('b', 2)
        assert self.store.pop('b') == 2
        assert self.store.get('b') is None

    def test_stats(self):
        self.store.put('a', 1)
        self.store.get('a')
        self.store.get('missing')

        stats = self.store.get_stats()
        assert stats['name'] == 'test'
        assert stats['hits'] == 1
        assert stats['misses'] == 1
        assert stats['hit_rate'] == '50.0%'
