import threading
import unittest
from datetime import datetime, timedelta, timezone

from wealthwatch.rate_cache import FRESHNESS_WINDOW, RateCache, RateCacheEntry

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class RateCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = RateCache()

    def test_missing_pair_returns_none(self) -> None:
        self.assertIsNone(self.cache.get(("USD", "EUR")))

    def test_put_then_get_returns_entry(self) -> None:
        self.cache.put(("USD", "EUR"), 0.92, NOW)

        entry = self.cache.get(("USD", "EUR"))

        self.assertEqual(entry.rate, 0.92)
        self.assertEqual(entry.fetched_at, NOW)
        self.assertEqual(entry.pair, ("USD", "EUR"))

    def test_inverse_pair_is_not_synthesized(self) -> None:
        self.cache.put(("USD", "EUR"), 0.92, NOW)

        self.assertIsNone(self.cache.get(("EUR", "USD")))

    def test_last_writer_wins(self) -> None:
        self.cache.put(("USD", "EUR"), 0.92, NOW)
        self.cache.put(("USD", "EUR"), 0.95, NOW - timedelta(minutes=1))

        entry = self.cache.get(("USD", "EUR"))

        self.assertEqual(entry.rate, 0.95)
        self.assertEqual(len(self.cache), 1)

    def test_clear_drops_entries(self) -> None:
        self.cache.put(("USD", "EUR"), 0.92, NOW)
        self.cache.clear()

        self.assertEqual(len(self.cache), 0)

    def test_concurrent_writers_keep_cache_consistent(self) -> None:
        pairs = [("USD", code) for code in ("EUR", "GBP", "JPY", "INR")]

        def writer(rate: float) -> None:
            for _ in range(200):
                for pair in pairs:
                    self.cache.put(pair, rate, NOW)
                    self.assertIsNotNone(self.cache.get(pair))

        threads = [threading.Thread(target=writer, args=(rate,)) for rate in (1.0, 2.0, 3.0)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(self.cache), len(pairs))
        for pair in pairs:
            self.assertIn(self.cache.get(pair).rate, {1.0, 2.0, 3.0})


class RateCacheEntryTests(unittest.TestCase):
    def test_rejects_non_positive_rate(self) -> None:
        with self.assertRaises(ValueError):
            RateCacheEntry(pair=("USD", "EUR"), rate=0.0, fetched_at=NOW)

    def test_fresh_inside_window(self) -> None:
        entry = RateCacheEntry(pair=("USD", "EUR"), rate=0.9, fetched_at=NOW)

        self.assertTrue(entry.is_fresh(NOW + FRESHNESS_WINDOW - timedelta(seconds=1)))

    def test_stale_at_window_boundary(self) -> None:
        entry = RateCacheEntry(pair=("USD", "EUR"), rate=0.9, fetched_at=NOW)

        self.assertFalse(entry.is_fresh(NOW + FRESHNESS_WINDOW))

    def test_freshness_window_is_five_minutes(self) -> None:
        self.assertEqual(FRESHNESS_WINDOW, timedelta(minutes=5))


if __name__ == "__main__":
    unittest.main()
