from __future__ import annotations

import threading
import unittest

from social_ingest.dedupe import Deduplicator, SeenKeys, dedupe_key


class _FakeStore:
    def __init__(self, existing: set[str] | None = None) -> None:
        self.existing = set(existing or set())
        self.calls: list[str] = []

    def exists(self, post_id: str) -> bool:
        self.calls.append(post_id)
        return post_id in self.existing


class TestDedupe(unittest.TestCase):
    def test_dedupe_key_strips_and_rejects_empty(self) -> None:
        self.assertEqual(dedupe_key(" 123 "), "123")
        with self.assertRaises(ValueError):
            dedupe_key("  ")

    def test_exists_consults_store(self) -> None:
        store = _FakeStore({"1"})
        d = Deduplicator(store)
        self.assertTrue(d.exists("1"))
        self.assertFalse(d.exists("2"))
        self.assertEqual(store.calls, ["1", "2"])

    def test_is_duplicate_catches_repeats_within_a_pass(self) -> None:
        store = _FakeStore()
        d = Deduplicator(store)
        self.assertFalse(d.is_duplicate("7"))
        self.assertTrue(d.is_duplicate("7"))
        # The second sighting never reaches the store.
        self.assertEqual(store.calls, ["7"])

    def test_is_duplicate_reports_stored_posts(self) -> None:
        d = Deduplicator(_FakeStore({"9"}))
        self.assertTrue(d.is_duplicate("9"))

    def test_seen_keys_claim_is_exclusive_across_threads(self) -> None:
        seen = SeenKeys()
        wins: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def _worker() -> None:
            barrier.wait()
            ok = seen.claim("same")
            with lock:
                wins.append(ok)

        threads = [threading.Thread(target=_worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(wins.count(True), 1)
        self.assertTrue(seen.has("same"))


if __name__ == "__main__":
    unittest.main()
