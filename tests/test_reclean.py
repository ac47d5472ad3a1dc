from __future__ import annotations

import unittest
from dataclasses import replace

from social_ingest.post import Record
from social_ingest.reclean import reclean_records
from social_ingest.storage import SQLiteRecordStore

_BASE = Record(
    post_id="1",
    owner="42",
    full_text="raw",
    clean_text="",
    is_verified=False,
    has_attachment=False,
    attachment_labels=None,
    media_url=None,
    followers=0,
    following=0,
    post_count=0,
    last_ten_interaction=None,
    total_interaction=2,
    token="tok_1",
    created_at="2025-01-01T00:00:00+00:00",
    updated_at="2025-01-01T00:00:00+00:00",
)


class TestReclean(unittest.TestCase):
    def test_strips_residual_symbols_once(self) -> None:
        with SQLiteRecordStore.open(":memory:") as store:
            store.create(replace(_BASE, clean_text="Café time! so good :)"))
            store.create(replace(_BASE, post_id="2", token="tok_2", clean_text="already clean"))

            first = reclean_records(store)
            self.assertEqual((first.scanned, first.updated), (2, 1))

            rec = store.get("tok_1")
            assert rec is not None
            self.assertEqual(rec.clean_text, "Caf time so good")

            second = reclean_records(store)
            self.assertEqual((second.scanned, second.updated), (2, 0))

    def test_skips_soft_deleted_records(self) -> None:
        with SQLiteRecordStore.open(":memory:") as store:
            store.create(replace(_BASE, clean_text="a~b"))
            store.soft_delete("tok_1")

            result = reclean_records(store)
            self.assertEqual((result.scanned, result.updated), (0, 0))


if __name__ == "__main__":
    unittest.main()
