from __future__ import annotations

import unittest

from social_ingest.attachments import first_photo, first_photo_url, has_attachment
from social_ingest.post import Attachment, CandidatePost


def _candidate(*attachments: Attachment) -> CandidatePost:
    return CandidatePost(post_id="1", author_id="a", full_text="text", attachments=tuple(attachments))


class TestAttachmentClassifier(unittest.TestCase):
    def test_no_attachments(self) -> None:
        c = _candidate()
        self.assertFalse(has_attachment(c))
        self.assertIsNone(first_photo(c))
        self.assertIsNone(first_photo_url(c))

    def test_video_only_has_attachment_but_no_photo(self) -> None:
        c = _candidate(Attachment(url="https://x/v.mp4", type="video"))
        self.assertTrue(has_attachment(c))
        self.assertIsNone(first_photo(c))

    def test_first_photo_index_skips_non_photos(self) -> None:
        c = _candidate(
            Attachment(url="https://x/v.mp4", type="video"),
            Attachment(url="https://x/a.jpg", type="photo"),
            Attachment(url="https://x/b.jpg", type="photo"),
        )
        self.assertEqual(first_photo(c), 1)
        self.assertEqual(first_photo_url(c), "https://x/a.jpg")

    def test_type_match_ignores_case(self) -> None:
        c = _candidate(Attachment(url="https://x/a.jpg", type="Photo"))
        self.assertEqual(first_photo(c), 0)

    def test_missing_type_is_not_a_photo(self) -> None:
        c = _candidate(Attachment(url="https://x/a.jpg"))
        self.assertTrue(has_attachment(c))
        self.assertIsNone(first_photo(c))


if __name__ == "__main__":
    unittest.main()
