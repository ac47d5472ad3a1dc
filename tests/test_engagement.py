from __future__ import annotations

import unittest

from social_ingest.engagement import EngagementScorer, own_interaction, trailing_aggregate
from social_ingest.errors import PassCancelled, TimelineError
from social_ingest.post import CandidatePost, TimelinePost


class _FakeTimeline:
    def __init__(self, posts: list[TimelinePost] | None = None, error: BaseException | None = None) -> None:
        self.posts = posts or []
        self.error = error
        self.calls: list[str] = []

    def fetch_timeline(self, author_id: str) -> list[TimelinePost]:
        self.calls.append(author_id)
        if self.error is not None:
            raise self.error
        return list(self.posts)


def _candidate(favorites: int = 3, retweets: int = 2) -> CandidatePost:
    return CandidatePost(
        post_id="10", author_id="author-1", full_text="hello", favorites=favorites, retweets=retweets
    )


class TestEngagementScorer(unittest.TestCase):
    def test_own_interaction_sums_counts(self) -> None:
        self.assertEqual(own_interaction(_candidate(4, 5)), 9)

    def test_trailing_aggregate_sums_timeline(self) -> None:
        posts = [TimelinePost(post_id=str(i), favorites=i, retweets=1) for i in range(10)]
        self.assertEqual(trailing_aggregate(posts), 55)
        self.assertEqual(trailing_aggregate([]), 0)

    def test_score_fetches_author_timeline(self) -> None:
        timeline = _FakeTimeline([TimelinePost("1", 2, 3), TimelinePost("2", 0, 1)])
        score = EngagementScorer(timeline).score(_candidate(3, 2))

        self.assertEqual(timeline.calls, ["author-1"])
        self.assertEqual(score.own_interaction, 5)
        self.assertEqual(score.trailing_aggregate, 6)
        self.assertTrue(score.measured)

    def test_empty_timeline_is_measured_zero(self) -> None:
        score = EngagementScorer(_FakeTimeline([])).score(_candidate())
        self.assertEqual(score.trailing_aggregate, 0)
        self.assertTrue(score.measured)

    def test_timeline_failure_is_unmeasured_not_zero(self) -> None:
        seen: list[str] = []
        scorer = EngagementScorer(
            _FakeTimeline(error=TimelineError("rate limited")),
            on_unmeasured=lambda c, e: seen.append(f"{c.post_id}:{e}"),
        )
        score = scorer.score(_candidate(3, 2))

        self.assertIsNone(score.trailing_aggregate)
        self.assertFalse(score.measured)
        self.assertEqual(score.own_interaction, 5)
        self.assertEqual(seen, ["10:rate limited"])

    def test_cancellation_propagates(self) -> None:
        scorer = EngagementScorer(_FakeTimeline(error=PassCancelled("stop")))
        with self.assertRaises(PassCancelled):
            scorer.score(_candidate())


if __name__ == "__main__":
    unittest.main()
