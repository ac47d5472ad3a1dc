from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from .errors import PassCancelled, TimelineError
from .post import CandidatePost, TimelinePost


class TimelineSource(Protocol):
    def fetch_timeline(self, author_id: str) -> Sequence[TimelinePost]: ...


@dataclass(frozen=True)
class EngagementScore:
    own_interaction: int
    # None means the author timeline could not be measured; it is not zero.
    trailing_aggregate: int | None

    @property
    def measured(self) -> bool:
        return self.trailing_aggregate is not None


def own_interaction(candidate: CandidatePost) -> int:
    return int(candidate.favorites) + int(candidate.retweets)


def trailing_aggregate(posts: Sequence[TimelinePost]) -> int:
    return sum(int(p.favorites) + int(p.retweets) for p in posts)


class EngagementScorer:
    def __init__(
        self,
        timeline: TimelineSource,
        *,
        on_unmeasured: Callable[[CandidatePost, TimelineError], None] | None = None,
    ) -> None:
        self._timeline = timeline
        self._on_unmeasured = on_unmeasured

    def score(self, candidate: CandidatePost) -> EngagementScore:
        own = own_interaction(candidate)
        try:
            posts = self._timeline.fetch_timeline(candidate.author_id)
        except PassCancelled:
            raise
        except TimelineError as e:
            if self._on_unmeasured is not None:
                self._on_unmeasured(candidate, e)
            return EngagementScore(own_interaction=own, trailing_aggregate=None)

        return EngagementScore(own_interaction=own, trailing_aggregate=trailing_aggregate(posts))
