from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from .errors import ImageDownloadError, TimelineError
from .normalize import candidate_from_status
from .post import CandidatePost, TimelinePost
from .vision import DetectedLabel

# Smallest valid PNG header; enough for mime sniffing.
_OFFLINE_IMAGE = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _status(
    post_id: str,
    author_id: str,
    text: str,
    *,
    favorites: int,
    retweets: int,
    photo_url: str | None = None,
    verified: bool = False,
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id_str": post_id,
        "full_text": text,
        "lang": "en",
        "created_at": "Wed Jan 01 12:00:00 +0000 2025",
        "favorite_count": favorites,
        "retweet_count": retweets,
        "user": {
            "id_str": author_id,
            "verified": verified,
            "followers_count": 1200,
            "friends_count": 300,
            "statuses_count": 4500,
        },
        "entities": {"hashtags": [], "user_mentions": [], "urls": []},
    }
    if photo_url:
        media = [{"type": "photo", "media_url_https": photo_url, "url": "https://t.co/media"}]
        item["entities"]["media"] = media
        item["extended_entities"] = {"media": media}
    return item


_DEFAULT_OFFLINE_STATUSES: list[dict[str, Any]] = [
    _status(
        "1001",
        "501",
        "Check this out http://x.co #cool @bob",
        favorites=3,
        retweets=1,
        photo_url="https://pbs.example.com/media/desk.jpg",
        verified=True,
    ),
    _status("1002", "502", "New laptop day, loving the keyboard", favorites=1, retweets=0),
    _status("1003", "503", "https://t.co/abc #_ @_", favorites=12, retweets=4),
    _status(
        "1001",
        "501",
        "Check this out http://x.co #cool @bob",
        favorites=3,
        retweets=1,
        photo_url="https://pbs.example.com/media/desk.jpg",
        verified=True,
    ),
    _status(
        "1005",
        "404",
        "Tech meetup tonight: talks on edge computing & open hardware!",
        favorites=8,
        retweets=2,
    ),
    _status(
        "1006",
        "506",
        "Our new robot arm prototype",
        favorites=20,
        retweets=7,
        photo_url="https://pbs.example.com/media/missing.jpg",
    ),
]


@dataclass
class OfflineSearchFetcher:
    """
    Network-free stub for dry runs and smoke checks.

    Returns a fixed set of status payloads that exercise every terminal state:
    persisted with labels, low engagement, empty text, duplicate, unmeasured
    timeline, and failed image download.
    """

    statuses: Sequence[dict[str, Any]] = tuple(_DEFAULT_OFFLINE_STATUSES)

    def fetch(
        self,
        term: str,
        page_size: int,
        result_ordering: str,
        min_age_days: int | None,
    ) -> list[CandidatePost]:
        _ = (term, result_ordering, min_age_days)
        out: list[CandidatePost] = []
        for item in list(self.statuses)[: max(0, int(page_size))]:
            candidate = candidate_from_status(item)
            if candidate is not None:
                out.append(candidate)
        return out


class OfflineTimelineFetcher:
    """Ten posts per author; authors whose id ends in "404" fail to load."""

    def fetch_timeline(self, author_id: str) -> list[TimelinePost]:
        if (author_id or "").endswith("404"):
            raise TimelineError(f"offline timeline unavailable for {author_id}")
        return [
            TimelinePost(post_id=f"{author_id}-{i}", favorites=i, retweets=1)
            for i in range(10)
        ]


class OfflineImageFetcher:
    def fetch(self, url: str) -> bytes:
        if "missing" in (url or ""):
            raise ImageDownloadError(f"offline image not found: {url}")
        return _OFFLINE_IMAGE


class OfflineLabelDetector:
    def detect(self, image: bytes, min_confidence: float) -> list[DetectedLabel]:
        _ = image
        labels = [
            DetectedLabel(name="Computer", confidence=97.5),
            DetectedLabel(name="Electronics", confidence=93.1),
            DetectedLabel(name="Desk", confidence=58.0),
        ]
        return [label for label in labels if label.confidence >= float(min_confidence)]
