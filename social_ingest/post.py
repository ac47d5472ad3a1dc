from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class Attachment:
    url: str
    type: str | None = None


@dataclass(frozen=True)
class TextEntities:
    """Tokens the search API reports alongside the post text."""

    hashtags: Sequence[str] = ()
    mentions: Sequence[str] = ()
    urls: Sequence[str] = ()
    media: Sequence[str] = ()


@dataclass(frozen=True)
class CandidatePost:
    """A fetched post that has not been validated or persisted yet."""

    post_id: str
    author_id: str
    full_text: str

    author_verified: bool = False
    followers: int = 0
    following: int = 0
    post_count: int = 0

    favorites: int = 0
    retweets: int = 0

    attachments: Sequence[Attachment] = ()
    entities: TextEntities = TextEntities()

    created_at: str | None = None
    lang: str | None = None
    is_retweet: bool = False
    is_reply: bool = False


@dataclass(frozen=True)
class TimelinePost:
    post_id: str
    favorites: int = 0
    retweets: int = 0


@dataclass(frozen=True)
class Record:
    """The persisted representation of an accepted post."""

    post_id: str
    owner: str
    full_text: str
    clean_text: str

    is_verified: bool
    has_attachment: bool
    attachment_labels: str | None
    media_url: str | None

    followers: int
    following: int
    post_count: int

    last_ten_interaction: int | None
    total_interaction: int

    token: str
    created_at: str
    updated_at: str
    deleted_at: str | None = None
    # labelled | no_labels | failed | not_attempted; None when there is no photo.
    label_status: str | None = None
