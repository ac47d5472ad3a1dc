from __future__ import annotations

from .post import CandidatePost


def has_attachment(candidate: CandidatePost) -> bool:
    return len(candidate.attachments) > 0


def first_photo(candidate: CandidatePost) -> int | None:
    """Index of the first attachment whose type is "photo", or None."""
    for index, media in enumerate(candidate.attachments):
        if (media.type or "").strip().casefold() == "photo":
            return index
    return None


def first_photo_url(candidate: CandidatePost) -> str | None:
    index = first_photo(candidate)
    if index is None:
        return None
    url = (candidate.attachments[index].url or "").strip()
    return url or None
