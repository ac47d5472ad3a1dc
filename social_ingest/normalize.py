from __future__ import annotations

from typing import Any, Mapping

from .post import Attachment, CandidatePost, TextEntities, TimelinePost


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str):
        try:
            return max(0, int(value.strip()))
        except ValueError:
            return 0
    return 0


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def status_payload(status: Any) -> Mapping[str, Any]:
    """Raw JSON of a tweepy model, or the mapping itself."""
    raw = getattr(status, "_json", status)
    return _as_mapping(raw)


def _media_items(item: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    extended = _as_list(_as_mapping(item.get("extended_entities")).get("media"))
    media = extended or _as_list(_as_mapping(item.get("entities")).get("media"))
    return [m for m in media if isinstance(m, Mapping)]


def _attachments(item: Mapping[str, Any]) -> tuple[Attachment, ...]:
    out: list[Attachment] = []
    for m in _media_items(item):
        url = _coerce_str(m.get("media_url_https")) or _coerce_str(m.get("media_url"))
        if not url:
            continue
        out.append(Attachment(url=url, type=_coerce_str(m.get("type"))))
    return tuple(out)


def _entity_texts(items: list[Any], *keys: str) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for entry in items:
        if not isinstance(entry, Mapping):
            continue
        for key in keys:
            text = _coerce_str(entry.get(key))
            if text and text not in seen:
                seen.add(text)
                out.append(text)
    return tuple(out)


def _text_entities(item: Mapping[str, Any]) -> TextEntities:
    entities = _as_mapping(item.get("entities"))
    return TextEntities(
        hashtags=_entity_texts(_as_list(entities.get("hashtags")), "text"),
        mentions=_entity_texts(_as_list(entities.get("user_mentions")), "screen_name"),
        urls=_entity_texts(_as_list(entities.get("urls")), "url"),
        media=_entity_texts(_media_items(item), "url", "media_url_https", "media_url"),
    )


def candidate_from_status(status: Any) -> CandidatePost | None:
    """
    Best-effort extraction of a CandidatePost from a v1.1 status payload.

    Returns None when the post id, author id or text is missing.
    """
    item = status_payload(status)

    post_id = _coerce_id(item.get("id_str")) or _coerce_id(item.get("id"))
    text = _coerce_str(item.get("full_text")) or _coerce_str(item.get("text"))

    user = _as_mapping(item.get("user"))
    author_id = _coerce_id(user.get("id_str")) or _coerce_id(user.get("id"))

    if not post_id or not author_id or not text:
        return None

    reply_to = _coerce_id(item.get("in_reply_to_status_id_str")) or _coerce_id(
        item.get("in_reply_to_status_id")
    )

    return CandidatePost(
        post_id=post_id,
        author_id=author_id,
        full_text=text,
        author_verified=user.get("verified") is True,
        followers=_coerce_count(user.get("followers_count")),
        following=_coerce_count(user.get("friends_count")),
        post_count=_coerce_count(user.get("statuses_count")),
        favorites=_coerce_count(item.get("favorite_count")),
        retweets=_coerce_count(item.get("retweet_count")),
        attachments=_attachments(item),
        entities=_text_entities(item),
        created_at=_coerce_str(item.get("created_at")),
        lang=_coerce_str(item.get("lang")),
        is_retweet=isinstance(item.get("retweeted_status"), Mapping),
        is_reply=reply_to is not None,
    )


def timeline_post_from_status(status: Any) -> TimelinePost | None:
    item = status_payload(status)
    post_id = _coerce_id(item.get("id_str")) or _coerce_id(item.get("id"))
    if not post_id:
        return None
    return TimelinePost(
        post_id=post_id,
        favorites=_coerce_count(item.get("favorite_count")),
        retweets=_coerce_count(item.get("retweet_count")),
    )
