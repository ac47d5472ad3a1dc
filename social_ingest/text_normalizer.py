from __future__ import annotations

import re
from dataclasses import dataclass
from functools import partial
from typing import Callable, Sequence

from .config_schema import NormalizerConfig
from .post import TextEntities

_SCHEME_URL_RE = re.compile(r"(?:(?:https?|ftp)://|www\.)\S+", re.IGNORECASE)
# TLD must be lowercase so a missing space after a full stop ("everyone.Be") is not a link.
_BARE_DOMAIN_RE = re.compile(
    r"\b[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*"
    r"\.(?:com|net|org|info|biz|edu|gov|io|co|ly|me|gl|gd|be|tv|us|uk|ai|app|dev)\b(?:/\S*)?"
)
_MULTI_SPACE_RE = re.compile(r"[ ]{2,}")
_RESIDUAL_RE = re.compile(r"[^a-zA-Z0-9 ]+")

PassFn = Callable[[str], str]


def strip_urls(text: str) -> str:
    return _BARE_DOMAIN_RE.sub("", _SCHEME_URL_RE.sub("", text))


def strip_entities(text: str, entities: TextEntities | None, *, include_tags: bool = False) -> str:
    """
    Remove tokens the API reported as entities of this post.

    Link and media tokens are always removed. Hashtag and mention tokens are
    removed (sigil included) only when include_tags is set.
    """
    if entities is None:
        return text

    out = text
    for token in list(entities.media) + list(entities.urls):
        t = (token or "").strip()
        if t:
            out = out.replace(t, "")

    if include_tags:
        for sigil, names in (("#", entities.hashtags), ("@", entities.mentions)):
            for name in names:
                n = (name or "").strip().lstrip(sigil)
                if n:
                    out = re.sub(
                        re.escape(sigil) + re.escape(n) + r"(?![A-Za-z0-9_])",
                        "",
                        out,
                        flags=re.IGNORECASE,
                    )
    return out


def strip_sigils(text: str) -> str:
    out = text.replace("_", " ")
    for ch in ("#", "@", "\n", "\r"):
        out = out.replace(ch, "")
    return out


def collapse_punctuation(
    text: str, *, keep_hyphens: bool = False, requires_space: bool = True
) -> str:
    allowed = r"a-zA-Z0-9 \-" if keep_hyphens else r"a-zA-Z0-9 "
    pattern = f"[^{allowed}]+" + (" " if requires_space else "")
    return re.sub(pattern, " ", text)


def collapse_whitespace(text: str) -> str:
    return _MULTI_SPACE_RE.sub(" ", text)


def trim(text: str) -> str:
    return text.strip()


def strip_residual_symbols(text: str) -> str:
    """Drop every character outside [A-Za-z0-9 ]; used by the reclean job."""
    return collapse_whitespace(_RESIDUAL_RE.sub("", text)).strip(" ")


@dataclass(frozen=True)
class TextNormalizer:
    """
    Ordered, named normalization passes for post text.

    Passes only ever delete characters or replace them with a space, so
    repeating them until the text stops changing terminates and makes
    normalize() idempotent.
    """

    config: NormalizerConfig = NormalizerConfig()

    def passes(self, entities: TextEntities | None = None) -> list[tuple[str, PassFn]]:
        cfg = self.config
        return [
            ("strip_urls", strip_urls),
            (
                "strip_entities",
                partial(strip_entities, entities=entities, include_tags=cfg.strip_tag_entities),
            ),
            ("strip_sigils", strip_sigils),
            (
                "collapse_punctuation",
                partial(
                    collapse_punctuation,
                    keep_hyphens=cfg.keep_hyphens,
                    requires_space=cfg.punctuation_requires_space,
                ),
            ),
            ("collapse_whitespace", collapse_whitespace),
            ("trim", trim),
        ]

    def pass_names(self) -> Sequence[str]:
        return tuple(name for name, _ in self.passes())

    def normalize(self, raw_text: str | None, entities: TextEntities | None = None) -> str:
        text = raw_text or ""
        steps = self.passes(entities)

        for _ in range(2 * len(text) + 2):
            before = text
            for _, fn in steps:
                text = fn(text)
            if text == before:
                break
        return text


def normalize_text(raw_text: str | None, entities: TextEntities | None = None) -> str:
    return TextNormalizer().normalize(raw_text, entities)
