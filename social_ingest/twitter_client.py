from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

import tweepy

from .config import RuntimeSecrets
from .config_schema import SEARCH_PAGE_SIZE_MAX, TwitterConfig
from .errors import PassCancelled, SearchError, TimelineError
from .normalize import candidate_from_status, status_payload, timeline_post_from_status
from .post import CandidatePost, TimelinePost
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries
from .retry_policies import is_retryable_twitter_exception
from .throttle import ServiceGate

ResultOrdering = Literal["popular", "mixed"]

_DEFAULT_TWITTER_RETRY = RetryConfig(
    max_attempts=4,
    base_delay_seconds=1.0,
    max_delay_seconds=30.0,
    jitter_ratio=0.25,
    # Rate-limit windows are 15 minutes; waiting longer than that is never useful.
    retry_after_cap_seconds=900.0,
)


def build_search_query(term: str) -> str:
    t = (term or "").strip()
    if not t:
        raise ValueError("term must be non-empty")
    return f"{t} -filter:retweets -filter:replies"


def until_date(min_age_days: int | None, *, now: datetime | None = None) -> str | None:
    """
    Upper bound on post creation date (YYYY-MM-DD) for the search `until` parameter.

    This only bounds what the API returns; callers must not rely on it as a guarantee.
    """
    if not min_age_days:
        return None
    current = now or datetime.now(timezone.utc)
    return (current - timedelta(days=int(min_age_days))).strftime("%Y-%m-%d")


def create_api(secrets: RuntimeSecrets, *, twitter: TwitterConfig) -> tweepy.API:
    auth = tweepy.OAuth1UserHandler(
        secrets.consumer_key,
        secrets.consumer_secret,
        secrets.access_token,
        secrets.access_secret,
    )
    # Client-level retries stay off so our own policy applies uniformly.
    return tweepy.API(auth, timeout=int(twitter.timeout_seconds), retry_count=0)


class _TwitterBase:
    def __init__(
        self,
        api: Any,
        *,
        twitter: TwitterConfig,
        gate: ServiceGate | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self._api = api
        self._cfg = twitter
        self._gate = gate or ServiceGate("twitter")
        self._retry = retry or _DEFAULT_TWITTER_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn

    def _call(self, fn: Callable[[], Any], *, operation: str, context_id: str | None = None) -> Any:
        def _gated() -> Any:
            with self._gate.slot():
                return fn()

        return call_with_retries(
            _gated,
            cfg=self._retry,
            is_retryable=is_retryable_twitter_exception,
            operation=operation,
            on_retry=self._on_retry,
            sleep_fn=self._sleep_fn,
            context_id=context_id,
        )


class SearchFetcher(_TwitterBase):
    """
    Standard v1.1 search for candidate posts.

    Any failure surfaces as SearchError after retries; nothing has been written
    at that point, so the pass can simply be retried later.
    """

    def fetch(
        self,
        term: str,
        page_size: int,
        result_ordering: ResultOrdering,
        min_age_days: int | None,
    ) -> list[CandidatePost]:
        t = (term or "").strip()
        if not t:
            raise SearchError("search term must be non-empty")
        if not (1 <= int(page_size) <= SEARCH_PAGE_SIZE_MAX):
            raise SearchError(f"page_size must be between 1 and {SEARCH_PAGE_SIZE_MAX}")
        if result_ordering not in ("popular", "mixed"):
            raise SearchError(f"unsupported result ordering: {result_ordering!r}")

        params: dict[str, Any] = {
            "lang": self._cfg.language,
            "result_type": result_ordering,
            "count": int(page_size),
            "include_entities": True,
            "tweet_mode": "extended",
        }
        until = until_date(min_age_days)
        if until is not None:
            params["until"] = until

        query = build_search_query(t)

        try:
            statuses = self._call(
                lambda: self._api.search_tweets(query, **params),
                operation="twitter.search_tweets",
                context_id=t,
            )
        except PassCancelled:
            raise
        except tweepy.TweepyException as e:
            raise SearchError(f"Search API call failed for {t!r}: {e}") from e
        except Exception as e:
            raise SearchError(f"Unexpected error while searching for {t!r}: {e}") from e

        out: list[CandidatePost] = []
        for status in statuses or []:
            candidate = candidate_from_status(status)
            if candidate is None or candidate.is_retweet or candidate.is_reply:
                continue
            lang = (candidate.lang or "").casefold()
            if lang and lang != self._cfg.language:
                continue
            out.append(candidate)
        return out


class AuthorTimelineFetcher(_TwitterBase):
    """Most recent original posts of one author, used for the trailing engagement aggregate."""

    def fetch_timeline(self, author_id: str) -> list[TimelinePost]:
        uid = (author_id or "").strip()
        if not uid:
            raise TimelineError("author_id must be non-empty")

        count = int(self._cfg.timeline_count)

        try:
            statuses = self._call(
                lambda: self._api.user_timeline(
                    user_id=uid,
                    count=count,
                    exclude_replies=True,
                    include_rts=False,
                    tweet_mode="extended",
                ),
                operation="twitter.user_timeline",
                context_id=uid,
            )
        except PassCancelled:
            raise
        except Exception as e:
            raise TimelineError(f"Timeline fetch failed for author {uid}: {e}") from e

        out: list[TimelinePost] = []
        for status in statuses or []:
            item = status_payload(status)
            if "retweeted_status" in item or item.get("in_reply_to_status_id") is not None:
                continue
            post = timeline_post_from_status(item)
            if post is not None:
                out.append(post)
            if len(out) >= count:
                break
        return out
