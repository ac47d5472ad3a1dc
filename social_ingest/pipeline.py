from __future__ import annotations

import sys
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Callable, Literal, Mapping, Protocol, Sequence

from .attachments import first_photo_url, has_attachment
from .config import RuntimeSecrets, config_sha256
from .config_schema import AppConfig, ServiceLimits
from .dedupe import Deduplicator, SeenKeys
from .engagement import EngagementScore, EngagementScorer, TimelineSource, own_interaction
from .errors import DuplicateRecordError, PassCancelled, SearchError, StorageError, TimelineError
from .image_fetch import ImageFetcher
from .post import CandidatePost, Record
from .prechecks import run_prechecks
from .retry import RetryConfig
from .run_log import RunLogger
from .text_normalizer import TextNormalizer
from .throttle import ServiceGate, cancellable_sleep
from .vision import ImageLabelEnricher, LabelDetector, LabelOutcome, build_label_detector

CandidateState = Literal["duplicate", "filtered", "persisted", "failed", "abandoned"]
TERMINAL_STATES: tuple[CandidateState, ...] = ("duplicate", "filtered", "persisted", "failed", "abandoned")


class CandidateSource(Protocol):
    def fetch(
        self,
        term: str,
        page_size: int,
        result_ordering: str,
        min_age_days: int | None,
    ) -> Sequence[CandidatePost]: ...


class RecordStore(Protocol):
    def exists(self, post_id: str) -> bool: ...

    def create(self, record: Record) -> Record: ...


class PassLedger(Protocol):
    def create_pass(
        self,
        *,
        term: str,
        config_hash: str,
        options: Mapping[str, Any] | None = None,
        versions: Mapping[str, str] | None = None,
        pass_id: str | None = None,
        started_at: str | None = None,
    ) -> Any: ...

    def finish_pass(
        self,
        pass_id: str,
        *,
        status: str,
        counts: Mapping[str, int] | None = None,
        error: str | None = None,
        ended_at: str | None = None,
    ) -> None: ...


@dataclass
class PipelineContext:
    """
    Everything one ingestion pass needs, constructed once at startup.

    `enricher` is None when image labelling is disabled. `ledger` records pass
    metadata and is usually the same object as `store`.
    """

    config: AppConfig
    store: RecordStore
    search: CandidateSource
    scorer: EngagementScorer
    enricher: ImageLabelEnricher | None = None
    normalizer: TextNormalizer = field(default_factory=TextNormalizer)
    logger: RunLogger | None = None
    ledger: PassLedger | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cancel(self) -> None:
        self.cancel_event.set()


@dataclass(frozen=True)
class CandidateOutcome:
    post_id: str
    state: CandidateState
    trace: tuple[str, ...]
    reasons: tuple[str, ...] = ()
    record: Record | None = None
    label_status: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PassResult:
    pass_id: str
    term: str
    status: str
    fetched: int
    outcomes: tuple[CandidateOutcome, ...]

    def count(self, state: CandidateState) -> int:
        return sum(1 for o in self.outcomes if o.state == state)

    @property
    def counts(self) -> dict[str, int]:
        out = {"fetched": int(self.fetched)}
        for state in TERMINAL_STATES:
            out[state] = self.count(state)
        return out

    @property
    def records(self) -> list[Record]:
        return [o.record for o in self.outcomes if o.record is not None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"
    except Exception:
        return "unknown"


def library_versions() -> dict[str, str]:
    return {
        "python": sys.version.split()[0],
        "tweepy": _pkg_version("tweepy"),
        "requests": _pkg_version("requests"),
        "boto3": _pkg_version("boto3"),
        "openai": _pkg_version("openai"),
        "pydantic": _pkg_version("pydantic"),
    }


def assemble_record(
    candidate: CandidatePost,
    *,
    clean_text: str,
    score: EngagementScore,
    media_url: str | None,
    attachment_labels: str | None,
    label_status: str | None = None,
    now: str | None = None,
    token: str | None = None,
) -> Record:
    """Build the full Record in memory; nothing is written until store.create()."""
    ts = (now or _utc_now_iso()).strip()
    return Record(
        post_id=candidate.post_id,
        owner=candidate.author_id,
        full_text=candidate.full_text,
        clean_text=clean_text,
        is_verified=bool(candidate.author_verified),
        has_attachment=has_attachment(candidate),
        attachment_labels=attachment_labels,
        media_url=media_url,
        followers=int(candidate.followers),
        following=int(candidate.following),
        post_count=int(candidate.post_count),
        last_ten_interaction=score.trailing_aggregate,
        total_interaction=int(score.own_interaction),
        token=(token or uuid.uuid4().hex).strip(),
        created_at=ts,
        updated_at=ts,
        deleted_at=None,
        label_status=label_status,
    )


class IngestionPipeline:
    """
    Per-candidate state machine driven by a bounded worker pool.

    fetched -> duplicate | filtered | eligible -> normalized -> scored ->
    classified -> [enriched] -> persisted
    """

    def __init__(self, ctx: PipelineContext) -> None:
        self._ctx = ctx

    @property
    def context(self) -> PipelineContext:
        return self._ctx

    def _log(self, level: str, event: str, *, post_id: str | None = None, **data: Any) -> None:
        if self._ctx.logger is not None:
            self._ctx.logger.log(level, event, post_id=post_id, **data)

    def _check_cancel(self) -> None:
        if self._ctx.cancel_event.is_set():
            raise PassCancelled("pass cancelled")

    def process_candidate(self, candidate: CandidatePost, dedupe: Deduplicator) -> CandidateOutcome:
        trace: list[str] = ["fetched"]
        pid = candidate.post_id

        def _done(state: CandidateState, **kwargs: Any) -> CandidateOutcome:
            trace.append(state)
            return CandidateOutcome(post_id=pid, state=state, trace=tuple(trace), **kwargs)

        try:
            self._check_cancel()

            if dedupe.is_duplicate(pid):
                self._log("INFO", "candidate_duplicate", post_id=pid, stage="precheck")
                return _done("duplicate")

            clean_text = self._ctx.normalizer.normalize(candidate.full_text, candidate.entities)
            own = own_interaction(candidate)
            checks = run_prechecks(clean_text, own, filters=self._ctx.config.filters)
            if not checks.passed:
                self._log(
                    "INFO",
                    "candidate_filtered",
                    post_id=pid,
                    reasons=list(checks.reasons),
                    own_interaction=own,
                )
                return _done("filtered", reasons=tuple(checks.reasons))
            trace.extend(["eligible", "normalized"])

            self._check_cancel()
            score = self._ctx.scorer.score(candidate)
            trace.append("scored")

            media_url = first_photo_url(candidate)
            trace.append("classified")

            labels: LabelOutcome | None = None
            label_status: str | None = None if media_url is None else "not_attempted"
            if media_url is not None and self._ctx.enricher is not None:
                self._check_cancel()
                labels = self._ctx.enricher.enrich(
                    media_url, float(self._ctx.config.vision.min_confidence)
                )
                if labels.status == "failed":
                    self._log(
                        "WARN",
                        "image_enrichment_failed",
                        post_id=pid,
                        media_url=media_url,
                        reason=labels.reason,
                    )
                label_status = labels.status
                trace.append("enriched")

            record = assemble_record(
                candidate,
                clean_text=clean_text,
                score=score,
                media_url=media_url,
                attachment_labels=labels.attachment_labels if labels is not None else None,
                label_status=label_status,
            )

            # Last checkpoint: after this the create either happens whole or not at all.
            self._check_cancel()
            try:
                created = self._ctx.store.create(record)
            except DuplicateRecordError:
                self._log("INFO", "record_race_duplicate", post_id=pid)
                return _done("duplicate", reasons=("race",))
            except StorageError as e:
                self._log("ERROR", "candidate_failed", post_id=pid, stage="persist", error=str(e))
                return _done("failed", error=str(e))

            self._log(
                "INFO",
                "record_persisted",
                post_id=pid,
                token=created.token,
                last_ten_interaction=created.last_ten_interaction,
                label_status=label_status,
            )
            return _done(
                "persisted",
                record=created,
                label_status=label_status,
            )
        except PassCancelled:
            return _done("abandoned")

    def run_pass(
        self,
        term: str | None = None,
        *,
        page_size: int | None = None,
        result_ordering: str | None = None,
        min_age_days: int | None = -1,
    ) -> PassResult:
        """
        Fetch candidates for `term` and drive each one to a terminal state.

        SearchError propagates after the pass has been marked as failed; per-candidate
        failures never abort the pass. min_age_days=-1 means "use the configured value".
        """
        cfg = self._ctx.config
        t = (term or cfg.search.term or "").strip()
        size = int(page_size if page_size is not None else cfg.search.page_size)
        ordering = (result_ordering or cfg.search.result_ordering).strip()
        age = cfg.search.min_age_days if min_age_days == -1 else min_age_days

        pass_id = uuid.uuid4().hex
        options = {"page_size": size, "result_ordering": ordering, "min_age_days": age}

        if self._ctx.ledger is not None:
            self._ctx.ledger.create_pass(
                pass_id=pass_id,
                term=t,
                config_hash=config_sha256(cfg),
                options=options,
                versions=library_versions(),
            )
        if self._ctx.logger is not None:
            self._ctx.logger.set_pass_id(pass_id)
        self._log("INFO", "pass_started", term=t, **options)

        try:
            candidates = list(self._ctx.search.fetch(t, size, ordering, age))
        except PassCancelled:
            return self._finish(pass_id, t, status="cancelled", fetched=0, outcomes=[])
        except SearchError as e:
            self._log("ERROR", "search_failed", term=t, error=str(e))
            self._finish(pass_id, t, status="search_failed", fetched=0, outcomes=[], error=str(e))
            raise

        self._log("INFO", "search_completed", term=t, fetched=len(candidates))

        outcomes = self._process_all(candidates)
        status = "cancelled" if self._ctx.cancel_event.is_set() else "completed"
        return self._finish(pass_id, t, status=status, fetched=len(candidates), outcomes=outcomes)

    def _process_all(self, candidates: list[CandidatePost]) -> list[CandidateOutcome]:
        if not candidates:
            return []

        dedupe = Deduplicator(self._ctx.store, seen=SeenKeys())
        results: dict[int, CandidateOutcome] = {}
        workers = max(1, int(self._ctx.config.concurrency.workers))

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest")
        futures: dict[Future[CandidateOutcome], int] = {}
        try:
            for index, candidate in enumerate(candidates):
                futures[executor.submit(self.process_candidate, candidate, dedupe)] = index

            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=0.2, return_when=FIRST_COMPLETED)
                for fut in done:
                    results[futures[fut]] = self._collect(fut, candidates[futures[fut]])
                if pending and self._ctx.cancel_event.is_set():
                    executor.shutdown(wait=True, cancel_futures=True)
                    for fut in pending:
                        results[futures[fut]] = self._collect(fut, candidates[futures[fut]])
                    pending = set()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return [results[i] for i in range(len(candidates))]

    def _collect(self, fut: Future[CandidateOutcome], candidate: CandidatePost) -> CandidateOutcome:
        if fut.cancelled():
            return CandidateOutcome(
                post_id=candidate.post_id, state="abandoned", trace=("fetched", "abandoned")
            )
        try:
            return fut.result()
        except Exception as e:
            # One broken candidate must not take the pass down with it.
            if self._ctx.logger is not None:
                self._ctx.logger.exception("candidate_failed", exc=e, post_id=candidate.post_id)
            return CandidateOutcome(
                post_id=candidate.post_id,
                state="failed",
                trace=("fetched", "failed"),
                error=f"{type(e).__name__}: {e}",
            )

    def _finish(
        self,
        pass_id: str,
        term: str,
        *,
        status: str,
        fetched: int,
        outcomes: list[CandidateOutcome],
        error: str | None = None,
    ) -> PassResult:
        result = PassResult(
            pass_id=pass_id,
            term=term,
            status=status,
            fetched=fetched,
            outcomes=tuple(outcomes),
        )
        if self._ctx.ledger is not None:
            self._ctx.ledger.finish_pass(pass_id, status=status, counts=result.counts, error=error)
        self._log("INFO", "pass_finished", status=status, **result.counts)
        return result


def retry_config(config: AppConfig) -> RetryConfig:
    r = config.retry
    return RetryConfig(
        max_attempts=int(r.max_attempts),
        base_delay_seconds=float(r.base_delay_seconds),
        max_delay_seconds=float(r.max_delay_seconds),
    )


def _gate(name: str, limits: ServiceLimits, cancel_event: threading.Event) -> ServiceGate:
    return ServiceGate(
        name,
        max_concurrent=int(limits.max_concurrent),
        min_interval_seconds=float(limits.min_interval_seconds),
        cancel_event=cancel_event,
    )


def _unmeasured_logger(
    logger: RunLogger | None,
) -> Callable[[CandidatePost, TimelineError], None] | None:
    if logger is None:
        return None

    def _log(candidate: CandidatePost, err: TimelineError) -> None:
        logger.warning("timeline_unmeasured", post_id=candidate.post_id, error=str(err))

    return _log


def build_context(
    config: AppConfig,
    *,
    store: RecordStore,
    search: CandidateSource | None = None,
    timeline: TimelineSource | None = None,
    detector: LabelDetector | None = None,
    image_fetcher: Any | None = None,
    secrets: RuntimeSecrets | None = None,
    logger: RunLogger | None = None,
    ledger: PassLedger | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineContext:
    """
    Wire live clients from config, keeping any collaborator passed in explicitly.

    Live Twitter clients need `secrets`; offline runs pass stub collaborators instead.
    """
    cancel = cancel_event or threading.Event()
    conc = config.concurrency
    retry = retry_config(config)
    sleeper = cancellable_sleep(cancel)
    on_retry = logger.retry_scheduled if logger is not None else None

    if search is None or timeline is None:
        if secrets is None:
            raise ValueError("secrets are required to build live Twitter clients")
        from .twitter_client import AuthorTimelineFetcher, SearchFetcher, create_api

        api = create_api(secrets, twitter=config.twitter)
        if search is None:
            search = SearchFetcher(
                api,
                twitter=config.twitter,
                gate=_gate("search", conc.search, cancel),
                on_retry=on_retry,
                sleep_fn=sleeper,
            )
        if timeline is None:
            timeline = AuthorTimelineFetcher(
                api,
                twitter=config.twitter,
                gate=_gate("timeline", conc.timeline, cancel),
                retry=retry,
                on_retry=on_retry,
                sleep_fn=sleeper,
            )

    enricher: ImageLabelEnricher | None = None
    if config.vision.enabled:
        if detector is None:
            detector = build_label_detector(
                config.vision,
                openai_api_key=secrets.openai_api_key if secrets is not None else None,
            )
        if image_fetcher is None:
            image_fetcher = ImageFetcher(
                timeout_seconds=config.vision.image_timeout_seconds,
                max_bytes=config.vision.max_image_bytes,
                gate=_gate("image_host", conc.image_host, cancel),
                retry=retry,
                on_retry=on_retry,
                sleep_fn=sleeper,
            )
        enricher = ImageLabelEnricher(
            image_fetcher,
            detector,
            gate=_gate("label_service", conc.label_service, cancel),
            retry=retry,
            on_retry=on_retry,
            sleep_fn=sleeper,
        )

    return PipelineContext(
        config=config,
        store=store,
        search=search,
        scorer=EngagementScorer(timeline, on_unmeasured=_unmeasured_logger(logger)),
        enricher=enricher,
        normalizer=TextNormalizer(config.normalizer),
        logger=logger,
        ledger=ledger,
        cancel_event=cancel,
    )
