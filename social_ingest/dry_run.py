from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .config import RuntimeSecrets
from .config_schema import AppConfig
from .offline import (
    OfflineImageFetcher,
    OfflineLabelDetector,
    OfflineSearchFetcher,
    OfflineTimelineFetcher,
)
from .pipeline import IngestionPipeline, build_context
from .post import Record
from .run_log import RunLogger
from .storage import SQLiteRecordStore

_DRY_RUN_PAGE_SIZE = 10


@dataclass(frozen=True)
class DryRunResult:
    term: str
    fetched: int
    counts: dict[str, int]
    example_record: dict[str, Any] | None


def _redact_record_for_print(record: Record) -> dict[str, Any]:
    out = asdict(record)
    text = out.get("full_text") or ""
    if len(text) > 140:
        out["full_text"] = text[:139] + "…"
    return out


def run_dry_run(
    config: AppConfig,
    secrets: RuntimeSecrets | None,
    *,
    offline: bool = False,
    term: str | None = None,
    logger: RunLogger | None = None,
) -> DryRunResult:
    """
    One small pass against a throwaway in-memory store.

    Offline mode swaps every network collaborator for a deterministic stub.
    """
    with SQLiteRecordStore.open(":memory:") as store:
        if offline:
            ctx = build_context(
                config,
                store=store,
                search=OfflineSearchFetcher(),
                timeline=OfflineTimelineFetcher(),
                detector=OfflineLabelDetector(),
                image_fetcher=OfflineImageFetcher(),
                logger=logger,
                ledger=store,
            )
        else:
            ctx = build_context(config, store=store, secrets=secrets, logger=logger, ledger=store)

        result = IngestionPipeline(ctx).run_pass(term, page_size=_DRY_RUN_PAGE_SIZE)

    records = result.records
    return DryRunResult(
        term=result.term,
        fetched=result.fetched,
        counts=result.counts,
        example_record=_redact_record_for_print(records[0]) if records else None,
    )
