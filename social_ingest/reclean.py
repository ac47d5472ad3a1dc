from __future__ import annotations

from dataclasses import dataclass

from .run_log import RunLogger
from .storage import SQLiteRecordStore
from .text_normalizer import strip_residual_symbols


@dataclass(frozen=True)
class RecleanResult:
    scanned: int
    updated: int


def reclean_records(store: SQLiteRecordStore, *, logger: RunLogger | None = None) -> RecleanResult:
    """
    Re-apply the strict residual-symbol pass to every live record's clean_text.

    Records whose text is already clean are left untouched, so running this twice
    updates nothing the second time.
    """
    scanned = 0
    changed: list[tuple[str, str]] = []

    for record in store.iter_records():
        scanned += 1
        cleaned = strip_residual_symbols(record.clean_text)
        if cleaned != record.clean_text:
            changed.append((record.token, cleaned))

    updated = 0
    for token, cleaned in changed:
        if store.update_clean_text(token, cleaned) is not None:
            updated += 1
            if logger is not None:
                logger.info("record_recleaned", token=token)

    if logger is not None:
        logger.info("reclean_finished", scanned=scanned, updated=updated)
    return RecleanResult(scanned=scanned, updated=updated)
