from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .config_schema import AppConfig
from .errors import ExportError
from .post import Record
from .storage import SQLiteRecordStore

_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_excel_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    s = value
    if not s:
        return s
    if s.startswith(_EXCEL_FORMULA_PREFIXES):
        return "'" + s
    return s


def _label_status(record: Record) -> str:
    if not record.has_attachment or record.media_url is None:
        return "no_photo"
    if record.label_status:
        return record.label_status
    if record.attachment_labels is None:
        return "failed"
    if record.attachment_labels == "":
        return "no_labels"
    return "labelled"


def _record_row(record: Record) -> dict[str, Any]:
    return {
        "token": _safe_excel_text(record.token),
        "post_id": _safe_excel_text(record.post_id),
        "owner": _safe_excel_text(record.owner),
        "full_text": _safe_excel_text(record.full_text),
        "clean_text": _safe_excel_text(record.clean_text),
        "is_verified": bool(record.is_verified),
        "has_attachment": bool(record.has_attachment),
        "media_url": _safe_excel_text(record.media_url),
        "attachment_labels": _safe_excel_text(record.attachment_labels),
        "label_status": _label_status(record),
        "followers": int(record.followers),
        "following": int(record.following),
        "post_count": int(record.post_count),
        "total_interaction": int(record.total_interaction),
        "last_ten_interaction": (
            int(record.last_ten_interaction) if record.last_ten_interaction is not None else None
        ),
        "created_at": _safe_excel_text(record.created_at),
        "updated_at": _safe_excel_text(record.updated_at),
        "deleted_at": _safe_excel_text(record.deleted_at),
    }


def export_records_workbook(
    store: SQLiteRecordStore,
    out_path: str | Path,
    *,
    config: AppConfig | None = None,
    include_deleted: bool = False,
) -> Path:
    try:
        import pandas as pd  # type: ignore[import-not-found]
    except Exception as e:
        raise ExportError("pandas is required for Excel export") from e

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    records = list(store.iter_records(include_deleted=include_deleted))
    record_rows = [_record_row(r) for r in records]

    label_counts: Counter[str] = Counter()
    status_counts: Counter[str] = Counter()
    owner_counts: Counter[str] = Counter()
    for r in records:
        status_counts[_label_status(r)] += 1
        owner_counts[r.owner] += 1
        for label in (r.attachment_labels or "").split(" "):
            t = label.strip()
            if t:
                label_counts[t] += 1

    pass_rows: list[dict[str, Any]] = []
    for p in store.list_passes():
        row: dict[str, Any] = {
            "pass_id": _safe_excel_text(p.pass_id),
            "term": _safe_excel_text(p.term),
            "status": _safe_excel_text(p.status),
            "started_at": _safe_excel_text(p.started_at),
            "ended_at": _safe_excel_text(p.ended_at),
            "config_hash": _safe_excel_text(p.config_hash),
            "options_json": _safe_excel_text(json.dumps(p.options, ensure_ascii=False, sort_keys=True)),
            "versions_json": _safe_excel_text(json.dumps(p.versions, ensure_ascii=False, sort_keys=True)),
            "error": _safe_excel_text(p.error),
        }
        for name, n in p.counts.items():
            row[name] = int(n)
        pass_rows.append(row)

    meta_rows: list[dict[str, Any]] = [
        {"key": "exported_at_utc", "value": _safe_excel_text(_utc_now_iso())},
        {"key": "counts.records_in_sheet", "value": len(record_rows)},
        {"key": "counts.live_records", "value": store.record_count()},
        {"key": "counts.passes", "value": len(pass_rows)},
        {"key": "include_deleted", "value": bool(include_deleted)},
        {"key": "output_path", "value": _safe_excel_text(str(out))},
    ]
    if config is not None:
        config_yaml = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=True, allow_unicode=True)
        meta_rows.append({"key": "config_yaml", "value": _safe_excel_text(config_yaml)})

    summary_rows: list[dict[str, Any]] = []
    for status, n in status_counts.most_common():
        summary_rows.append({"kind": "label_status", "label": _safe_excel_text(status), "count": int(n)})
    for label, n in label_counts.most_common(200):
        summary_rows.append({"kind": "label", "label": _safe_excel_text(label), "count": int(n)})
    for owner, n in owner_counts.most_common(50):
        summary_rows.append({"kind": "owner", "label": _safe_excel_text(owner), "count": int(n)})

    df_records = pd.DataFrame(record_rows)
    df_passes = pd.DataFrame(pass_rows)
    df_summary = pd.DataFrame(summary_rows)
    df_meta = pd.DataFrame(meta_rows)

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            df_records.to_excel(writer, sheet_name="records", index=False)
            df_passes.to_excel(writer, sheet_name="passes", index=False)
            df_summary.to_excel(writer, sheet_name="label_summary", index=False)
            df_meta.to_excel(writer, sheet_name="metadata", index=False)

            wb = writer.book
            for name in ("records", "passes", "label_summary", "metadata"):
                if name in wb.sheetnames:
                    wb[name].freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out
