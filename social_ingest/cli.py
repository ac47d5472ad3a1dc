from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from .config import load_config, resolve_runtime_secrets
from .dry_run import run_dry_run
from .errors import (
    ConfigError,
    ExportError,
    ImageDownloadError,
    LabelServiceError,
    SearchError,
    StorageError,
    TimelineError,
)
from .export_excel import export_records_workbook
from .pipeline import IngestionPipeline, build_context
from .reclean import reclean_records
from .run_log import RunLogger
from .storage import SQLiteRecordStore

_DB_NAME = "records.sqlite"
_LOG_NAME = "run.log"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="social_ingest")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Run one ingestion pass for a search term.",
    )
    run.add_argument("--config", required=True, help="Path to YAML config file.")
    run.add_argument("--out", required=True, help="Output directory for the database and logs.")
    run.add_argument("--term", default=None, help="Search term (defaults to search.term).")
    run.add_argument(
        "--count",
        type=int,
        default=None,
        help="Candidates to request (defaults to search.page_size).",
    )
    run.add_argument(
        "--popular",
        action="store_true",
        help="Request popular results instead of the configured ordering.",
    )
    run.add_argument(
        "--offline",
        action="store_true",
        help="Use deterministic stub collaborators instead of network services.",
    )
    run.set_defaults(_handler=_cmd_run)

    dry = subparsers.add_parser(
        "dry-run",
        help="Run a small pass against a throwaway in-memory store.",
    )
    dry.add_argument("--config", required=True, help="Path to YAML config file.")
    dry.add_argument(
        "--offline",
        action="store_true",
        help="Run without network calls using a small stub dataset.",
    )
    dry.set_defaults(_handler=_cmd_dry_run)

    reclean = subparsers.add_parser(
        "reclean",
        help="Strip residual symbols from the clean_text of stored records.",
    )
    reclean.add_argument("--out", required=True, help="Output directory holding the database.")
    reclean.set_defaults(_handler=_cmd_reclean)

    export = subparsers.add_parser(
        "export",
        help="Write stored records and pass history to an Excel workbook.",
    )
    export.add_argument("--out", required=True, help="Output directory holding the database.")
    export.add_argument("--xlsx", default=None, help="Workbook path (defaults to <out>/records.xlsx).")
    export.add_argument("--config", default=None, help="Optional config to embed in the metadata sheet.")
    export.add_argument(
        "--include-deleted",
        action="store_true",
        help="Include soft-deleted records.",
    )
    export.set_defaults(_handler=_cmd_export)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _existing_db(out_dir: Path) -> Path:
    db_path = out_dir / _DB_NAME
    if not db_path.exists():
        raise StorageError(f"No database found at {db_path}")
    return db_path


@contextmanager
def _cancel_on_signals(cancel_event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative pass cancellation."""

    def _handler(signum: int, frame: Any) -> None:
        _ = frame
        cancel_event.set()

    previous: dict[int, Callable[..., Any] | int | None] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # Not in the main thread; keep default handling.
            continue
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _cmd_run(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / _LOG_NAME
    with RunLogger.open(log_path) as log:
        log.info(
            "run_command_started",
            config_path=str(args.config),
            out_dir=str(out_dir),
            offline=bool(args.offline),
        )

        try:
            cfg = load_config(args.config)
            offline = bool(args.offline)
            secrets = None if offline else resolve_runtime_secrets(cfg)

            log.info(
                "config_loaded",
                config_path=str(args.config),
                vision_enabled=cfg.vision.enabled,
                vision_provider=cfg.vision.provider,
                workers=cfg.concurrency.workers,
            )

            cancel_event = threading.Event()
            with SQLiteRecordStore.open(out_dir / _DB_NAME) as store:
                if offline:
                    from .offline import (
                        OfflineImageFetcher,
                        OfflineLabelDetector,
                        OfflineSearchFetcher,
                        OfflineTimelineFetcher,
                    )

                    ctx = build_context(
                        cfg,
                        store=store,
                        search=OfflineSearchFetcher(),
                        timeline=OfflineTimelineFetcher(),
                        detector=OfflineLabelDetector(),
                        image_fetcher=OfflineImageFetcher(),
                        logger=log,
                        ledger=store,
                        cancel_event=cancel_event,
                    )
                else:
                    ctx = build_context(
                        cfg,
                        store=store,
                        secrets=secrets,
                        logger=log,
                        ledger=store,
                        cancel_event=cancel_event,
                    )

                with _cancel_on_signals(cancel_event):
                    result = IngestionPipeline(ctx).run_pass(
                        args.term,
                        page_size=args.count,
                        result_ordering="popular" if args.popular else None,
                    )
                total = store.record_count()

            print(f"status={result.status}")
            print(f"pass_id={result.pass_id}")
            print(f"term={result.term}")
            for name, n in result.counts.items():
                print(f"{name}={n}")
            print(f"records_total={total}")
            print(f"database={out_dir / _DB_NAME}")
            print(f"run_log={log_path}")

            return 130 if result.status == "cancelled" else 0
        except Exception as e:
            log.exception("run_command_failed", exc=e)
            raise


def _cmd_dry_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    offline = bool(getattr(args, "offline", False))
    secrets = None if offline else resolve_runtime_secrets(cfg)

    result = run_dry_run(cfg, secrets, offline=offline)

    print(f"term={result.term}")
    print(f"fetched={result.fetched}")
    for name, n in result.counts.items():
        if name != "fetched":
            print(f"{name}={n}")
    print("example_record=")
    print(json.dumps(result.example_record, indent=2, ensure_ascii=False, sort_keys=True))

    return 0


def _cmd_reclean(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    db_path = _existing_db(out_dir)

    with RunLogger.open(out_dir / _LOG_NAME) as log, SQLiteRecordStore.open(db_path) as store:
        result = reclean_records(store, logger=log)

    print(f"scanned={result.scanned}")
    print(f"updated={result.updated}")
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    db_path = _existing_db(out_dir)
    xlsx_path = Path(args.xlsx) if args.xlsx else out_dir / "records.xlsx"
    cfg = load_config(args.config) if args.config else None

    with SQLiteRecordStore.open(db_path) as store:
        path = export_records_workbook(
            store,
            xlsx_path,
            config=cfg,
            include_deleted=bool(args.include_deleted),
        )

    print(f"records_xlsx={path}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (
        SearchError,
        TimelineError,
        ImageDownloadError,
        LabelServiceError,
        StorageError,
        ExportError,
    ) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
