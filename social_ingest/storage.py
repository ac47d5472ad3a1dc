from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

from .errors import DuplicateRecordError, StorageError
from .post import Record
from .storage_schema import initialize_sqlite

DEFAULT_PAGE_LIMIT = 50
DEFAULT_SORT = "created_at"

_SORTABLE_COLUMNS = frozenset(
    {
        "id",
        "created_at",
        "updated_at",
        "post_id",
        "owner",
        "followers",
        "following",
        "post_count",
        "total_interaction",
        "last_ten_interaction",
    }
)

_RECORD_COLUMNS = (
    "token, post_id, owner, full_text, clean_text, is_verified, has_attachment, "
    "attachment_labels, media_url, followers, following, post_count, "
    "last_ten_interaction, total_interaction, created_at, updated_at, deleted_at, label_status"
)

_PASS_COUNT_FIELDS = ("fetched", "duplicate", "filtered", "persisted", "failed", "abandoned")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_dict(raw: Any) -> dict[str, Any]:
    try:
        value = json.loads((raw or "{}").strip() or "{}")
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def parse_sort(sort_by: str | None) -> tuple[str, str]:
    """
    Translate a sort key ("created_at", "-created_at", "-_id") to (column, direction).
    """
    key = (sort_by or "").strip() or DEFAULT_SORT
    direction = "ASC"
    if key.startswith("-"):
        direction = "DESC"
        key = key[1:].strip()
    if key == "_id":
        key = "id"
    if key not in _SORTABLE_COLUMNS:
        raise ValueError(f"Unsupported sort key: {sort_by!r}")
    return key, direction


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        post_id=str(row["post_id"]),
        owner=str(row["owner"]),
        full_text=str(row["full_text"]),
        clean_text=str(row["clean_text"]),
        is_verified=bool(row["is_verified"]),
        has_attachment=bool(row["has_attachment"]),
        attachment_labels=str(row["attachment_labels"]) if row["attachment_labels"] is not None else None,
        media_url=str(row["media_url"]) if row["media_url"] is not None else None,
        followers=int(row["followers"]),
        following=int(row["following"]),
        post_count=int(row["post_count"]),
        last_ten_interaction=(
            int(row["last_ten_interaction"]) if row["last_ten_interaction"] is not None else None
        ),
        total_interaction=int(row["total_interaction"]),
        token=str(row["token"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        deleted_at=str(row["deleted_at"]) if row["deleted_at"] is not None else None,
        label_status=str(row["label_status"]) if row["label_status"] is not None else None,
    )


@dataclass(frozen=True)
class PassRecord:
    pass_id: str
    term: str
    options: dict[str, Any]
    config_hash: str
    versions: dict[str, str]
    started_at: str
    ended_at: str | None
    status: str
    counts: dict[str, int]
    error: str | None


@dataclass(frozen=True)
class RecordPage:
    items: list[Record]
    page: int
    limit: int
    total: int


class SQLiteRecordStore:
    """
    SQLite implementation of the record store.

    The pipeline only needs `exists` and `create`; the remaining operations back
    the maintenance and export commands. A single connection is shared across
    worker threads and serialized by a lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteRecordStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteRecordStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    # -- passes -------------------------------------------------------------

    def create_pass(
        self,
        *,
        term: str,
        config_hash: str,
        options: Mapping[str, Any] | None = None,
        versions: Mapping[str, str] | None = None,
        pass_id: str | None = None,
        started_at: str | None = None,
    ) -> PassRecord:
        pid = (pass_id or uuid.uuid4().hex).strip()
        if not pid:
            raise ValueError("pass_id must be non-empty")

        cfg_hash = (config_hash or "").strip()
        if not cfg_hash:
            raise ValueError("config_hash must be non-empty")

        start = (started_at or _utc_now_iso()).strip()

        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO passes(
                      pass_id, term, options_json, config_hash, versions_json, started_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (
                        pid,
                        (term or "").strip(),
                        _json_dumps(dict(options or {})),
                        cfg_hash,
                        _json_dumps(dict(versions or {})),
                        start,
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create pass record: {e}") from e

        record = self.get_pass(pid)
        if record is None:
            raise StorageError("Failed to read pass record after insert")
        return record

    def finish_pass(
        self,
        pass_id: str,
        *,
        status: str,
        counts: Mapping[str, int] | None = None,
        error: str | None = None,
        ended_at: str | None = None,
    ) -> None:
        pid = (pass_id or "").strip()
        if not pid:
            raise ValueError("pass_id must be non-empty")

        c = dict(counts or {})
        values = [int(c.get(name, 0)) for name in _PASS_COUNT_FIELDS]
        end = (ended_at or _utc_now_iso()).strip()

        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    UPDATE passes SET
                      ended_at = ?, status = ?, error = ?,
                      fetched = ?, duplicate = ?, filtered = ?,
                      persisted = ?, failed = ?, abandoned = ?
                    WHERE pass_id = ?
                    """.strip(),
                    (end, (status or "").strip() or "finished", error, *values, pid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish pass: {e}") from e

    def get_pass(self, pass_id: str) -> PassRecord | None:
        pid = (pass_id or "").strip()
        if not pid:
            raise ValueError("pass_id must be non-empty")

        with self._lock:
            row = self._conn.execute("SELECT * FROM passes WHERE pass_id = ?", (pid,)).fetchone()
        if row is None:
            return None
        return self._row_to_pass(row)

    def list_passes(self) -> list[PassRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM passes ORDER BY started_at ASC").fetchall()
        return [self._row_to_pass(r) for r in rows]

    @staticmethod
    def _row_to_pass(row: sqlite3.Row) -> PassRecord:
        versions = _json_dict(row["versions_json"])
        return PassRecord(
            pass_id=str(row["pass_id"]),
            term=str(row["term"]),
            options=_json_dict(row["options_json"]),
            config_hash=str(row["config_hash"]),
            versions={str(k): str(v) for k, v in versions.items()},
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]) if row["ended_at"] is not None else None,
            status=str(row["status"]),
            counts={name: int(row[name]) for name in _PASS_COUNT_FIELDS},
            error=str(row["error"]) if row["error"] is not None else None,
        )

    # -- records ------------------------------------------------------------

    def exists(self, post_id: str, *, include_deleted: bool = True) -> bool:
        """
        Whether a record with this post id was ever stored.

        Soft-deleted records count by default so a removed post is not
        ingested again on the next pass.
        """
        key = (post_id or "").strip()
        if not key:
            raise ValueError("post_id must be non-empty")

        sql = "SELECT 1 FROM records WHERE post_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        try:
            with self._lock:
                row = self._conn.execute(sql + " LIMIT 1", (key,)).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to look up post {key}: {e}") from e
        return row is not None

    def create(self, record: Record) -> Record:
        """
        Insert a fully assembled record in one statement.

        Raises DuplicateRecordError when a live record already holds the post id.
        """
        key = (record.post_id or "").strip()
        token = (record.token or "").strip()
        if not key or not token:
            raise ValueError("record.post_id and record.token must be non-empty")

        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO records({_RECORD_COLUMNS}) VALUES ({', '.join('?' * 18)})",
                    (
                        token,
                        key,
                        record.owner,
                        record.full_text,
                        record.clean_text,
                        1 if record.is_verified else 0,
                        1 if record.has_attachment else 0,
                        record.attachment_labels,
                        record.media_url,
                        int(record.followers),
                        int(record.following),
                        int(record.post_count),
                        record.last_ten_interaction,
                        int(record.total_interaction),
                        record.created_at,
                        record.updated_at,
                        record.deleted_at,
                        record.label_status,
                    ),
                )
        except sqlite3.IntegrityError as e:
            if "post_id" in str(e):
                raise DuplicateRecordError(f"A record for post {key} already exists") from e
            raise StorageError(f"Failed to create record for post {key}: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create record for post {key}: {e}") from e

        created = self.get(token)
        if created is None:
            raise StorageError("Failed to read record after insert")
        return created

    def get(self, token: str) -> Record | None:
        t = (token or "").strip()
        if not t:
            raise ValueError("token must be non-empty")

        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE token = ?", (t,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def get_by_post_id(self, post_id: str) -> Record | None:
        key = (post_id or "").strip()
        if not key:
            raise ValueError("post_id must be non-empty")

        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE post_id = ? AND deleted_at IS NULL",
                (key,),
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_records(
        self,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_by: str | None = DEFAULT_SORT,
        owner_contains: str | None = None,
        include_deleted: bool = False,
    ) -> RecordPage:
        """
        One page of records, 1-based.

        `sort_by` takes a column name with an optional "-" prefix for descending
        order; `owner_contains` is a case-insensitive substring filter.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")

        column, direction = parse_sort(sort_by)

        where: list[str] = []
        params: list[Any] = []
        if not include_deleted:
            where.append("deleted_at IS NULL")
        owner = (owner_contains or "").strip()
        if owner:
            where.append("instr(lower(owner), lower(?)) > 0")
            params.append(owner)
        where_sql = f" WHERE {' AND '.join(where)}" if where else ""

        with self._lock:
            total_row = self._conn.execute(
                f"SELECT COUNT(1) AS n FROM records{where_sql}", tuple(params)
            ).fetchone()
            rows = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records{where_sql} "
                f"ORDER BY {column} {direction}, id {direction} LIMIT ? OFFSET ?",
                (*params, int(limit), (int(page) - 1) * int(limit)),
            ).fetchall()

        return RecordPage(
            items=[_row_to_record(r) for r in rows],
            page=int(page),
            limit=int(limit),
            total=int(total_row["n"]) if total_row is not None else 0,
        )

    def iter_records(self, *, include_deleted: bool = False, page_size: int = 500) -> Iterator[Record]:
        """Walk every record in insertion order, one page at a time."""
        page = 1
        while True:
            batch = self.list_records(
                page=page, limit=page_size, sort_by="id", include_deleted=include_deleted
            )
            yield from batch.items
            if len(batch.items) < page_size:
                return
            page += 1

    def update_clean_text(self, token: str, clean_text: str) -> Record | None:
        t = (token or "").strip()
        if not t:
            raise ValueError("token must be non-empty")

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "UPDATE records SET clean_text = ?, updated_at = ? WHERE token = ? AND deleted_at IS NULL",
                    (clean_text or "", _utc_now_iso(), t),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to update record {t}: {e}") from e

        if cur.rowcount == 0:
            return None
        return self.get(t)

    def soft_delete(self, token: str) -> bool:
        t = (token or "").strip()
        if not t:
            raise ValueError("token must be non-empty")

        now = _utc_now_iso()
        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "UPDATE records SET deleted_at = ?, updated_at = ? WHERE token = ? AND deleted_at IS NULL",
                    (now, now, t),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to delete record {t}: {e}") from e
        return cur.rowcount > 0

    def record_count(self, *, include_deleted: bool = False) -> int:
        sql = "SELECT COUNT(1) AS n FROM records"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        with self._lock:
            row = self._conn.execute(sql).fetchone()
        return int(row["n"]) if row is not None else 0
