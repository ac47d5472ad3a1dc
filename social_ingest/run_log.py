from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

from .retry import RetryEvent

_MESSAGE_LIMIT = 2000
_TRACEBACK_LIMIT = 12000
_RETRY_MESSAGE_LIMIT = 500


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[: limit - 1] + "…"


class RunLogger:
    """
    Append-only JSONL event log shared by a pass and its worker threads.

    Every line carries `ts`, `level`, `event` and `session_id`; `pass_id` and
    `post_id` appear once known, and any extra keyword arguments are nested
    under `data`. Events written after close() are dropped.
    """

    def __init__(self, fp: TextIO, *, pass_id: str | None = None, session_id: str | None = None) -> None:
        self._fp: TextIO | None = fp
        self._pass_id = (pass_id or "").strip() or None
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._lock = Lock()

    @classmethod
    def open(cls, path: str | Path, *, pass_id: str | None = None, session_id: str | None = None) -> "RunLogger":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        return cls(p.open("a", encoding="utf-8", newline="\n"), pass_id=pass_id, session_id=session_id)

    def close(self) -> None:
        with self._lock:
            fp, self._fp = self._fp, None
        if fp is not None:
            fp.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def set_pass_id(self, pass_id: str | None) -> None:
        self._pass_id = (pass_id or "").strip() or None

    def info(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("INFO", event, post_id=post_id, **data)

    def warning(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("WARN", event, post_id=post_id, **data)

    def exception(self, event: str, *, exc: BaseException, post_id: str | None = None, **data: Any) -> None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        data["error"] = {
            "type": type(exc).__name__,
            "message": _clip(str(exc), _MESSAGE_LIMIT),
            "traceback": _clip(tb, _TRACEBACK_LIMIT),
        }
        self.log("ERROR", event, post_id=post_id, **data)

    def retry_scheduled(self, ev: RetryEvent) -> None:
        """`on_retry` hook for call_with_retries."""
        self.warning(
            "retry_scheduled",
            operation=ev.operation,
            context_id=ev.context_id,
            failure_attempt=ev.failure_attempt,
            next_attempt=ev.next_attempt,
            max_attempts=ev.max_attempts,
            delay_seconds=round(ev.delay_seconds, 3),
            retry_after_seconds=ev.retry_after_seconds,
            reason=ev.reason,
            error_type=ev.error_type,
            error_message=_clip(ev.error_message, _RETRY_MESSAGE_LIMIT),
        )

    def log(self, level: str, event: str, *, post_id: str | None = None, **data: Any) -> None:
        entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
            "pass_id": self._pass_id,
            "post_id": (post_id or "").strip() or None,
            "data": data or None,
        }
        line = json.dumps(
            {k: v for k, v in entry.items() if v is not None},
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        with self._lock:
            if self._fp is None:
                return
            self._fp.write(line + "\n")
            self._fp.flush()
