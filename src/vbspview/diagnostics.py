from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ISSUE_MATERIAL_FALLBACK = "material_fallback"
ISSUE_PROP_SKIPPED = "prop_skipped"
ISSUE_SKIN_FALLBACK = "skin_fallback"
ISSUE_BUMP_MAP_MISSING = "bump_map_missing"


@dataclass
class LoadIssue:
    ts: float
    kind: str
    subject: str
    message: str
    count: int = 1

    def summary_line(self) -> str:
        base = f"{self.kind}: {self.subject}: {self.message}".strip()
        if self.count > 1:
            base += f" (x{self.count})"
        return base


class LoadIssueLog:
    """
    In-memory feed of soft failures absorbed during one map load.

    Repeated identical issues (same kind, subject and message) are folded into one
    entry with a count, so a prop placed 200 times with a broken model shows up once.
    Safe to share between worker threads.
    """

    def __init__(self, *, max_items: int = 500) -> None:
        self._max_items = max(1, int(max_items))
        self._items: list[LoadIssue] = []
        self._index: dict[tuple[str, str, str], LoadIssue] = {}
        self._lock = threading.Lock()
        self.dropped = 0

    def items(self) -> list[LoadIssue]:
        with self._lock:
            return list(self._items)

    def count(self, kind: str | None = None) -> int:
        with self._lock:
            return sum(i.count for i in self._items if kind is None or i.kind == kind)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._index.clear()
            self.dropped = 0

    def record(self, *, kind: str, subject: str, message: str) -> None:
        kind = str(kind or "unknown")
        subject = str(subject or "")
        message = str(message or "").strip() or "Unknown error"
        key = (kind, subject, message)
        with self._lock:
            existing = self._index.get(key)
            if existing is not None:
                existing.ts = time.time()
                existing.count += 1
                return
            if len(self._items) >= self._max_items:
                self.dropped += 1
                return
            item = LoadIssue(ts=time.time(), kind=kind, subject=subject, message=message)
            self._items.append(item)
            self._index[key] = item

    def as_payload(self) -> list[dict[str, object]]:
        return [
            {"kind": i.kind, "subject": i.subject, "message": i.message, "count": i.count}
            for i in self.items()
        ]


def describe_exception(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}".strip()


def resolve_or_fallback(
    inner: Callable[[], T],
    placeholder: Callable[[Exception], T],
    *,
    kind: str,
    subject: str,
    issues: LoadIssueLog | None = None,
    level: int = logging.ERROR,
) -> T:
    """
    Run `inner`; on any failure log it, record it in `issues` and return `placeholder(exc)`.

    Used at every asset boundary that must not abort the whole load (materials, props).
    """
    try:
        return inner()
    except Exception as exc:
        msg = describe_exception(exc)
        logger.log(level, "%s: %s: %s", kind, subject, msg)
        if issues is not None:
            issues.record(kind=kind, subject=subject, message=msg)
        return placeholder(exc)
