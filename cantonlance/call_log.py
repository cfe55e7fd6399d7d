"""Rolling log of every ledger call, newest first."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, List, Optional

DEFAULT_CALL_LOG_SIZE = 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ApiCall:
    """One request/response pair, kept for human inspection."""

    party: str
    method: str
    endpoint: str
    request_body: Optional[Any]
    response_body: Any
    response_count: int
    description: str
    timestamp: str = field(default_factory=_now_iso)
    ok: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CallLog:
    """Bounded, append-only call log.

    Entries are kept most-recent-first; once ``max_entries`` is reached the
    oldest entry is evicted. Appends from several call sites are serialized
    by a lock.
    """

    def __init__(self, max_entries: int = DEFAULT_CALL_LOG_SIZE) -> None:
        self._max_entries = max_entries
        self._entries: Deque[ApiCall] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def record(self, call: ApiCall) -> ApiCall:
        with self._lock:
            self._entries.appendleft(call)
        return call

    def entries(self, limit: Optional[int] = None) -> List[ApiCall]:
        """Snapshot of the log, newest first."""
        with self._lock:
            items = list(self._entries)
        return items[:limit] if limit is not None else items

    def latest(self) -> Optional[ApiCall]:
        with self._lock:
            return self._entries[0] if self._entries else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
