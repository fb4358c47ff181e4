"""
Request deduplication cache.

Identical requests (same method, normalised URL, user and client IP)
seen within the TTL window are treated as duplicates and produce no
audit events. State is in-process; each application instance keeps its
own window.
"""

import hashlib
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

import structlog

logger = structlog.get_logger(__name__)


def normalize_url(url: str) -> str:
    """
    Lowercase the path, drop a trailing slash and sort query parameters.

    Path ids are kept, so requests for different records stay distinct.
    """
    parts = urlsplit(url)
    path = parts.path.lower().rstrip("/") or "/"
    if not parts.query:
        return path
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return f"{path}?{query}"


@dataclass(frozen=True)
class DedupKey:
    method: str
    normalized_url: str
    user_id: str
    client_ip: str

    @classmethod
    def build(
        cls,
        method: str,
        url: str,
        user_id: Optional[str],
        client_ip: Optional[str],
    ) -> "DedupKey":
        return cls(
            method=method.upper(),
            normalized_url=normalize_url(url),
            user_id=user_id or "anonymous",
            client_ip=client_ip or "unknown",
        )

    @property
    def digest(self) -> str:
        raw = "|".join((self.method, self.normalized_url, self.user_id, self.client_ip))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DedupCache:
    """
    TTL cache of processed request keys.

    Entries are evicted lazily on access, by ``sweep()``, and oldest
    first once ``max_entries`` is reached. ``check_and_mark`` is atomic:
    among concurrent callers with the same key exactly one gets a token.
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        # digest -> (token, inserted_at)
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()

    def _live(self, digest: str, now: float) -> bool:
        entry = self._entries.get(digest)
        if entry is None:
            return False
        if now - entry[1] >= self.ttl_seconds:
            del self._entries[digest]
            return False
        return True

    def _insert(self, digest: str, now: float) -> str:
        token = uuid.uuid4().hex
        self._entries[digest] = (token, now)
        self._entries.move_to_end(digest)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return token

    def is_processed(self, key: DedupKey) -> bool:
        with self._lock:
            return self._live(key.digest, self._clock())

    def mark_processed(self, key: DedupKey) -> str:
        with self._lock:
            return self._insert(key.digest, self._clock())

    def check_and_mark(self, key: DedupKey) -> Optional[str]:
        """Mark ``key`` and return a token, or None when it is a duplicate."""
        digest = key.digest
        with self._lock:
            now = self._clock()
            if self._live(digest, now):
                return None
            return self._insert(digest, now)

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                digest for digest, (_, inserted_at) in self._entries.items()
                if now - inserted_at >= self.ttl_seconds
            ]
            for digest in expired:
                del self._entries[digest]
        if expired:
            logger.debug("Swept expired dedup entries", removed=len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
