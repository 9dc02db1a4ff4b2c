import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from filerelay.models import FileMetadata, FileRecord

logger = logging.getLogger(__name__)

KEY_BYTES = 16


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_key() -> str:
    return secrets.token_hex(KEY_BYTES)


class FileNotFound(LookupError):
    def __init__(self, key: str):
        super().__init__(f"no file registered under key {key!r}")
        self.key = key


class FileRegistry:
    """In-memory key -> FileRecord store.

    All reads and writes go through one lock. Records are immutable pydantic
    models; the access counter is bumped by swapping in a copy, so a reader
    always gets either the old or the new record and never a mix.
    """

    def __init__(
        self,
        *,
        record_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        key_factory: Callable[[], str] = generate_key,
    ):
        self._records: dict[str, FileRecord] = {}
        self._lock = threading.Lock()
        self._ttl = timedelta(seconds=record_ttl_seconds) if record_ttl_seconds else None
        self._clock = clock
        self._key_factory = key_factory

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._records

    def issue(self, metadata: FileMetadata) -> str:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            key = self._key_factory()
            while key in self._records:
                logger.warning("Key collision while issuing, regenerating")
                key = self._key_factory()
            self._records[key] = FileRecord(key=key, created_at=now, **metadata.model_dump())
        return key

    def lookup(self, key: str) -> FileRecord:
        with self._lock:
            record = self._records.get(key)
            if record is not None and self._is_expired(record, self._clock()):
                del self._records[key]
                record = None
        if record is None:
            raise FileNotFound(key)
        return record

    def record_access(self, key: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return
            self._records[key] = record.model_copy(update={"access_count": record.access_count + 1})

    def _is_expired(self, record: FileRecord, now: datetime) -> bool:
        return self._ttl is not None and now - record.created_at >= self._ttl

    def _evict_expired(self, now: datetime) -> None:
        if self._ttl is None:
            return
        expired = [key for key, record in self._records.items() if self._is_expired(record, now)]
        for key in expired:
            del self._records[key]
        if expired:
            logger.info("Evicted %d expired file records", len(expired))
