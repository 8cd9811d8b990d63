"""
Ordered Snapshot Writer

DESIGN DECISION: Persistence is fire-and-forget from the ledger's point of
view, but writes must reach storage in commit order. A single worker
thread drains a FIFO queue, so a stale snapshot can never overwrite a newer
one. As an extra guard every snapshot carries its revision and anything not
newer than the last written revision is dropped.

Failed writes are retried with exponential backoff and then reported
through `on_failure`; they are never raised into the mutation that
produced the snapshot.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from finance_engine.models.finance import LedgerSnapshot
from finance_engine.services.storage.interface import LedgerStorageInterface

logger = structlog.get_logger(__name__)

FailureCallback = Callable[[LedgerSnapshot, Exception], None]


class SnapshotWriter:
    """Serializes snapshot writes onto one background thread."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        retry_attempts: int = 3,
        on_failure: Optional[FailureCallback] = None,
        backoff_seconds: float = 0.5,
    ):
        self._storage = storage
        self._on_failure = on_failure
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-writer")
        self._lock = threading.Lock()
        self._latest: Optional[Future] = None
        self._last_written = -1
        self._save = retry(
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=10),
            reraise=True,
        )(storage.save)

    @property
    def last_written_revision(self) -> int:
        return self._last_written

    def submit(self, snapshot: LedgerSnapshot) -> Future:
        """Queue a snapshot. Returns immediately."""
        with self._lock:
            future = self._executor.submit(self._write, snapshot)
            self._latest = future
        return future

    def _write(self, snapshot: LedgerSnapshot) -> bool:
        if snapshot.revision <= self._last_written:
            logger.debug(
                "snapshot_skipped_stale",
                revision=snapshot.revision,
                last_written=self._last_written,
            )
            return False
        try:
            self._save(snapshot)
        except Exception as e:
            logger.error("snapshot_save_failed", revision=snapshot.revision, error=str(e))
            if self._on_failure:
                self._on_failure(snapshot, e)
            return False
        self._last_written = snapshot.revision
        logger.debug("snapshot_saved", revision=snapshot.revision)
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued snapshot has been handled.

        Returns False if the timeout expired first.
        """
        with self._lock:
            latest = self._latest
        if latest is None:
            return True
        done, _ = wait([latest], timeout=timeout)
        return bool(done)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
