from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterator

from crmguard.core.errors import BackupStateError


class ArtifactLeases:
    """In-process registry of backup jobs whose artifact is in use.

    A restore holds a lease for its duration; retention cleanup skips leased
    jobs so an artifact is never deleted underneath a running restore.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[int] = set()

    def acquire(self, job_id: int) -> None:
        with self._lock:
            if job_id in self._held:
                raise BackupStateError(f"Backup {job_id} is already being restored")
            self._held.add(job_id)

    def release(self, job_id: int) -> None:
        with self._lock:
            self._held.discard(job_id)

    def is_leased(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._held

    @contextmanager
    def hold(self, job_id: int) -> Iterator[None]:
        self.acquire(job_id)
        try:
            yield
        finally:
            self.release(job_id)


# Shared by every orchestrator in the process.
artifact_leases = ArtifactLeases()
