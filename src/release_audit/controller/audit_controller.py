"""Worker pool and entry points that connect releases to the audit engine."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from release_audit.domain.release import Release

if TYPE_CHECKING:
    from release_audit.audit.reconciler import AuditReconciler
    from release_audit.audit.tracker import AuditTracker
    from release_audit.controller.workqueue import DelayingQueue

logger = logging.getLogger(__name__)

_GET_TIMEOUT_SECONDS = 1.0


@dataclass(frozen=True)
class ReleaseSyncResult:
    release_name: str
    ok: bool
    error: str | None = None


class ReleaseCache:
    """Latest release seen per source image stream (``namespace/name``)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._releases: dict[tuple[str, str], Release] = {}

    def put(self, release: Release) -> None:
        with self._lock:
            self._releases[(release.source.namespace, release.source.name)] = release

    def get(self, namespace: str, name: str) -> Release | None:
        with self._lock:
            return self._releases.get((namespace, name))


class AuditController:
    def __init__(
        self,
        tracker: "AuditTracker",
        reconciler: "AuditReconciler",
        queue: "DelayingQueue",
        releases: ReleaseCache,
    ) -> None:
        self._tracker = tracker
        self._reconciler = reconciler
        self._queue = queue
        self._releases = releases
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def tracker(self) -> "AuditTracker":
        return self._tracker

    @property
    def running(self) -> bool:
        with self._lock:
            return any(thread.is_alive() for thread in self._threads)

    def sync_release(self, release: Release) -> ReleaseSyncResult:
        """Feed one observed release into the tracker.

        Errors are logged and reported in the result instead of raised, so a
        single malformed release does not stop the caller's watch loop.
        """
        name = release.config.name
        try:
            self._releases.put(release)
            logger.debug("Audit %s", name)
            self._tracker.sync(release)
        except Exception as exc:
            logger.exception("Audit sync of release %s failed", name)
            return ReleaseSyncResult(release_name=name, ok=False, error=str(exc))
        return ReleaseSyncResult(release_name=name, ok=True)

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued tag. Returns False when nothing was processed."""
        key = self._queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self._reconciler.sync_tag(key)
        except Exception as exc:
            logger.error(
                "Audit of %s failed (retry %d): %s",
                key,
                self._queue.num_requeues(key) + 1,
                exc,
            )
            self._queue.add_rate_limited(key)
        else:
            self._queue.forget(key)
        finally:
            self._queue.done(key)
        return True

    def start(self, workers: int) -> None:
        with self._lock:
            for index in range(workers):
                thread = threading.Thread(
                    target=self._run_worker,
                    name=f"audit-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Started %d audit workers", workers)

    def stop(self, timeout: float | None = None) -> None:
        self._queue.shutdown()
        with self._lock:
            threads = list(self._threads)
            self._threads.clear()
        for thread in threads:
            thread.join(timeout)
        logger.info("Stopped audit workers")

    def _run_worker(self) -> None:
        while not self._queue.shutting_down:
            self.process_next(timeout=_GET_TIMEOUT_SECONDS)
