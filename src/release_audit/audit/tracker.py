"""In-memory registry of release tags under audit."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from release_audit.audit.models import FAILURE_REASON_VERIFICATION, AuditFailure, AuditRecord
from release_audit.domain.release import AUDITABLE_PHASES, Release
from release_audit.utils.time import utc_now

if TYPE_CHECKING:
    from release_audit.controller.workqueue import DelayingQueue

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_COOLDOWN = timedelta(hours=12)


class AuditTracker:
    """Thread-safe map of release tag name to ``AuditRecord``.

    ``sync`` reconciles the map against one release and enqueues every tag
    whose record was created or changed. Records are only ever removed by a
    ``sync`` of the release that owns them.
    """

    def __init__(
        self,
        queue: "DelayingQueue",
        clock: Callable[[], datetime] = utc_now,
        failure_cooldown: timedelta = DEFAULT_FAILURE_COOLDOWN,
    ) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, AuditRecord] = {}
        self._queue = queue
        self._clock = clock
        self._failure_cooldown = failure_cooldown

    def set_failure(self, name: str, message: str) -> None:
        with self._lock:
            existing = self._records.get(name)
            if existing is None:
                return
            existing.observed_at = self._clock()
            existing.failure = AuditFailure(
                reason=FAILURE_REASON_VERIFICATION,
                message=message,
            )

    def get(self, name: str) -> AuditRecord | None:
        with self._lock:
            existing = self._records.get(name)
            if existing is None:
                return None
            return existing.copy()

    def records(self) -> list[AuditRecord]:
        with self._lock:
            return [self._records[name].copy() for name in sorted(self._records)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def sync(self, release: Release) -> None:
        if not release.is_stable:
            return

        with self._lock:
            now = self._clock()
            found: set[str] = set()
            target = release.target
            for tag in target.tags:
                if not tag.has_source or not tag.name:
                    continue
                if tag.phase not in AUDITABLE_PHASES:
                    continue

                found.add(tag.name)

                digest_id = release.find_image_id_for_tag(tag.name)
                location = release.find_public_pull_spec(tag.name)
                existing = self._records.get(tag.name)
                if existing is None:
                    self._records[tag.name] = AuditRecord(
                        observed_at=now,
                        name=tag.name,
                        digest_id=digest_id,
                        location=location,
                        release_name=release.config.name,
                        source_namespace=release.source.namespace,
                        source_name=release.source.name,
                    )
                    self._queue.add(tag.name)
                    logger.debug("Saw %s for the first time", tag.name)
                    continue

                changed = False
                if existing.location != location:
                    logger.warning(
                        "Location of %s changed from %s to %s",
                        tag.name,
                        existing.location,
                        location,
                    )
                    changed = True
                if existing.digest_id != digest_id:
                    logger.warning(
                        "Digest of %s changed from %s to %s",
                        tag.name,
                        existing.digest_id,
                        digest_id,
                    )
                    changed = True
                if now - existing.observed_at > self._failure_cooldown:
                    existing.observed_at = now
                    existing.failure = None
                    changed = True
                if changed:
                    self._queue.add(tag.name)

            stale = [
                name
                for name, record in self._records.items()
                if record.release_name == release.config.name and name not in found
            ]
            for name in stale:
                logger.warning("Release tag %s deleted", name)
                del self._records[name]
