"""Admission check for cluster verification jobs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from release_audit.cluster.jobs import JobControlPlaneError
from release_audit.domain.release import ANNOTATION_JOB_PURPOSE

if TYPE_CHECKING:
    from release_audit.cluster.jobs import KubectlJobControlPlane

logger = logging.getLogger(__name__)

JOB_PURPOSE_AUDIT = "audit"
AUDIT_JOB_SELECTOR = {ANNOTATION_JOB_PURPOSE: JOB_PURPOSE_AUDIT}
DEFAULT_MAX_UNFINISHED_JOBS = 2


class JobAdmissionThrottle:
    """Caps unfinished audit jobs by re-counting them in the cluster.

    Nothing is remembered between calls, so the count stays correct across
    controller restarts. Any listing failure refuses admission.
    """

    def __init__(
        self,
        control_plane: "KubectlJobControlPlane",
        limit: int = DEFAULT_MAX_UNFINISHED_JOBS,
    ) -> None:
        self._control_plane = control_plane
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    def count_unfinished(self) -> tuple[int, bool]:
        try:
            jobs = self._control_plane.list_jobs(AUDIT_JOB_SELECTOR)
        except JobControlPlaneError as exc:
            logger.warning("Unable to list audit jobs: %s", exc)
            return 0, False
        count = sum(1 for job in jobs if job.completion_time is None)
        return count, True

    def admit(self) -> bool:
        count, ok = self.count_unfinished()
        if not ok or count >= self._limit:
            logger.info("Throttling verify jobs to max %d (unfinished=%d)", self._limit, count)
            return False
        return True
