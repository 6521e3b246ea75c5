"""Release verification backends.

Two variants exist: ``LocalVerifier`` runs the verification tool as a
subprocess of the controller, ``ClusterJobVerifier`` dispatches it as a batch
job and polls the job on later reconciliations.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Union

from release_audit.audit.throttle import JOB_PURPOSE_AUDIT, JobAdmissionThrottle
from release_audit.cluster.jobs import (
    Job,
    JobControlPlaneError,
    build_verify_job_manifest,
    job_is_complete,
)
from release_audit.config import LOCAL_VERIFY_IMAGE
from release_audit.domain.release import (
    ANNOTATION_JOB_PURPOSE,
    ANNOTATION_RELEASE_TAG,
    ANNOTATION_SOURCE,
    ANNOTATION_TARGET,
    Release,
)

if TYPE_CHECKING:
    from release_audit.audit.models import AuditRecord
    from release_audit.cluster.jobs import KubectlJobControlPlane

logger = logging.getLogger(__name__)

VERIFY_CONTAINER_NAME = "verify"
FAILED_POD_SELECTOR = "status.phase=Failed"
MAX_JOB_NAME_LENGTH = 63


class VerificationError(RuntimeError):
    """Raised when the verification tool could not be run at all."""


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    message: str | None = None

    @classmethod
    def verified(cls) -> "VerificationResult":
        return cls(VerificationStatus.VERIFIED)

    @classmethod
    def pending(cls, message: str | None = None) -> "VerificationResult":
        return cls(VerificationStatus.PENDING, message)

    @classmethod
    def failed(cls, message: str) -> "VerificationResult":
        return cls(VerificationStatus.FAILED, message)


class LocalVerifier:
    def __init__(self, command: str = "oc", timeout_seconds: int = 600) -> None:
        self._command = command
        self._timeout_seconds = timeout_seconds

    def verify(self, record: "AuditRecord", release: Release) -> VerificationResult:
        cmd = [self._command, "adm", "release", "info", "--verify", record.location]
        try:
            result = subprocess.run(
                cmd,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self._timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise VerificationError(
                f"{self._command} verify timed out after {self._timeout_seconds}s"
            ) from exc
        except FileNotFoundError as exc:
            raise VerificationError(f"Verification tool not found: {self._command}") from exc

        if result.returncode != 0:
            message = f"Unable to verify release:\n{(result.stdout or '').strip()}"
            logger.info("Release verification command failed: %s", message)
            return VerificationResult.failed(message)
        return VerificationResult.verified()


def verify_job_name(digest_id: str) -> str:
    """Derive a stable, scheduler-safe job name from a digest."""
    _, sep, encoded = digest_id.partition(":")
    name = f"verify-{encoded if sep else digest_id}"
    name = name.replace(":", "-")
    return name[:MAX_JOB_NAME_LENGTH]


class ClusterJobVerifier:
    def __init__(
        self,
        control_plane: "KubectlJobControlPlane",
        throttle: JobAdmissionThrottle,
        image: str,
    ) -> None:
        self._control_plane = control_plane
        self._throttle = throttle
        self._image = image

    @property
    def image(self) -> str:
        return self._image

    def verify(self, record: "AuditRecord", release: Release) -> VerificationResult:
        name = verify_job_name(record.digest_id)
        job = self._control_plane.get_job(name)
        if job is None:
            if not self._throttle.admit():
                return VerificationResult.pending("throttled")
            job = self._create_job(name, record, release)

        success, complete = job_is_complete(job)
        if not complete:
            return VerificationResult.pending("job running")
        if not success:
            failure_message = "Unable to verify release for unknown reason"
            message, _, _ = termination_message(
                self._control_plane, job, FAILED_POD_SELECTOR, VERIFY_CONTAINER_NAME
            )
            if message:
                failure_message = f"Unable to verify release:\n\n{message}"
            logger.info("Release verification job failed: %s", failure_message)
            return VerificationResult.failed(failure_message)
        return VerificationResult.verified()

    def _create_job(self, name: str, record: "AuditRecord", release: Release) -> Job:
        manifest = build_verify_job_manifest(
            name=name,
            image=self._image,
            location=record.location,
            pull_secret_name=release.config.pull_secret_name,
            container_name=VERIFY_CONTAINER_NAME,
            labels={ANNOTATION_JOB_PURPOSE: JOB_PURPOSE_AUDIT},
            annotations={
                ANNOTATION_SOURCE: release.source.key,
                ANNOTATION_TARGET: release.target.key,
                ANNOTATION_RELEASE_TAG: record.name,
                ANNOTATION_JOB_PURPOSE: JOB_PURPOSE_AUDIT,
            },
        )
        logger.info("Running release verify job for %s (%s)", record.digest_id, record.name)
        try:
            return self._control_plane.create_job(manifest)
        except JobControlPlaneError as exc:
            if not exc.already_exists:
                raise
        existing = self._control_plane.get_job(name)
        if existing is None:
            raise JobControlPlaneError(f"Job {name} reported as existing but could not be read")
        return existing


def termination_message(
    control_plane: "KubectlJobControlPlane",
    job: Job,
    pod_field_selector: str,
    container_name: str,
    only_success: bool = False,
) -> tuple[str, int, bool]:
    """Return the message and exit code of the most recently terminated container."""
    if job.active == 0:
        logger.debug("Deferring pod lookup for %s - no active pods", job.name)
        return "", 0, False
    try:
        statuses = control_plane.list_container_statuses(
            job.name, pod_field_selector, container_name
        )
    except JobControlPlaneError as exc:
        logger.warning("Unable to list pods for job %s: %s", job.name, exc)
        return "", 0, False

    def sort_key(status):
        if status.terminated is None:
            return (1, 0.0)
        return (0, _negated(status.terminated.finished_at))

    for status in sorted(statuses, key=sort_key):
        if status.terminated is None:
            continue
        if only_success and status.terminated.exit_code != 0:
            continue
        return status.terminated.message, status.terminated.exit_code, True
    return "", 0, False


def _negated(finished_at: datetime | None) -> float:
    if finished_at is None:
        return 0.0
    return -finished_at.timestamp()


Verifier = Union[LocalVerifier, ClusterJobVerifier]


def select_verifier(
    pinned_image: str | None,
    release: Release,
    control_plane: "KubectlJobControlPlane",
    throttle: JobAdmissionThrottle,
    verify_command: str = "oc",
    verify_timeout_seconds: int = 600,
) -> Verifier | None:
    """Pick the verification backend for one reconciliation.

    The controller's pinned image wins over the release's override image.
    ``None`` means no tool is configured and verification is skipped.
    """
    if pinned_image == LOCAL_VERIFY_IMAGE:
        return LocalVerifier(command=verify_command, timeout_seconds=verify_timeout_seconds)
    image = pinned_image or release.config.override_cli_image
    if not image:
        return None
    return ClusterJobVerifier(control_plane=control_plane, throttle=throttle, image=image)
