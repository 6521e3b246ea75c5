"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from release_audit.audit.reconciler import AuditReconciler
from release_audit.audit.throttle import JobAdmissionThrottle
from release_audit.audit.tracker import AuditTracker
from release_audit.audit.verification import Verifier, select_verifier
from release_audit.cluster.jobs import KubectlJobControlPlane
from release_audit.config import Settings, load_settings
from release_audit.controller.audit_controller import AuditController, ReleaseCache
from release_audit.controller.workqueue import DelayingQueue
from release_audit.domain.release import Release
from release_audit.signatures.signer import Signer
from release_audit.signatures.store import (
    S3SignatureStore,
    SignatureStore,
    SqliteSignatureStore,
)


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once per process. The watch loop feeds releases into
    ``controller.sync_release``.
    """

    settings: Settings
    queue: DelayingQueue
    tracker: AuditTracker
    store: SignatureStore
    control_plane: KubectlJobControlPlane
    throttle: JobAdmissionThrottle
    reconciler: AuditReconciler
    controller: AuditController


def build_signature_store(settings: Settings) -> SignatureStore:
    storage = settings.storage
    if storage.backend == "s3":
        if not storage.s3_bucket:
            raise RuntimeError("SIGNATURE_S3_BUCKET is required for the s3 signature store")
        return S3SignatureStore(
            bucket=storage.s3_bucket,
            prefix=storage.s3_prefix,
            region=storage.s3_region,
            timeout_seconds=settings.audit.upload_timeout_seconds,
        )
    return SqliteSignatureStore(storage.sqlite_path, wal=storage.sqlite_wal)


def build_app_context(
    settings: Settings,
    signer: Signer | None = None,
    store: SignatureStore | None = None,
    control_plane: KubectlJobControlPlane | None = None,
) -> AppContext:
    audit = settings.audit
    queue = DelayingQueue()
    tracker = AuditTracker(
        queue,
        failure_cooldown=timedelta(hours=audit.failure_cooldown_hours),
    )
    if store is None:
        store = build_signature_store(settings)
    if control_plane is None:
        control_plane = KubectlJobControlPlane(
            namespace=audit.job_namespace,
            kubectl=settings.cluster.kubectl,
            timeout_seconds=settings.cluster.timeout_seconds,
        )
    throttle = JobAdmissionThrottle(control_plane, limit=audit.max_unfinished_jobs)
    releases = ReleaseCache()

    def verifier_factory(release: Release) -> Verifier | None:
        return select_verifier(
            audit.cli_image,
            release,
            control_plane,
            throttle,
            verify_command=audit.verify_command,
            verify_timeout_seconds=audit.verify_timeout_seconds,
        )

    reconciler = AuditReconciler(
        tracker=tracker,
        queue=queue,
        store=store,
        release_lookup=releases.get,
        verifier_factory=verifier_factory,
        signer=signer,
        requeue_delay_seconds=audit.requeue_delay_seconds,
        upload_timeout_seconds=audit.upload_timeout_seconds,
    )
    controller = AuditController(tracker, reconciler, queue, releases)

    return AppContext(
        settings=settings,
        queue=queue,
        tracker=tracker,
        store=store,
        control_plane=control_plane,
        throttle=throttle,
        reconciler=reconciler,
        controller=controller,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
