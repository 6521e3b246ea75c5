"""Per-tag audit reconciliation: verify, then sign exactly once."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from release_audit.audit.verification import Verifier, VerificationStatus
from release_audit.domain.release import Release
from release_audit.signatures.signer import Signer, SigningError
from release_audit.signatures.store import SignatureStore, SignatureStoreError

if TYPE_CHECKING:
    from release_audit.audit.tracker import AuditTracker
    from release_audit.controller.workqueue import DelayingQueue

logger = logging.getLogger(__name__)

DEFAULT_REQUEUE_DELAY_SECONDS = 10.0
DEFAULT_UPLOAD_TIMEOUT_SECONDS = 30.0

ReleaseLookup = Callable[[str, str], "Release | None"]
VerifierFactory = Callable[[Release], "Verifier | None"]


class AuditReconciler:
    """Drives one tracked release tag through verification and signing.

    Every call re-evaluates the record from scratch. Polling for a running
    verification job happens by requeueing the tag with a delay, never by
    blocking the worker.
    """

    def __init__(
        self,
        tracker: "AuditTracker",
        queue: "DelayingQueue",
        store: SignatureStore,
        release_lookup: ReleaseLookup,
        verifier_factory: VerifierFactory,
        signer: Signer | None = None,
        requeue_delay_seconds: float = DEFAULT_REQUEUE_DELAY_SECONDS,
        upload_timeout_seconds: float = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self._tracker = tracker
        self._queue = queue
        self._store = store
        self._release_lookup = release_lookup
        self._verifier_factory = verifier_factory
        self._signer = signer
        self._requeue_delay = requeue_delay_seconds
        self._upload_timeout = upload_timeout_seconds
        self._digest_locks: dict[str, threading.Lock] = {}
        self._digest_locks_guard = threading.Lock()

    def _lock_for(self, digest: str) -> threading.Lock:
        with self._digest_locks_guard:
            lock = self._digest_locks.get(digest)
            if lock is None:
                lock = self._digest_locks[digest] = threading.Lock()
            return lock

    def sync_tag(self, name: str) -> None:
        record = self._tracker.get(name)
        if record is None:
            return

        if record.failure is not None:
            logger.debug("Release %s already failed, ignoring until retry interval is up", name)
            return

        if not record.digest_id:
            message = f"Release {record.name} has no digest and cannot be verified"
            self._tracker.set_failure(record.name, message)
            logger.info(message)
            return

        release = self._release_lookup(record.source_namespace, record.source_name)
        if release is None:
            logger.debug(
                "Release stream %s/%s for %s is gone",
                record.source_namespace,
                record.source_name,
                name,
            )
            return

        if self._store.has_signature(record.digest_id):
            logger.debug("Release %s (%s) is already signed", record.digest_id, record.name)
            return

        verifier = self._verifier_factory(release)
        if verifier is None:
            logger.warning(
                "Unable to audit release %s, no configured audit CLI image or "
                "override CLI image defined on the stream",
                name,
            )
            return

        result = verifier.verify(record, release)
        if result.status is VerificationStatus.PENDING:
            logger.debug("Verification of %s pending (%s), requeueing", name, result.message)
            self._queue.add_after(name, self._requeue_delay)
            return
        if result.status is VerificationStatus.FAILED:
            self._tracker.set_failure(record.name, result.message or "Unable to verify release")
            return

        if self._signer is None:
            logger.info(
                "Completed audit of %s at %s without signing",
                name,
                release.source.resource_version,
            )
            return

        # Tags sharing a digest are signed one at a time.
        with self._lock_for(record.digest_id):
            if self._store.has_signature(record.digest_id):
                logger.debug("Release %s (%s) was signed concurrently", record.digest_id, name)
                return
            self._sign_and_store(record.digest_id, record.location)
        logger.info("Signed and uploaded signature for %s (%s)", record.digest_id, record.name)

    def _sign_and_store(self, digest: str, location: str) -> None:
        try:
            signature = self._signer.sign(digest, location)
        except SigningError:
            raise
        except Exception as exc:
            raise SigningError(f"unable to sign release: {exc}") from exc
        logger.debug("Signed %s: %d bytes", digest, len(signature))

        try:
            self._store.put_signature(digest, signature, timeout=self._upload_timeout)
        except SignatureStoreError:
            raise
        except Exception as exc:
            raise SignatureStoreError(f"unable to upload release signature: {exc}") from exc
