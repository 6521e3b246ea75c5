"""Persistent storage for release signatures."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from release_audit.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class SignatureStoreError(RuntimeError):
    """Raised when a signature cannot be read or written."""


class SignatureStore(Protocol):
    def has_signature(self, digest: str) -> bool: ...

    def put_signature(
        self, digest: str, signature: bytes, timeout: float | None = None
    ) -> None: ...


class SqliteSignatureStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS signatures (
                digest TEXT PRIMARY KEY,
                signature BLOB NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    def has_signature(self, digest: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM signatures WHERE digest = ?", (digest,)
            ).fetchone()
        return row is not None

    def put_signature(self, digest: str, signature: bytes, timeout: float | None = None) -> None:
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise SignatureStoreError(f"Timed out after {timeout}s storing signature for {digest}")
        try:
            self._conn.execute(
                "INSERT INTO signatures (digest, signature, created_at) VALUES (?, ?, ?)",
                (digest, sqlite3.Binary(signature), utc_now_iso()),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            raise SignatureStoreError(f"Signature for {digest} already stored") from exc
        except sqlite3.Error as exc:
            raise SignatureStoreError(f"Unable to store signature for {digest}: {exc}") from exc
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True


def signature_key(prefix: str, digest: str) -> str:
    """Object key for the first signature of a digest: ``<prefix>/sha256=<hex>/signature-1``."""
    algorithm, sep, encoded = digest.partition(":")
    if not sep:
        raise SignatureStoreError(f"Digest {digest!r} has no algorithm prefix")
    path = f"{algorithm}={encoded}/signature-1"
    prefix = prefix.strip("/")
    return f"{prefix}/{path}" if prefix else path


class S3SignatureStore:
    def __init__(
        self,
        bucket: str,
        prefix: str = "signatures",
        region: str | None = None,
        timeout_seconds: float = 30.0,
        client: Any = None,
    ) -> None:
        self._bucket = bucket
        self._prefix = prefix
        if client is None:
            session = boto3.Session(region_name=region)
            client = session.client(
                "s3",
                config=Config(
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    retries={"max_attempts": 2},
                ),
            )
        self._client = client

    def has_signature(self, digest: str) -> bool:
        key = signature_key(self._prefix, digest)
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return False
            raise SignatureStoreError(
                f"Unable to check signature s3://{self._bucket}/{key}: {code}"
            ) from exc
        except BotoCoreError as exc:
            raise SignatureStoreError(
                f"Unable to check signature s3://{self._bucket}/{key}: {exc}"
            ) from exc
        return True

    def put_signature(self, digest: str, signature: bytes, timeout: float | None = None) -> None:
        # The client's read/connect timeouts bound the upload.
        key = signature_key(self._prefix, digest)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=signature,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as exc:
            raise SignatureStoreError(
                f"Unable to upload signature s3://{self._bucket}/{key}: {exc}"
            ) from exc
        logger.info("Uploaded signature for %s to s3://%s/%s", digest, self._bucket, key)
