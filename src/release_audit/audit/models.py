"""Data models for tracked release audits."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime

FAILURE_REASON_VERIFICATION = "VerificationFailed"


@dataclass
class AuditFailure:
    reason: str
    message: str


@dataclass
class AuditRecord:
    observed_at: datetime
    name: str
    digest_id: str
    location: str

    release_name: str
    source_namespace: str
    source_name: str

    failure: AuditFailure | None = None

    def copy(self) -> "AuditRecord":
        failure = dataclasses.replace(self.failure) if self.failure is not None else None
        return dataclasses.replace(self, failure=failure)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "observed_at": self.observed_at.isoformat(),
            "digest_id": self.digest_id,
            "location": self.location,
            "release_name": self.release_name,
            "source": f"{self.source_namespace}/{self.source_name}",
            "failure": dataclasses.asdict(self.failure) if self.failure is not None else None,
        }
