"""Batch job access for cluster-dispatched release verification."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime

from release_audit.utils.time import parse_timestamp

logger = logging.getLogger(__name__)

_PULL_SECRET_MOUNT = "/tmp/pull-secret"


class JobControlPlaneError(RuntimeError):
    """Raised when the cluster rejects or fails a job or pod request."""

    def __init__(self, message: str, already_exists: bool = False) -> None:
        super().__init__(message)
        self.already_exists = already_exists


@dataclass(frozen=True)
class TerminatedState:
    exit_code: int
    message: str
    finished_at: datetime | None


@dataclass(frozen=True)
class ContainerStatus:
    pod_name: str
    name: str
    terminated: TerminatedState | None = None


@dataclass(frozen=True)
class Job:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    completion_time: datetime | None = None
    failed_condition: bool = False

    @classmethod
    def from_manifest(cls, data: dict) -> "Job":
        metadata = data.get("metadata") or {}
        status = data.get("status") or {}
        failed_condition = any(
            condition.get("type") == "Failed" and condition.get("status") == "True"
            for condition in status.get("conditions") or []
        )
        return cls(
            name=metadata.get("name", ""),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            active=int(status.get("active") or 0),
            succeeded=int(status.get("succeeded") or 0),
            failed=int(status.get("failed") or 0),
            completion_time=parse_timestamp(status.get("completionTime")),
            failed_condition=failed_condition,
        )


def job_is_complete(job: Job) -> tuple[bool, bool]:
    """Return ``(succeeded, complete)`` for a job.

    A job with any failed pod is complete and unsuccessful, even while a
    retry pod is still active.
    """
    if job.completion_time is not None:
        return True, True
    if job.failed_condition or job.failed > 0:
        return False, True
    return False, False


def format_label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def build_verify_job_manifest(
    name: str,
    image: str,
    location: str,
    labels: dict[str, str],
    annotations: dict[str, str],
    pull_secret_name: str | None = None,
    container_name: str = "verify",
) -> dict[str, object]:
    script = 'oc adm release info --verify "$1"'
    container: dict[str, object] = {
        "name": container_name,
        "image": image,
        "command": ["/bin/bash", "-c", script, "", location],
        "terminationMessagePolicy": "FallbackToLogsOnError",
    }
    pod_spec: dict[str, object] = {
        "restartPolicy": "Never",
        "containers": [container],
    }
    if pull_secret_name:
        container["command"] = [
            "/bin/bash",
            "-c",
            (
                "mkdir -p \"$HOME/.docker\" && "
                f"cp {_PULL_SECRET_MOUNT}/.dockerconfigjson \"$HOME/.docker/config.json\" && "
                + script
            ),
            "",
            location,
        ]
        container["volumeMounts"] = [
            {"name": "pull-secret", "mountPath": _PULL_SECRET_MOUNT, "readOnly": True}
        ]
        pod_spec["volumes"] = [
            {"name": "pull-secret", "secret": {"secretName": pull_secret_name}}
        ]

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": name,
            "labels": dict(labels),
            "annotations": dict(annotations),
        },
        "spec": {
            "backoffLimit": 3,
            "template": {"spec": pod_spec},
        },
    }


class KubectlJobControlPlane:
    """Job and pod operations in one namespace, executed through ``kubectl``."""

    def __init__(
        self,
        namespace: str,
        kubectl: str = "kubectl",
        timeout_seconds: int = 30,
    ) -> None:
        self._namespace = namespace
        self._kubectl = kubectl
        self._timeout_seconds = timeout_seconds

    @property
    def namespace(self) -> str:
        return self._namespace

    def get_job(self, name: str) -> Job | None:
        result = self._run(["get", "job", name, "-o", "json"], check=False)
        if result.returncode != 0:
            if "NotFound" in result.stderr:
                return None
            raise JobControlPlaneError(
                f"kubectl get job {name} failed (exit {result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return Job.from_manifest(self._decode(result.stdout))

    def create_job(self, manifest: dict[str, object]) -> Job:
        result = self._run(
            ["create", "-f", "-", "-o", "json"],
            stdin=json.dumps(manifest),
            check=False,
        )
        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise JobControlPlaneError(
                f"kubectl create job failed (exit {result.returncode}): {stderr}",
                already_exists="AlreadyExists" in stderr,
            )
        return Job.from_manifest(self._decode(result.stdout))

    def list_jobs(self, label_selector: dict[str, str]) -> list[Job]:
        result = self._run(
            ["get", "jobs", "-l", format_label_selector(label_selector), "-o", "json"]
        )
        payload = self._decode(result.stdout)
        return [Job.from_manifest(item) for item in payload.get("items") or []]

    def list_container_statuses(
        self,
        job_name: str,
        field_selector: str,
        container_name: str,
    ) -> list[ContainerStatus]:
        args = ["get", "pods", "-l", f"job-name={job_name}"]
        if field_selector:
            args.extend(["--field-selector", field_selector])
        result = self._run([*args, "-o", "json"])
        payload = self._decode(result.stdout)

        statuses: list[ContainerStatus] = []
        for pod in payload.get("items") or []:
            pod_name = (pod.get("metadata") or {}).get("name", "")
            for status in (pod.get("status") or {}).get("containerStatuses") or []:
                if status.get("name") != container_name:
                    continue
                terminated = (status.get("state") or {}).get("terminated")
                statuses.append(
                    ContainerStatus(
                        pod_name=pod_name,
                        name=container_name,
                        terminated=(
                            TerminatedState(
                                exit_code=int(terminated.get("exitCode") or 0),
                                message=terminated.get("message") or "",
                                finished_at=parse_timestamp(terminated.get("finishedAt")),
                            )
                            if terminated
                            else None
                        ),
                    )
                )
        return statuses

    def _run(
        self,
        args: list[str],
        stdin: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self._kubectl, "-n", self._namespace, *args]
        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                check=False,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self._timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise JobControlPlaneError(
                f"kubectl {args[0]} timed out after {self._timeout_seconds}s"
            ) from exc
        except FileNotFoundError as exc:
            raise JobControlPlaneError(f"kubectl binary not found: {self._kubectl}") from exc
        if check and result.returncode != 0:
            raise JobControlPlaneError(
                f"kubectl {args[0]} failed (exit {result.returncode}): {result.stderr.strip()}"
            )
        return result

    @staticmethod
    def _decode(stdout: str) -> dict:
        try:
            return json.loads(stdout or "{}")
        except json.JSONDecodeError as exc:
            raise JobControlPlaneError(f"Invalid JSON from kubectl: {exc}") from exc
