from __future__ import annotations

import json
import subprocess
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from release_audit.cluster.jobs import (
    Job,
    JobControlPlaneError,
    KubectlJobControlPlane,
    build_verify_job_manifest,
    format_label_selector,
    job_is_complete,
)


def _completed(stdout: object = "", returncode: int = 0, stderr: str = ""):
    if not isinstance(stdout, str):
        stdout = json.dumps(stdout)
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)


JOB_MANIFEST = {
    "metadata": {
        "name": "verify-abc",
        "labels": {"release.openshift.io/purpose": "audit"},
        "annotations": {"release.openshift.io/releaseTag": "4.10.0"},
    },
    "status": {
        "active": 1,
        "failed": 2,
        "completionTime": "2023-01-01T12:00:00Z",
        "conditions": [{"type": "Complete", "status": "True"}],
    },
}


def test_job_from_manifest():
    job = Job.from_manifest(JOB_MANIFEST)

    assert job.name == "verify-abc"
    assert job.labels == {"release.openshift.io/purpose": "audit"}
    assert job.active == 1
    assert job.failed == 2
    assert job.completion_time == datetime(2023, 1, 1, 12, tzinfo=timezone.utc)
    assert job.failed_condition is False


def test_job_from_manifest_failed_condition():
    job = Job.from_manifest(
        {
            "metadata": {"name": "verify-abc"},
            "status": {"conditions": [{"type": "Failed", "status": "True"}]},
        }
    )

    assert job.completion_time is None
    assert job.failed_condition is True


@pytest.mark.parametrize(
    "job,expected",
    [
        (Job(name="a"), (False, False)),
        (Job(name="a", completion_time=datetime(2023, 1, 1, tzinfo=timezone.utc)), (True, True)),
        (Job(name="a", failed_condition=True), (False, True)),
        (Job(name="a", active=1, failed=1), (False, True)),
    ],
)
def test_job_is_complete(job, expected):
    assert job_is_complete(job) == expected


def test_format_label_selector_is_sorted():
    assert format_label_selector({"b": "2", "a": "1"}) == "a=1,b=2"


def test_build_verify_job_manifest_without_pull_secret():
    manifest = build_verify_job_manifest(
        name="verify-abc",
        image="quay.io/cli",
        location="registry.example/repo@sha256:abc",
        labels={"l": "v"},
        annotations={"a": "v"},
    )

    assert manifest["kind"] == "Job"
    assert manifest["spec"]["backoffLimit"] == 3
    pod_spec = manifest["spec"]["template"]["spec"]
    assert pod_spec["restartPolicy"] == "Never"
    assert "volumes" not in pod_spec
    container = pod_spec["containers"][0]
    assert container["name"] == "verify"
    assert container["terminationMessagePolicy"] == "FallbackToLogsOnError"
    assert container["command"] == [
        "/bin/bash",
        "-c",
        'oc adm release info --verify "$1"',
        "",
        "registry.example/repo@sha256:abc",
    ]


@patch("release_audit.cluster.jobs.subprocess.run")
def test_get_job(mock_run):
    mock_run.return_value = _completed(JOB_MANIFEST)

    job = KubectlJobControlPlane("ci-release").get_job("verify-abc")

    assert job.name == "verify-abc"
    cmd = mock_run.call_args.args[0]
    assert cmd == ["kubectl", "-n", "ci-release", "get", "job", "verify-abc", "-o", "json"]


@patch("release_audit.cluster.jobs.subprocess.run")
def test_get_job_not_found(mock_run):
    mock_run.return_value = _completed(
        returncode=1, stderr='Error from server (NotFound): jobs.batch "verify-abc" not found'
    )

    assert KubectlJobControlPlane("ci-release").get_job("verify-abc") is None


@patch("release_audit.cluster.jobs.subprocess.run")
def test_get_job_other_error(mock_run):
    mock_run.return_value = _completed(returncode=1, stderr="Forbidden")

    with pytest.raises(JobControlPlaneError, match="Forbidden"):
        KubectlJobControlPlane("ci-release").get_job("verify-abc")


@patch("release_audit.cluster.jobs.subprocess.run")
def test_create_job_sends_manifest_on_stdin(mock_run):
    mock_run.return_value = _completed(JOB_MANIFEST)
    manifest = {"kind": "Job", "metadata": {"name": "verify-abc"}}

    job = KubectlJobControlPlane("ci-release").create_job(manifest)

    assert job.name == "verify-abc"
    assert json.loads(mock_run.call_args.kwargs["input"]) == manifest


@patch("release_audit.cluster.jobs.subprocess.run")
def test_create_job_already_exists(mock_run):
    mock_run.return_value = _completed(returncode=1, stderr="Error (AlreadyExists): exists")

    with pytest.raises(JobControlPlaneError) as exc_info:
        KubectlJobControlPlane("ci-release").create_job({})

    assert exc_info.value.already_exists is True


@patch("release_audit.cluster.jobs.subprocess.run")
def test_list_jobs_uses_label_selector(mock_run):
    mock_run.return_value = _completed({"items": [JOB_MANIFEST, JOB_MANIFEST]})

    jobs = KubectlJobControlPlane("ci-release").list_jobs({"release.openshift.io/purpose": "audit"})

    assert len(jobs) == 2
    cmd = mock_run.call_args.args[0]
    assert cmd[3:] == ["get", "jobs", "-l", "release.openshift.io/purpose=audit", "-o", "json"]


@patch("release_audit.cluster.jobs.subprocess.run")
def test_list_container_statuses(mock_run):
    mock_run.return_value = _completed(
        {
            "items": [
                {
                    "metadata": {"name": "verify-abc-1"},
                    "status": {
                        "containerStatuses": [
                            {
                                "name": "verify",
                                "state": {
                                    "terminated": {
                                        "exitCode": 1,
                                        "message": "no signature",
                                        "finishedAt": "2023-01-01T12:00:00Z",
                                    }
                                },
                            },
                            {"name": "sidecar", "state": {"running": {}}},
                        ]
                    },
                },
                {
                    "metadata": {"name": "verify-abc-2"},
                    "status": {"containerStatuses": [{"name": "verify", "state": {}}]},
                },
            ]
        }
    )

    statuses = KubectlJobControlPlane("ci-release").list_container_statuses(
        "verify-abc", "status.phase=Failed", "verify"
    )

    assert [status.pod_name for status in statuses] == ["verify-abc-1", "verify-abc-2"]
    assert statuses[0].terminated.exit_code == 1
    assert statuses[0].terminated.message == "no signature"
    assert statuses[1].terminated is None
    cmd = mock_run.call_args.args[0]
    assert cmd[3:] == [
        "get",
        "pods",
        "-l",
        "job-name=verify-abc",
        "--field-selector",
        "status.phase=Failed",
        "-o",
        "json",
    ]


@patch("release_audit.cluster.jobs.subprocess.run")
def test_kubectl_timeout(mock_run):
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="kubectl", timeout=3)

    with pytest.raises(JobControlPlaneError, match="timed out"):
        KubectlJobControlPlane("ci-release", timeout_seconds=3).list_jobs({})


@patch("release_audit.cluster.jobs.subprocess.run")
def test_kubectl_missing_binary(mock_run):
    mock_run.side_effect = FileNotFoundError("kubectl")

    with pytest.raises(JobControlPlaneError, match="not found"):
        KubectlJobControlPlane("ci-release", kubectl="/opt/kubectl").list_jobs({})


@patch("release_audit.cluster.jobs.subprocess.run")
def test_invalid_json(mock_run):
    mock_run.return_value = _completed("not json")

    with pytest.raises(JobControlPlaneError, match="Invalid JSON"):
        KubectlJobControlPlane("ci-release").list_jobs({})


def test_kubectl_undecodable_error_output(tmp_path):
    kubectl = tmp_path / "kubectl"
    kubectl.write_text("#!/bin/sh\nprintf 'denied \\377\\376' >&2\nexit 1\n")
    kubectl.chmod(0o755)

    with pytest.raises(JobControlPlaneError, match="denied"):
        KubectlJobControlPlane("ci-release", kubectl=str(kubectl)).list_jobs({})
