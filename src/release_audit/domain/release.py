"""Resolved release descriptions handed to the audit engine."""

from __future__ import annotations

from dataclasses import dataclass, field

ANNOTATION_SOURCE = "release.openshift.io/source"
ANNOTATION_TARGET = "release.openshift.io/target"
ANNOTATION_PHASE = "release.openshift.io/phase"
ANNOTATION_RELEASE_TAG = "release.openshift.io/releaseTag"
ANNOTATION_JOB_PURPOSE = "release.openshift.io/purpose"

PUBLISH_AS_STABLE = "Stable"

PHASE_ACCEPTED = "Accepted"
PHASE_READY = "Ready"
PHASE_REJECTED = "Rejected"
AUDITABLE_PHASES = frozenset({PHASE_ACCEPTED, PHASE_READY, PHASE_REJECTED})


@dataclass(frozen=True)
class ReleaseConfig:
    name: str
    publish_as: str = ""
    override_cli_image: str | None = None
    pull_secret_name: str | None = None


@dataclass(frozen=True)
class ReleaseTag:
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    image_id: str = ""

    @property
    def phase(self) -> str:
        return self.annotations.get(ANNOTATION_PHASE, "")

    @property
    def has_source(self) -> bool:
        return ANNOTATION_SOURCE in self.annotations


@dataclass(frozen=True)
class ImageStream:
    namespace: str
    name: str
    public_repository: str = ""
    tags: tuple[ReleaseTag, ...] = ()
    resource_version: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def find_tag(self, name: str) -> ReleaseTag | None:
        for tag in self.tags:
            if tag.name == name:
                return tag
        return None


@dataclass(frozen=True)
class Release:
    """A release configuration with its source and published (target) streams."""

    config: ReleaseConfig
    source: ImageStream
    target: ImageStream

    @property
    def is_stable(self) -> bool:
        return self.config.publish_as == PUBLISH_AS_STABLE

    def find_image_id_for_tag(self, name: str) -> str:
        tag = self.target.find_tag(name)
        if tag is None:
            return ""
        return tag.image_id

    def find_public_pull_spec(self, name: str) -> str:
        repository = self.target.public_repository
        if not repository:
            return ""
        image_id = self.find_image_id_for_tag(name)
        if image_id:
            return f"{repository}@{image_id}"
        return f"{repository}:{name}"
