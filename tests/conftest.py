from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from release_audit import config
from release_audit.domain.release import (
    ANNOTATION_PHASE,
    ANNOTATION_SOURCE,
    ImageStream,
    Release,
    ReleaseConfig,
    ReleaseTag,
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2023, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    # Keep the developer's .env and data directory out of unit tests.
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "signatures.sqlite"))
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def tag(
    name: str,
    image_id: str = "",
    phase: str = "Accepted",
    source: bool = True,
) -> ReleaseTag:
    annotations = {ANNOTATION_PHASE: phase}
    if source:
        annotations[ANNOTATION_SOURCE] = "ocp/release"
    return ReleaseTag(name=name, annotations=annotations, image_id=image_id)


def make_release(
    name: str = "4.10.0-0.ci",
    tags: tuple[ReleaseTag, ...] = (),
    publish_as: str = "Stable",
    source_name: str | None = None,
    override_cli_image: str | None = None,
    pull_secret_name: str | None = None,
    public_repository: str = "registry.example/repo",
) -> Release:
    return Release(
        config=ReleaseConfig(
            name=name,
            publish_as=publish_as,
            override_cli_image=override_cli_image,
            pull_secret_name=pull_secret_name,
        ),
        source=ImageStream(
            namespace="ocp",
            name=source_name or name,
            resource_version="42",
        ),
        target=ImageStream(
            namespace="ocp",
            name="release",
            public_repository=public_repository,
            tags=tags,
        ),
    )


@pytest.fixture
def release_factory():
    return make_release


@pytest.fixture
def tag_factory():
    return tag
