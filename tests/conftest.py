"""Shared fixtures for the appbuilder test suite."""

from pathlib import Path

import pytest

from appbuilder.builds.context import BuildContext
from appbuilder.builds.state import FileState

GIT_SHA = "0123456789abcdef0123456789abcdef01234567"
GIT_LOG = f"commit {GIT_SHA}\nAuthor: Dev <dev@example.com>\n\n    Initial commit\n"


def fake_git(args: list[str]) -> str:
    """Answer the git commands FileState runs."""
    if args[:1] == ["rev-parse"]:
        return GIT_SHA + "\n"
    if args[:1] == ["log"]:
        return GIT_LOG
    raise AssertionError(f"unexpected git command: {args}")


def make_context(**overrides: object) -> BuildContext:
    """Create a BuildContext without reading the process environment."""
    values: dict[str, object] = {
        "app_name": "myapp",
        "artifact_bucket": "artifacts",
        "branch": "main",
        "build_id": "myapp-build:1234",
        "build_number": "42",
        "webhook_event": "",
        "source_version": "main",
        "repo": "123456789012.dkr.ecr.us-east-1.amazonaws.com/myapp",
        "pipeline": False,
        "review_app_status": "",
    }
    values.update(overrides)
    return BuildContext.model_construct(**values)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Empty source checkout."""
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture
def state(tmp_path: Path, work_dir: Path) -> FileState:
    """FileState over the work directory with a fake git."""
    return FileState(
        work_dir=work_dir,
        env_file=tmp_path / "env.json",
        manifest_filename="apppack.toml",
        git=fake_git,
    )
