"""Working-tree state shared by the pipeline phases.

This module handles:
- The skip-build marker (idempotency gate for a build id)
- Output artifacts downstream consumers expect to exist
- The addon override env file
- Git metadata (revision, commit description, relocated .git directories)
- Unpacking files copied out of containers
"""

from __future__ import annotations

import io
import json
import logging
import re
import shutil
import subprocess
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import IO

from appbuilder.manifests.io import PROCESS_METADATA_FILENAME, write_json
from appbuilder.types import AppBuilderError

logger = logging.getLogger(__name__)

BUILD_LOG_FILENAME = "build.log"
TEST_LOG_FILENAME = "test.log"
COMMIT_FILENAME = "commit.txt"

GITDIR_PATTERN = re.compile(r"^gitdir:\s*(.*)$")

GitRunner = Callable[[list[str]], str]


class StateError(AppBuilderError):
    """Raised when working-tree state cannot be read or written."""

    def __init__(self, message: str, code: str = "state_error") -> None:
        super().__init__(message, code)


def run_git(args: list[str], cwd: Path | None = None) -> str:
    """Run a git command and return its stdout.

    Raises:
        StateError: If git fails or cannot be executed.
    """
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise StateError(
            f"git {' '.join(args)} failed: {e.stderr.strip()}",
            code="git_error",
        ) from e
    except OSError as e:
        raise StateError(f"Failed to run git: {e}", code="git_error") from e
    return result.stdout


def skip_marker_filename(build_id: str) -> str:
    """Return the marker filename for a build id."""
    return f".appbuilder-skip-build-{build_id}"


class FileState:
    """Files the pipeline reads and writes in the work directory.

    Args:
        work_dir: Source checkout.
        env_file: Location of the addon override env file.
        manifest_filename: Build manifest filename, relative to work_dir.
        git: Optional git runner taking argv (without ``git``), for tests.
    """

    def __init__(
        self,
        work_dir: Path,
        env_file: Path,
        manifest_filename: str,
        git: GitRunner | None = None,
    ) -> None:
        self.work_dir = work_dir
        self.env_file = env_file
        self.manifest_filename = manifest_filename
        self._git = git or (lambda args: run_git(args, cwd=self.work_dir))

    def path(self, name: str) -> Path:
        """Return a path inside the work directory."""
        return self.work_dir / name

    def file_exists(self, name: str) -> bool:
        """Return True if name exists in the work directory."""
        return self.path(name).exists()

    # Skip gate

    def write_skip_marker(self, build_id: str) -> None:
        """Mark a build id as done; writing twice is harmless."""
        marker = self.path(skip_marker_filename(build_id))
        logger.debug("Writing skip marker %s", marker.name)
        marker.touch(exist_ok=True)

    def has_skip_marker(self, build_id: str) -> bool:
        """Return True if the build id has been marked done."""
        return self.path(skip_marker_filename(build_id)).exists()

    def required_artifacts(self) -> list[str]:
        """Files downstream consumers expect after every build."""
        return [
            self.manifest_filename,
            BUILD_LOG_FILENAME,
            PROCESS_METADATA_FILENAME,
            TEST_LOG_FILENAME,
        ]

    def create_if_not_exists(self) -> None:
        """Touch every required artifact that is missing."""
        for name in self.required_artifacts():
            target = self.path(name)
            if not target.exists():
                logger.debug("Touching %s", name)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.touch()

    def finish_build(self) -> None:
        """Record the commit and make sure every required artifact exists."""
        self.write_commit_txt()
        self.create_if_not_exists()

    def skip_build(self, build_id: str) -> None:
        """Finish the build and mark the build id as done."""
        self.finish_build()
        self.write_skip_marker(build_id)

    # Override env file

    def write_env_file(self, env: dict[str, str]) -> None:
        """Persist the addon env overlay."""
        logger.debug("Writing override env vars to %s", self.env_file)
        write_json(self.env_file, env)

    def read_env_file(self) -> dict[str, str]:
        """Read the addon env overlay.

        Raises:
            FileNotFoundError: If the file was never written.
            StateError: If the file is not a JSON object of strings.
        """
        with open(self.env_file, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise StateError(
                    f"Invalid override env file {self.env_file}: {e}",
                    code="invalid_env_file",
                ) from e
        if not isinstance(data, dict):
            raise StateError(
                f"Override env file {self.env_file} is not an object",
                code="invalid_env_file",
            )
        return {str(k): str(v) for k, v in data.items()}

    # Git

    def git_sha(self) -> str:
        """Return the current revision."""
        logger.debug("Fetching git sha")
        return self._git(["rev-parse", "HEAD"]).strip()

    def write_commit_txt(self) -> None:
        """Write the current commit description to commit.txt."""
        logger.debug("Fetching git log")
        description = self._git(["log", "-n1", "--decorate=no"])
        logger.debug("Writing %s", COMMIT_FILENAME)
        self.path(COMMIT_FILENAME).write_text(description, encoding="utf-8")

    def relocate_git_dir(self) -> None:
        """Replace a ``.git`` pointer file with the directory it points to.

        Some CI checkouts leave a ``.git`` file containing ``gitdir: <path>``
        instead of a directory; tools run inside build containers need the
        real directory at the root of the checkout.

        Raises:
            StateError: If .git is missing or the pointer cannot be parsed.
        """
        git_path = self.path(".git")
        if not git_path.exists():
            raise StateError(f"{git_path} not found", code="git_missing")
        if git_path.is_dir():
            return
        content = git_path.read_text(encoding="utf-8").strip()
        match = GITDIR_PATTERN.match(content)
        if match is None:
            raise StateError("Failed to parse .git file", code="git_pointer_invalid")
        source = Path(match.group(1).strip())
        if not source.is_absolute():
            source = self.work_dir / source
        logger.info("Moving git directory %s into the checkout", source)
        staging = self.path(".git.relocating")
        if staging.exists():
            shutil.rmtree(staging)
        # source and destination may be on different filesystems
        try:
            shutil.copytree(source, staging, symlinks=True)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise StateError(
                f"Failed to copy git directory {source}: {e}",
                code="git_copy_failed",
            ) from e
        git_path.unlink()
        staging.rename(git_path)

    # Files from containers

    def unpack_tar_archive(self, data: bytes) -> list[Path]:
        """Write the regular files of a tar archive into the work directory.

        Only the base name of each member is kept.

        Returns:
            Paths written.

        Raises:
            StateError: If the archive cannot be read.
        """
        written: list[Path] = []
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    extracted = tar.extractfile(member)
                    if extracted is None:
                        continue
                    dest = self.path(Path(member.name).name)
                    dest.write_bytes(extracted.read())
                    written.append(dest)
        except tarfile.TarError as e:
            raise StateError(f"Failed to unpack archive: {e}", code="tar_error") from e
        return written

    # Logs and documents

    def create_log_file(self, name: str) -> IO[str]:
        """Open (truncate) a log file in the work directory."""
        return open(self.path(name), "w", encoding="utf-8")


__all__ = [
    "BUILD_LOG_FILENAME",
    "COMMIT_FILENAME",
    "TEST_LOG_FILENAME",
    "FileState",
    "StateError",
    "run_git",
    "skip_marker_filename",
]
