"""In-memory adapters.

Used by the test suite to drive the pipeline without AWS or a Docker daemon.
Every adapter records what it was asked to do so tests can assert on it.
"""

from __future__ import annotations

import io
import tarfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from appbuilder.builds.runner import BuildExecutionError
from appbuilder.types import (
    ContainerError,
    ObjectStoreError,
    ParameterNotFoundError,
    StackError,
    StackNotFoundError,
    StoreError,
)

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildConfig
    from appbuilder.types import ContainerSpec


class MemoryParameterStore:
    """ParameterStore over a dict.

    Args:
        params: Initial parameters, by full name.
        unavailable: When True every call raises StoreError.
    """

    def __init__(self, params: Mapping[str, str] | None = None, unavailable: bool = False) -> None:
        self.params: dict[str, str] = dict(params or {})
        self.unavailable = unavailable
        self.writes: list[tuple[str, str]] = []

    def _check(self) -> None:
        if self.unavailable:
            raise StoreError("parameter store unavailable")

    def get_by_prefix(self, prefix: str) -> dict[str, str]:
        self._check()
        return {
            name.removeprefix(prefix): value
            for name, value in self.params.items()
            if name.startswith(prefix)
        }

    def get_value(self, name: str) -> str:
        self._check()
        if name not in self.params:
            raise ParameterNotFoundError(name)
        return self.params[name]

    def set_value(self, name: str, value: str) -> None:
        self._check()
        self.params[name] = value
        self.writes.append((name, value))


class MemoryStacks:
    """StackService over a set of stack names."""

    def __init__(self, stacks: Iterable[str] = (), fail_destroy: bool = False) -> None:
        self.stacks = set(stacks)
        self.fail_destroy = fail_destroy
        self.destroyed: list[str] = []

    def describe(self, name: str) -> dict[str, Any]:
        if name not in self.stacks:
            raise StackNotFoundError(name)
        return {"StackName": name, "StackStatus": "CREATE_COMPLETE"}

    def destroy(self, name: str) -> None:
        if self.fail_destroy:
            raise StackError(f"cannot delete {name}")
        self.destroyed.append(name)
        self.stacks.discard(name)


@dataclass
class MemoryRegistryAuth:
    """RegistryAuth returning fixed credentials."""

    username: str = "AWS"
    password: str = "token"
    calls: int = 0

    def exchange_login(self) -> tuple[str, str]:
        self.calls += 1
        return self.username, self.password


class MemoryObjectStore:
    """ObjectStore keeping objects as {(bucket, key): bytes}."""

    def __init__(
        self,
        objects: Mapping[tuple[str, str], bytes] | None = None,
        fail_download: bool = False,
        fail_upload: bool = False,
    ) -> None:
        self.objects: dict[tuple[str, str], bytes] = dict(objects or {})
        self.fail_download = fail_download
        self.fail_upload = fail_upload
        self.downloads: list[tuple[str, str, Path]] = []
        self.uploads: list[tuple[Path, str, str, bool]] = []

    def download_prefix(self, bucket: str, prefix: str, local_dir: Path) -> None:
        self.downloads.append((bucket, prefix, local_dir))
        if self.fail_download:
            raise ObjectStoreError(f"cannot download {bucket}/{prefix}")
        key_prefix = prefix.rstrip("/") + "/"
        for (obj_bucket, key), data in self.objects.items():
            if obj_bucket == bucket and key.startswith(key_prefix):
                dest = local_dir / key.removeprefix(key_prefix)
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(data)

    def upload_dir(
        self,
        local_dir: Path,
        bucket: str,
        prefix: str,
        delete_extraneous: bool = True,
    ) -> None:
        self.uploads.append((local_dir, bucket, prefix, delete_extraneous))
        if self.fail_upload:
            raise ObjectStoreError(f"cannot upload {local_dir}")
        key_prefix = prefix.rstrip("/") + "/"
        if delete_extraneous:
            for key in [k for k in self.objects if k[0] == bucket and k[1].startswith(key_prefix)]:
                del self.objects[key]
        if local_dir.exists():
            for path in local_dir.rglob("*"):
                if path.is_file():
                    key = key_prefix + path.relative_to(local_dir).as_posix()
                    self.objects[(bucket, key)] = path.read_bytes()


def tar_archive(files: Mapping[str, str | bytes]) -> bytes:
    """Build a tar archive in memory, as a container copy would return."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@dataclass
class FakeContainer:
    name: str
    spec: ContainerSpec
    network: str | None = None
    started: bool = False
    deleted: bool = False


@dataclass
class FakeContainerRuntime:
    """ContainerRuntime that records calls instead of running anything.

    Attributes:
        exit_code: Exit code reported for every container.
        stdout: Output written to the stdout stream by attach_logs.
        stderr: Output written to the stderr stream by attach_logs.
        files: Tar archives returned by copy_from_container, by path.
        ready: Whether a buildx builder is already running.
        fail_on: Method names that raise ContainerError.
    """

    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    files: dict[str, bytes] = field(default_factory=dict)
    ready: bool = False
    fail_on: set[str] = field(default_factory=set)
    calls: list[tuple[Any, ...]] = field(default_factory=list)
    containers: dict[str, FakeContainer] = field(default_factory=dict)
    networks: list[str] = field(default_factory=list)
    closed: bool = False

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        if method in self.fail_on:
            raise ContainerError(f"{method} failed")

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        """Return the recorded arguments of every call to method."""
        return [call[1:] for call in self.calls if call[0] == method]

    def close(self) -> None:
        self.closed = True

    def login(self, server: str, username: str, password: str) -> None:
        self._record("login", server, username, password)

    def create_network(self, name: str) -> None:
        self._record("create_network", name)
        self.networks.append(name)

    def pull_image(self, image: str) -> None:
        self._record("pull_image", image)

    def push_image(self, image: str) -> None:
        self._record("push_image", image)

    def build_image(self, dockerfile: str, config: BuildConfig) -> None:
        self._record("build_image", dockerfile, config)

    def builder_ready(self) -> bool:
        self._record("builder_ready")
        return self.ready

    def create_builder(self, name: str, config_path: Path) -> None:
        self._record("create_builder", name, config_path)
        self.ready = True

    def create_container(self, name: str, spec: ContainerSpec) -> str:
        self._record("create_container", name, spec)
        self.containers[name] = FakeContainer(name=name, spec=spec)
        return name

    def run_container(self, name: str, network: str, spec: ContainerSpec) -> str:
        self._record("run_container", name, network, spec)
        self.containers[name] = FakeContainer(name=name, spec=spec, network=network, started=True)
        return name

    def copy_from_container(self, container_id: str, path: str) -> bytes:
        self._record("copy_from_container", container_id, path)
        if path not in self.files:
            raise ContainerError(f"{path} not found in container {container_id}")
        return self.files[path]

    def wait_for_exit(self, container_id: str) -> int:
        self._record("wait_for_exit", container_id)
        return self.exit_code

    def attach_logs(self, container_id: str, stdout: IO[str], stderr: IO[str]) -> None:
        self._record("attach_logs", container_id)
        if self.stdout:
            stdout.write(self.stdout)
        if self.stderr:
            stderr.write(self.stderr)

    def delete_container(self, container_id: str) -> None:
        self._record("delete_container", container_id)
        if container_id in self.containers:
            self.containers[container_id].deleted = True


@dataclass
class FakeBuildpackEngine:
    """BuildpackEngine that records builds."""

    fail: bool = False
    builds: list[dict[str, Any]] = field(default_factory=list)

    def build(
        self,
        app_path: Path,
        image: str,
        builder: str,
        buildpacks: Iterable[str],
        env: Mapping[str, str],
        cache_dir: Path,
        tags: Iterable[str],
        pull_policy: str,
        log_file: IO[str] | None = None,
    ) -> None:
        self.builds.append(
            {
                "app_path": app_path,
                "image": image,
                "builder": builder,
                "buildpacks": list(buildpacks),
                "env": dict(env),
                "cache_dir": cache_dir,
                "tags": list(tags),
                "pull_policy": pull_policy,
            }
        )
        if log_file is not None:
            log_file.write(f"built {image}\n")
        if self.fail:
            raise BuildExecutionError("pack build failed", exit_code=1)


__all__ = [
    "FakeBuildpackEngine",
    "FakeContainer",
    "FakeContainerRuntime",
    "MemoryObjectStore",
    "MemoryParameterStore",
    "MemoryRegistryAuth",
    "MemoryStacks",
    "tar_archive",
]
