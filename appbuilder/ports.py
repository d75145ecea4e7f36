"""Capability interfaces for the services the pipeline talks to.

Each protocol has one production adapter (see appbuilder.adapters) and one
in-memory adapter used by the tests (appbuilder.adapters.memory).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildConfig
    from appbuilder.types import ContainerSpec


class ParameterStore(Protocol):
    """Secrets/config store."""

    def get_by_prefix(self, prefix: str) -> dict[str, str]:
        """Return every parameter under prefix, keyed by name minus prefix.

        Raises:
            StoreError: If the store is unavailable.
        """
        ...

    def get_value(self, name: str) -> str:
        """Return one parameter value.

        Raises:
            ParameterNotFoundError: If the parameter does not exist.
        """
        ...

    def set_value(self, name: str, value: str) -> None:
        """Create or overwrite a parameter."""
        ...


class StackService(Protocol):
    """Stack lifecycle service."""

    def describe(self, name: str) -> dict[str, Any]:
        """Describe a stack.

        Raises:
            StackNotFoundError: If the stack does not exist.
        """
        ...

    def destroy(self, name: str) -> None:
        """Request stack deletion."""
        ...


class RegistryAuth(Protocol):
    """Private registry credential exchange."""

    def exchange_login(self) -> tuple[str, str]:
        """Return a short-lived (username, password) pair."""
        ...


class ObjectStore(Protocol):
    """Object store used for the build cache."""

    def download_prefix(self, bucket: str, prefix: str, local_dir: Path) -> None:
        """Copy every object under prefix into local_dir."""
        ...

    def upload_dir(
        self,
        local_dir: Path,
        bucket: str,
        prefix: str,
        delete_extraneous: bool = True,
    ) -> None:
        """Sync local_dir to prefix, optionally deleting remote extras."""
        ...


class ContainerRuntime(Protocol):
    """Container engine plus the image tooling around it."""

    def close(self) -> None: ...

    def login(self, server: str, username: str, password: str) -> None: ...

    def create_network(self, name: str) -> None: ...

    def pull_image(self, image: str) -> None: ...

    def push_image(self, image: str) -> None: ...

    def build_image(self, dockerfile: str, config: BuildConfig) -> None: ...

    def builder_ready(self) -> bool:
        """Return True if a running multi-platform builder is selected."""
        ...

    def create_builder(self, name: str, config_path: Path) -> None: ...

    def create_container(self, name: str, spec: ContainerSpec) -> str:
        """Create (but do not start) a container and return its id."""
        ...

    def run_container(self, name: str, network: str, spec: ContainerSpec) -> str:
        """Create a container, attach it to network, start it, return its id."""
        ...

    def copy_from_container(self, container_id: str, path: str) -> bytes:
        """Return a tar archive holding path from the container."""
        ...

    def wait_for_exit(self, container_id: str) -> int: ...

    def attach_logs(
        self,
        container_id: str,
        stdout: IO[str],
        stderr: IO[str],
    ) -> None:
        """Stream container output until it exits, keeping streams apart."""
        ...

    def delete_container(self, container_id: str) -> None: ...


class BuildpackEngine(Protocol):
    """Buildpack build engine."""

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
    ) -> None: ...


__all__ = [
    "BuildpackEngine",
    "ContainerRuntime",
    "ObjectStore",
    "ParameterStore",
    "RegistryAuth",
    "StackService",
]
