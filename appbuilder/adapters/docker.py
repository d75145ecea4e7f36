"""Container runtime adapter.

Containers and networks go through the Docker Engine API (docker SDK).
Registry logins, image transfer and buildx go through the ``docker`` CLI so
they share its credential store and progress output.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

import docker
from docker.errors import DockerException

from appbuilder.builds.runner import (
    BuildExecutionError,
    buildx_inspect_ready,
    compose_buildx_build_command,
    compose_buildx_create_command,
    run_capture,
    run_command,
)
from appbuilder.types import ContainerError, RegistryError

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildConfig
    from appbuilder.types import ContainerSpec

logger = logging.getLogger(__name__)


class DockerRuntime:
    """ContainerRuntime backed by the local Docker daemon.

    Args:
        client: Optional docker client; defaults to ``docker.from_env()``.
        work_dir: Build context directory for image builds.
    """

    def __init__(self, client: Any = None, work_dir: Path | None = None) -> None:
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as e:
                raise ContainerError(
                    f"Cannot connect to Docker daemon: {e}",
                    code="docker_unavailable",
                ) from e
        self.client = client
        self.work_dir = work_dir

    def close(self) -> None:
        self.client.close()

    # CLI operations

    def login(self, server: str, username: str, password: str) -> None:
        logger.debug("Logging in to %s as %s", server or "Docker Hub", username)
        cmd = ["docker", "login", "--username", username, "--password-stdin"]
        if server:
            cmd.append(server)
        try:
            run_command(cmd, stdin_data=password)
        except BuildExecutionError as e:
            raise RegistryError(f"Login to {server or 'Docker Hub'} failed: {e}") from e

    def pull_image(self, image: str) -> None:
        logger.debug("Pulling image %s", image)
        try:
            run_command(["docker", "pull", image])
        except BuildExecutionError as e:
            raise RegistryError(f"Failed to pull {image}: {e}", code="pull_failed") from e

    def push_image(self, image: str) -> None:
        logger.debug("Pushing image %s", image)
        try:
            run_command(["docker", "push", image])
        except BuildExecutionError as e:
            raise RegistryError(f"Failed to push {image}: {e}", code="push_failed") from e

    def build_image(self, dockerfile: str, config: BuildConfig) -> None:
        logger.debug("Building Docker image %s", config.image)
        cmd = compose_buildx_build_command(dockerfile, config)
        with open(config.log_path, "a", encoding="utf-8") as log_file:
            run_command(cmd, log_file=log_file, cwd=self.work_dir)

    def builder_ready(self) -> bool:
        return buildx_inspect_ready(run_capture(["docker", "buildx", "inspect"]))

    def create_builder(self, name: str, config_path: Path) -> None:
        logger.debug("Creating buildx builder %s", name)
        run_command(compose_buildx_create_command(name, config_path))

    # Engine API operations

    def create_network(self, name: str) -> None:
        logger.debug("Creating docker network %s", name)
        try:
            self.client.networks.create(name)
        except DockerException as e:
            raise ContainerError(f"Failed to create network {name}: {e}") from e

    def create_container(self, name: str, spec: ContainerSpec) -> str:
        logger.debug("Creating container %s from %s", name, spec.image)
        try:
            container = self.client.containers.create(
                spec.image,
                command=spec.command,
                entrypoint=spec.entrypoint,
                environment=spec.env or None,
                name=name,
                detach=True,
            )
        except DockerException as e:
            raise ContainerError(f"Failed to create container {name}: {e}") from e
        return str(container.id)

    def run_container(self, name: str, network: str, spec: ContainerSpec) -> str:
        container_id = self.create_container(name, spec)
        logger.debug("Starting container %s on network %s", name, network)
        try:
            self.client.networks.get(network).connect(container_id)
            self.client.containers.get(container_id).start()
        except DockerException as e:
            raise ContainerError(f"Failed to start container {name}: {e}") from e
        return container_id

    def copy_from_container(self, container_id: str, path: str) -> bytes:
        logger.debug("Copying %s from container %s", path, container_id)
        try:
            stream, _stat = self.client.containers.get(container_id).get_archive(path)
            return b"".join(stream)
        except DockerException as e:
            raise ContainerError(f"Failed to copy {path} from container: {e}") from e

    def wait_for_exit(self, container_id: str) -> int:
        logger.debug("Waiting for container %s to exit", container_id)
        try:
            result = self.client.containers.get(container_id).wait()
        except DockerException as e:
            raise ContainerError(f"Failed waiting for container {container_id}: {e}") from e
        return int(result.get("StatusCode", -1))

    def attach_logs(self, container_id: str, stdout: IO[str], stderr: IO[str]) -> None:
        logger.debug("Attaching to logs of container %s", container_id)
        try:
            frames = self.client.api.attach(
                container_id,
                stdout=True,
                stderr=True,
                stream=True,
                logs=True,
                demux=True,
            )
            for out, err in frames:
                if out:
                    stdout.write(out.decode("utf-8", errors="replace"))
                if err:
                    stderr.write(err.decode("utf-8", errors="replace"))
        except DockerException as e:
            raise ContainerError(f"Failed to read logs of {container_id}: {e}") from e
        finally:
            stdout.flush()
            stderr.flush()

    def delete_container(self, container_id: str) -> None:
        logger.debug("Deleting container %s", container_id)
        try:
            self.client.containers.get(container_id).remove(force=True)
        except DockerException as e:
            raise ContainerError(f"Failed to delete container {container_id}: {e}") from e


__all__ = ["DockerRuntime"]
