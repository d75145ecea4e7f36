"""Engine command composition and execution.

This module handles:
- Composing ``docker buildx`` and ``pack build`` command lines
- Executing commands with subprocess, teeing output to the console and a log file
- Parsing ``docker buildx inspect`` output
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import sys
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from appbuilder.types import AppBuilderError

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildConfig

logger = logging.getLogger(__name__)

BUILDX_DRIVER = "docker-container"
BUILDX_DRIVER_PATTERN = re.compile(r"Driver:\s+docker-container")
BUILDX_RUNNING_PATTERN = re.compile(r"Status:\s+running")

PULL_IF_NOT_PRESENT = "if-not-present"

# Variables pack and the docker client read to run at all
PACK_CONTROL_ENV = frozenset({"HOME", "PATH", "TMPDIR", "SHELL", "USER"})
PACK_CONTROL_ENV_PREFIXES = ("DOCKER_", "PACK_", "XDG_", "SSL_CERT_")


class BuildExecutionError(AppBuilderError):
    """Raised when an engine command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


def buildkitd_config(mirror: str) -> dict[str, Any]:
    """Return a buildkitd config that pulls Docker Hub images through mirror."""
    return {"registry": {"docker.io": {"mirrors": [mirror]}}}


def local_cache_args(cache_dir: Path) -> list[str]:
    """Return buildx flags that read and write the layer cache in cache_dir."""
    return [
        "--cache-from",
        f"type=local,src={cache_dir}",
        "--cache-to",
        f"type=local,dest={cache_dir}",
    ]


def compose_buildx_build_command(
    dockerfile: str,
    config: BuildConfig,
    context_dir: str = ".",
) -> list[str]:
    """Compose the ``docker buildx build`` command for a Dockerfile build.

    Args:
        dockerfile: Dockerfile path relative to the context.
        config: Build configuration supplying tags and the cache directory.
        context_dir: Build context directory.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["docker", "buildx", "build"]
    for tag in (config.image, config.build_tag, config.latest_tag):
        cmd.extend(["--tag", tag])
    cmd.extend(["--progress", "plain"])
    cmd.extend(local_cache_args(config.cache_dir))
    cmd.extend(["--file", dockerfile, "--load", context_dir])
    return cmd


def compose_buildx_create_command(name: str, config_path: Path) -> list[str]:
    """Compose the command that creates and selects a buildx builder."""
    return [
        "docker",
        "buildx",
        "create",
        "--use",
        "--name",
        name,
        "--driver",
        BUILDX_DRIVER,
        "--config",
        str(config_path),
        "--bootstrap",
    ]


def is_pack_control_env(name: str) -> bool:
    """Return True if name configures pack itself rather than the app build."""
    return name in PACK_CONTROL_ENV or name.startswith(PACK_CONTROL_ENV_PREFIXES)


def split_pack_env(env: Mapping[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Split app env into (process env, inline env) for ``pack build``.

    Most values reach pack through its own environment so they stay off the
    command line. Names pack itself depends on are passed inline instead,
    leaving the process environment untouched.
    """
    process_env: dict[str, str] = {}
    inline_env: dict[str, str] = {}
    for name, value in env.items():
        if is_pack_control_env(name):
            inline_env[name] = value
        else:
            process_env[name] = value
    return process_env, inline_env


def compose_pack_build_command(
    app_path: Path,
    image: str,
    builder: str,
    buildpacks: Iterable[str],
    env_names: Iterable[str],
    cache_dir: Path,
    tags: Iterable[str],
    pull_policy: str = PULL_IF_NOT_PRESENT,
    inline_env: Mapping[str, str] | None = None,
) -> list[str]:
    """Compose the ``pack build`` command for a buildpack build.

    Env values are not placed on the command line; each name is passed as a
    bare ``--env NAME`` and pack reads the value from its own environment.
    Names in inline_env are passed as ``--env NAME=VALUE``.

    Args:
        app_path: Source directory.
        image: Primary image reference.
        builder: Builder image.
        buildpacks: Buildpack references, in order.
        env_names: Names of variables to pass to the build.
        cache_dir: Local directory bind-mounted as the build cache.
        tags: Additional tags.
        pull_policy: Image pull policy.
        inline_env: Variables whose values go on the command line.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["pack", "build", image, "--path", str(app_path), "--builder", builder]
    for buildpack in buildpacks:
        cmd.extend(["--buildpack", buildpack])
    for name in sorted(env_names):
        cmd.extend(["--env", name])
    for name, value in sorted((inline_env or {}).items()):
        cmd.extend(["--env", f"{name}={value}"])
    cmd.extend(["--cache", f"type=build;format=bind;source={cache_dir}"])
    for tag in tags:
        if tag != image:
            cmd.extend(["--tag", tag])
    cmd.extend(["--pull-policy", pull_policy])
    return cmd


class TeeWriter:
    """Text stream that writes to several streams at once."""

    def __init__(self, *streams: IO[str]) -> None:
        self.streams = streams

    def write(self, data: str) -> int:
        for stream in self.streams:
            stream.write(data)
        return len(data)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()


def console_log_writers(log_file: IO[str]) -> tuple[TeeWriter, TeeWriter]:
    """Return (stdout, stderr) writers that also copy into log_file."""
    return TeeWriter(sys.stdout, log_file), TeeWriter(sys.stderr, log_file)


def buildx_inspect_ready(output: str) -> bool:
    """Return True if ``docker buildx inspect`` shows a running container builder."""
    return bool(BUILDX_DRIVER_PATTERN.search(output) and BUILDX_RUNNING_PATTERN.search(output))


def run_command(
    cmd: list[str],
    log_file: IO[str] | None = None,
    cwd: Path | None = None,
    env_override: Mapping[str, str] | None = None,
    stdin_data: str | None = None,
) -> None:
    """Run a command, streaming its combined output to stdout and log_file.

    Args:
        cmd: Command to run.
        log_file: Optional open text file that receives a copy of the output.
        cwd: Working directory.
        env_override: Variables added to the inherited environment.
        stdin_data: Text written to the command's stdin.

    Raises:
        BuildExecutionError: If the command cannot start or exits non-zero.
    """
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    try:
        process = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to execute {cmd[0]}: {e}",
            code="execution_error",
        ) from e

    if stdin_data is not None and process.stdin is not None:
        process.stdin.write(stdin_data)
        process.stdin.close()

    assert process.stdout is not None
    for line in process.stdout:
        sys.stdout.write(line)
        if log_file is not None:
            log_file.write(line)
    process.stdout.close()
    exit_code = process.wait()
    if log_file is not None:
        log_file.flush()

    if exit_code != 0:
        raise BuildExecutionError(
            f"{shlex.join(cmd[:3])} failed with exit code {exit_code}",
            exit_code=exit_code,
            code="command_failed",
        )


def run_capture(cmd: list[str]) -> str:
    """Run a command and return its combined output.

    Raises:
        BuildExecutionError: If the command cannot start or exits non-zero.
    """
    logger.debug("Executing: %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise BuildExecutionError(
            f"{shlex.join(cmd)} failed: {e.stdout}",
            exit_code=e.returncode,
            code="command_failed",
        ) from e
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to execute {cmd[0]}: {e}",
            code="execution_error",
        ) from e
    return result.stdout


__all__ = [
    "BUILDX_DRIVER",
    "PULL_IF_NOT_PRESENT",
    "BuildExecutionError",
    "TeeWriter",
    "buildkitd_config",
    "buildx_inspect_ready",
    "compose_buildx_build_command",
    "compose_buildx_create_command",
    "compose_pack_build_command",
    "console_log_writers",
    "is_pack_control_env",
    "local_cache_args",
    "run_capture",
    "run_command",
    "split_pack_env",
]
