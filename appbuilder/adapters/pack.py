"""Buildpack engine adapter driving the ``pack`` CLI."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import IO

from appbuilder.builds.runner import (
    PULL_IF_NOT_PRESENT,
    compose_pack_build_command,
    run_command,
    split_pack_env,
)

logger = logging.getLogger(__name__)


class PackCli:
    """BuildpackEngine that shells out to ``pack build``."""

    def build(
        self,
        app_path: Path,
        image: str,
        builder: str,
        buildpacks: Iterable[str],
        env: Mapping[str, str],
        cache_dir: Path,
        tags: Iterable[str],
        pull_policy: str = PULL_IF_NOT_PRESENT,
        log_file: IO[str] | None = None,
    ) -> None:
        """Run a buildpack build.

        Env values reach pack through its process environment, so secrets
        never appear on the command line or in the build log. Names pack
        depends on itself, such as PATH or DOCKER_HOST, are passed inline
        so the app cannot change how pack runs.

        Raises:
            BuildExecutionError: If pack cannot start or the build fails.
        """
        process_env, inline_env = split_pack_env(env)
        cmd = compose_pack_build_command(
            app_path=app_path,
            image=image,
            builder=builder,
            buildpacks=buildpacks,
            env_names=process_env.keys(),
            cache_dir=cache_dir,
            tags=tags,
            pull_policy=pull_policy,
            inline_env=inline_env,
        )
        logger.info("Building %s with builder %s", image, builder)
        run_command(cmd, log_file=log_file, cwd=app_path, env_override=process_env)


__all__ = ["PackCli"]
