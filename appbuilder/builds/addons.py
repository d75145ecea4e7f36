"""Throwaway service containers for the test phase.

Legacy manifests declare in-dyno addons for the test environment. Each one
we recognise becomes a container on the build network plus one env var that
points the app at it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from appbuilder.types import ContainerSpec

if TYPE_CHECKING:
    from appbuilder.ports import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Addon:
    """A recognised addon.

    Attributes:
        name: Addon identifier as written in the manifest.
        container_name: Container name, which is also its hostname on the network.
        image: Image to run.
        env_var: Variable exported to the app.
        env_value: Connection URL for the variable.
        container_env: Environment for the addon container itself.
    """

    name: str
    container_name: str
    image: str
    env_var: str
    env_value: str
    container_env: tuple[str, ...] = field(default_factory=tuple)

    def container_spec(self) -> ContainerSpec:
        return ContainerSpec(image=self.image, env=list(self.container_env))


REDIS_ADDON = Addon(
    name="heroku-redis:in-dyno",
    container_name="redis",
    image="redis:alpine",
    env_var="REDIS_URL",
    env_value="redis://redis:6379",
)

POSTGRES_ADDON = Addon(
    name="heroku-postgresql:in-dyno",
    container_name="db",
    image="postgres:alpine",
    env_var="DATABASE_URL",
    env_value="postgres://postgres:postgres@db:5432/postgres",
    # the official image refuses to start without a password
    container_env=("POSTGRES_PASSWORD=postgres",),
)

KNOWN_ADDONS: dict[str, Addon] = {
    addon.name: addon for addon in (REDIS_ADDON, POSTGRES_ADDON)
}


def dedupe(items: Iterable[str]) -> list[str]:
    """Drop repeated items, keeping first occurrences in order."""
    return list(dict.fromkeys(items))


def start_addons(
    runtime: ContainerRuntime,
    network: str,
    addons: Iterable[str],
) -> dict[str, str]:
    """Start one container per recognised addon.

    Args:
        runtime: Container runtime.
        network: Build network to attach containers to.
        addons: Addon names from the manifest; duplicates and unknown names
            are ignored.

    Returns:
        Env overlay with one variable per started addon.

    Raises:
        ContainerError: If pulling or starting a container fails.
    """
    overrides: dict[str, str] = {}
    for name in dedupe(addons):
        addon = KNOWN_ADDONS.get(name)
        if addon is None:
            logger.debug("Ignoring unsupported addon %s", name)
            continue
        logger.info("Starting addon %s", name)
        runtime.pull_image(addon.image)
        runtime.run_container(addon.container_name, network, addon.container_spec())
        overrides[addon.env_var] = addon.env_value
    return overrides


__all__ = [
    "KNOWN_ADDONS",
    "POSTGRES_ADDON",
    "REDIS_ADDON",
    "Addon",
    "dedupe",
    "start_addons",
]
