"""Configuration overlay resolution.

This module handles:
- Computing the parameter store prefixes for an app or review app
- Loading each prefix and merging them in precedence order
- Applying the local override env file last

Precedence, lowest first: CI=true baseline, app or pipeline config,
review app config, override env file.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from appbuilder.builds.state import FileState
    from appbuilder.ports import ParameterStore

logger = logging.getLogger(__name__)

CI_BASELINE: dict[str, str] = {"CI": "true"}


def resolve_config_paths(
    pipeline: bool,
    app_name: str,
    source_version: str,
    root: str = "",
) -> list[str]:
    """Return the parameter prefixes to load, most specific last.

    Args:
        pipeline: Whether this is a pipeline (review app) build.
        app_name: App or pipeline name.
        source_version: Source version (``pr/<n>`` for review apps).
        root: Optional namespace prepended to every prefix.

    Returns:
        One app prefix, or the pipeline prefix followed by the review app prefix.
    """
    if pipeline:
        return [
            f"{root}/pipelines/{app_name}/config/",
            f"{root}/pipelines/{app_name}/review-apps/{source_version}/config/",
        ]
    return [f"{root}/apps/{app_name}/config/"]


def merge_env(*layers: Mapping[str, str]) -> dict[str, str]:
    """Merge env layers; later layers win on key collisions.

    Args:
        layers: Env maps, lowest precedence first.

    Returns:
        A new merged map.
    """
    merged: dict[str, str] = {}
    for layer in layers:
        merged.update(layer)
    return merged


def load_env(store: ParameterStore, paths: Iterable[str]) -> dict[str, str]:
    """Load and merge every prefix in order.

    Args:
        store: Parameter store.
        paths: Prefixes, lowest precedence first.

    Returns:
        Merged env with prefixes stripped from the names.

    Raises:
        StoreError: If any prefix cannot be loaded.
    """
    layers = []
    for path in paths:
        logger.debug("Loading config from %s", path)
        layers.append(store.get_by_prefix(path))
    return merge_env(*layers)


def load_override_env(state: FileState) -> dict[str, str]:
    """Return the override env file, or an empty map if it was never written."""
    try:
        return state.read_env_file()
    except FileNotFoundError:
        logger.debug("No override env file at %s", state.env_file)
        return {}


def load_build_env(
    store: ParameterStore,
    state: FileState,
    pipeline: bool,
    app_name: str,
    source_version: str,
    root: str = "",
) -> dict[str, str]:
    """Resolve the env for the build phase.

    Raises:
        StoreError: If the parameter store is unavailable.
    """
    paths = resolve_config_paths(pipeline, app_name, source_version, root)
    return merge_env(CI_BASELINE, load_env(store, paths), load_override_env(state))


def load_test_env(base: Mapping[str, str], state: FileState) -> dict[str, str]:
    """Resolve the env for the test container.

    Args:
        base: Declared test env.
        state: Working-tree state holding the override env file.

    Returns:
        Test env with CI=true and the addon overrides applied last.
    """
    return merge_env(base, CI_BASELINE, load_override_env(state))


def env_to_list(env: Mapping[str, str]) -> list[str]:
    """Convert an env map to sorted KEY=VALUE strings."""
    return [f"{key}={value}" for key, value in sorted(env.items())]


__all__ = [
    "CI_BASELINE",
    "env_to_list",
    "load_build_env",
    "load_env",
    "load_override_env",
    "load_test_env",
    "merge_env",
    "resolve_config_paths",
]
