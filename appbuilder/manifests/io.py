"""Manifest loading and writing.

TOML documents are read with tomllib and written with the toml package;
app.json is plain JSON. Missing manifests are not an error: every loader
returns an empty document so the pipeline can run on bare checkouts.
"""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError

from appbuilder.manifests.schema import (
    AppJsonManifest,
    BuildManifest,
    ManifestValidationError,
    ProcessMetadata,
)

logger = logging.getLogger(__name__)

APP_JSON_FILENAME = "app.json"
PROCESS_METADATA_FILENAME = "metadata.toml"


def load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents as a dict.

    Args:
        path: Path to the TOML file.

    Returns:
        Parsed TOML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the top-level value is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def write_toml(path: Path, data: dict[str, Any]) -> None:
    """Write a mapping to a TOML file."""
    logger.debug("Writing TOML to %s", path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        toml.dump(data, f)


def write_json(path: Path, data: Any) -> None:
    """Write a value to a JSON file."""
    logger.debug("Writing JSON to %s", path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f)
        f.write("\n")


def _parse(model: type, data: dict[str, Any], path: Path) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ManifestValidationError(
            f"{path.name}: {e}",
            code="manifest_schema_error",
        ) from e


def _load_toml_document(path: Path) -> dict[str, Any]:
    try:
        return load_toml(path)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        logger.error("Failed to parse %s: %s", path.name, e)
        raise ManifestValidationError(
            f"{path.name}: {e}", code="manifest_parse_error"
        ) from e


def load_build_manifest(path: Path) -> BuildManifest:
    """Load the build manifest, or an empty one if the file is missing.

    Raises:
        ManifestValidationError: If the file is not valid TOML or does not
            match the schema.
    """
    if not path.exists() or path.stat().st_size == 0:
        logger.debug("%s not found", path.name)
        return BuildManifest()
    return _parse(BuildManifest, _load_toml_document(path), path)


def load_app_json(path: Path) -> AppJsonManifest:
    """Load the legacy app manifest, or an empty one if the file is missing.

    Raises:
        ManifestValidationError: If the file does not match the schema.
    """
    if not path.exists() or path.stat().st_size == 0:
        logger.debug("%s not found", path.name)
        return AppJsonManifest()
    try:
        data = load_json(path)
    except (json.JSONDecodeError, ValueError) as e:
        logger.error("Failed to parse %s: %s", path.name, e)
        raise ManifestValidationError(
            f"{path.name}: {e}", code="manifest_parse_error"
        ) from e
    return _parse(AppJsonManifest, data, path)


def load_process_metadata(path: Path) -> ProcessMetadata:
    """Load buildpack process metadata, or an empty document if missing.

    Raises:
        ManifestValidationError: If the file is not valid TOML or does not
            match the schema.
    """
    if not path.exists() or path.stat().st_size == 0:
        logger.debug("%s not found", path.name)
        return ProcessMetadata()
    return _parse(ProcessMetadata, _load_toml_document(path), path)


def dump_build_manifest(manifest: BuildManifest) -> dict[str, Any]:
    """Return the TOML-ready mapping for a build manifest."""
    return manifest.model_dump(exclude_defaults=True)


def dump_process_metadata(metadata: ProcessMetadata) -> dict[str, Any]:
    """Return the TOML-ready mapping for process metadata."""
    return metadata.model_dump(exclude_defaults=True)


def write_build_manifest(path: Path, manifest: BuildManifest) -> None:
    """Write a build manifest to path."""
    write_toml(path, dump_build_manifest(manifest))


def write_process_metadata(path: Path, metadata: ProcessMetadata) -> None:
    """Write process metadata to path."""
    write_toml(path, dump_process_metadata(metadata))


__all__ = [
    "APP_JSON_FILENAME",
    "PROCESS_METADATA_FILENAME",
    "dump_build_manifest",
    "dump_process_metadata",
    "load_app_json",
    "load_build_manifest",
    "load_json",
    "load_process_metadata",
    "load_toml",
    "write_build_manifest",
    "write_json",
    "write_process_metadata",
    "write_toml",
]
