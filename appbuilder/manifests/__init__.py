"""Declarative manifest module.

This module handles:
- Schemas for the build manifest, legacy app.json and process metadata
- Loading and writing manifests
- Translating between declared services and buildpack processes
"""

from appbuilder.manifests.schema import (
    AppJsonManifest,
    BuildManifest,
    ManifestValidationError,
    ProcessMetadata,
)

__all__ = [
    "AppJsonManifest",
    "BuildManifest",
    "ManifestValidationError",
    "ProcessMetadata",
]
