"""Build pipeline module.

This module handles:
- Build context, image tags and per-run build configuration
- Configuration overlays from the parameter store
- The review app gate and skip-build marker
- Addon containers for tests
- Running the prebuild, build and postbuild phases
"""

from appbuilder.builds.context import BuildConfig, BuildContext

__all__ = ["BuildConfig", "BuildContext"]

# Submodules are imported directly, e.g. appbuilder.builds.service
