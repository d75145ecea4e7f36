"""appbuilder - build pipeline orchestrator for container image builds.

This package drives a source checkout through prebuild, build and postbuild
(test) phases, coordinating the parameter store, stack service, container
registry, container runtime and object store around existing build engines.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
