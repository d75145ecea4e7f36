"""Shared type definitions for appbuilder.

This module contains enums, dataclasses and exceptions shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class PRStatus(str, Enum):
    """Persisted lifecycle status of a review app.

    UNCHANGED is never persisted by the state machine on its own; it is the
    derived target meaning "keep whatever is stored".
    """

    UNCHANGED = ""
    OPEN = "open"
    CREATED = "created"
    MERGED = "merged"
    CLOSED = "closed"


class WebhookEvent(str, Enum):
    """Source-control webhook events that drive review apps."""

    CREATED = "PULL_REQUEST_CREATED"
    REOPENED = "PULL_REQUEST_REOPENED"
    UPDATED = "PULL_REQUEST_UPDATED"
    MERGED = "PULL_REQUEST_MERGED"
    CLOSED = "PULL_REQUEST_CLOSED"


class BuildSystem(str, Enum):
    """Build engine selector from the build manifest."""

    BUILDPACK = "buildpack"
    DOCKERFILE = "dockerfile"


class PhaseName(str, Enum):
    """Pipeline phases."""

    PREBUILD = "prebuild"
    BUILD = "build"
    POSTBUILD = "postbuild"


@dataclass
class ContainerSpec:
    """What to run in a container.

    Attributes:
        image: Image reference.
        command: Command override (None keeps the image default).
        entrypoint: Entrypoint override (None keeps the image default).
        env: Environment as KEY=VALUE strings.
    """

    image: str
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    env: list[str] = field(default_factory=list)


@dataclass
class PhaseResult:
    """Outcome of a pipeline phase."""

    phase: PhaseName
    skipped: bool = False
    message: str = ""
    details: dict[str, object] = field(default_factory=dict)


class AppBuilderError(Exception):
    """Base error for appbuilder operations."""

    def __init__(self, message: str, code: str = "appbuilder_error") -> None:
        super().__init__(message)
        self.code = code


class StoreError(AppBuilderError):
    """Raised when the parameter store is unavailable."""

    def __init__(self, message: str, code: str = "store_unavailable") -> None:
        super().__init__(message, code)


class ParameterNotFoundError(StoreError):
    """Raised when a parameter does not exist."""

    def __init__(self, name: str, code: str = "parameter_not_found") -> None:
        super().__init__(f"Parameter not found: {name}", code)
        self.name = name


class StackNotFoundError(AppBuilderError):
    """Raised when a stack does not exist."""

    def __init__(self, name: str, code: str = "stack_not_found") -> None:
        super().__init__(f"Stack not found: {name}", code)
        self.name = name


class StackError(AppBuilderError):
    """Raised when the stack service fails."""

    def __init__(self, message: str, code: str = "stack_error") -> None:
        super().__init__(message, code)


class RegistryError(AppBuilderError):
    """Raised when registry authentication or transfer fails."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message, code)


class ContainerError(AppBuilderError):
    """Raised when the container runtime fails."""

    def __init__(self, message: str, code: str = "container_error") -> None:
        super().__init__(message, code)


class ObjectStoreError(AppBuilderError):
    """Raised when an object store transfer fails."""

    def __init__(self, message: str, code: str = "object_store_error") -> None:
        super().__init__(message, code)


__all__ = [
    "AppBuilderError",
    "BuildSystem",
    "ContainerError",
    "ContainerSpec",
    "ObjectStoreError",
    "ParameterNotFoundError",
    "PhaseName",
    "PhaseResult",
    "PRStatus",
    "RegistryError",
    "StackError",
    "StackNotFoundError",
    "StoreError",
    "WebhookEvent",
]
