"""Translation between declared services and buildpack process metadata.

Buildpack-built images embed a process list; Dockerfile builds declare their
services in the build manifest. Both are reduced to the same persisted
process format so the deploy side only ever reads one file.
"""

from __future__ import annotations

import shlex
from collections.abc import Sequence

from appbuilder.manifests.schema import (
    BuildManifest,
    ProcessMetadata,
    ProcessSchema,
    ServiceSchema,
)

RELEASE_PROCESS_TYPE = "release"

# Process types contributed by legacy runtimes that are not deployable services.
DISABLED_PROCESS_TYPES: dict[str, frozenset[str]] = {
    "heroku/ruby": frozenset({"rake", "console"}),
}


def command_to_string(command: Sequence[str], args: Sequence[str] = ()) -> str:
    """Join a process command into one shell string.

    Buildpack commands are usually a single item; anything longer is joined
    with POSIX shell quoting so it survives a round trip through ``sh -c``.

    Args:
        command: Command words.
        args: Extra arguments appended to the command.

    Returns:
        Shell command string.
    """
    parts = [*command, *args]
    if len(parts) == 1:
        return parts[0]
    return shlex.join(parts)


def is_disabled_process(process: ProcessSchema) -> bool:
    """Return True if the process type belongs to a disabled legacy runtime."""
    return process.type in DISABLED_PROCESS_TYPES.get(process.buildpack_id, frozenset())


def apply_process_metadata(
    metadata: ProcessMetadata,
    manifest: BuildManifest,
) -> BuildManifest:
    """Replace a manifest's services with the processes from metadata.

    A ``release`` process becomes the deploy release command, disabled
    legacy process types are dropped, everything else becomes a service.

    Args:
        metadata: Process metadata extracted from a built image.
        manifest: Manifest to update (left unmodified).

    Returns:
        A new manifest with services and release command replaced.
    """
    updated = manifest.model_copy(deep=True)
    updated.services = {}
    for process in metadata.processes:
        command = command_to_string(process.command, process.args)
        if process.type == RELEASE_PROCESS_TYPE:
            updated.deploy.release_command = command
            continue
        if is_disabled_process(process):
            continue
        updated.services[process.type] = ServiceSchema(command=command)
    return updated


def services_to_process_metadata(manifest: BuildManifest) -> ProcessMetadata:
    """Derive process metadata from the services a manifest declares."""
    processes = [
        ProcessSchema(type=name, command=[service.command])
        for name, service in manifest.services.items()
    ]
    if manifest.deploy.release_command:
        processes.append(
            ProcessSchema(
                type=RELEASE_PROCESS_TYPE,
                command=[manifest.deploy.release_command],
            )
        )
    return ProcessMetadata(processes=processes)


__all__ = [
    "DISABLED_PROCESS_TYPES",
    "RELEASE_PROCESS_TYPE",
    "apply_process_metadata",
    "command_to_string",
    "is_disabled_process",
    "services_to_process_metadata",
]
