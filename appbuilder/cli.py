"""Thin CLI wrapper for appbuilder.

This module provides the command-line interface using Typer.
All business logic is delegated to appbuilder.builds.service.
"""

import logging
from collections.abc import Callable
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from appbuilder import __version__
from appbuilder.builds.context import BuildContext
from appbuilder.builds.service import Pipeline
from appbuilder.builds.state import FileState
from appbuilder.config import Settings, get_settings, print_settings_json
from appbuilder.types import AppBuilderError, PhaseResult

app = typer.Typer(
    name="appbuilder",
    help="appbuilder - prebuild, build and test container images in CI",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger("appbuilder")


def configure_logging(level: str) -> None:
    """Route appbuilder logs through rich at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"appbuilder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    debug: Annotated[
        bool,
        typer.Option("--debug", "-d", help="Enable debug logging"),
    ] = False,
) -> None:
    """appbuilder - prebuild, build and test container images in CI."""
    settings = get_settings()
    configure_logging("DEBUG" if debug or settings.debug else settings.log_level)


def build_pipeline(context: BuildContext, settings: Settings, state: FileState) -> Pipeline:
    """Create a Pipeline wired to the production adapters."""
    from appbuilder.adapters.aws import (
        CloudFormationStacks,
        EcrRegistryAuth,
        S3ObjectStore,
        SsmParameterStore,
    )
    from appbuilder.adapters.docker import DockerRuntime
    from appbuilder.adapters.pack import PackCli

    return Pipeline(
        context=context,
        settings=settings,
        state=state,
        store=SsmParameterStore(),
        stacks=CloudFormationStacks(),
        registry_auth=EcrRegistryAuth(),
        object_store=S3ObjectStore(),
        runtime=DockerRuntime(work_dir=settings.work_dir),
        buildpack_engine=PackCli(),
    )


def finish_after_failure(state: FileState) -> None:
    """Write the artifacts downstream consumers expect after a failed phase."""
    try:
        state.finish_build()
    except (AppBuilderError, OSError) as finish_error:
        logger.error("Failed to finish build: %s", finish_error)


def run_phase(name: str, phase: Callable[[Pipeline], PhaseResult]) -> None:
    """Run one phase; on failure finish the build and exit 1."""
    settings = get_settings()
    state = FileState(
        work_dir=settings.work_dir,
        env_file=settings.override_env_path(),
        manifest_filename=settings.manifest_filename,
    )
    pipeline: Pipeline | None = None
    try:
        pipeline = build_pipeline(BuildContext(), settings, state)
        result = phase(pipeline)
    except AppBuilderError as e:
        console.print(f"[red]{name} failed ({e.code}): {e}[/red]")
        finish_after_failure(state)
        raise typer.Exit(code=1) from None
    except Exception as e:
        logger.exception("Unexpected error in %s", name)
        console.print(f"[red]{name} failed: {e}[/red]")
        finish_after_failure(state)
        raise typer.Exit(code=1) from None
    finally:
        if pipeline is not None:
            pipeline.close()

    if result.skipped:
        logger.info("%s skipped: %s", name, result.message)
    else:
        logger.debug("%s finished: %s", name, result.details)


@app.command()
def prebuild() -> None:
    """Run prebuild steps."""
    run_phase("prebuild", Pipeline.run_prebuild)


@app.command()
def build() -> None:
    """Build and publish the image."""
    run_phase("build", Pipeline.run_build)


@app.command()
def postbuild() -> None:
    """Run the test command against the built image."""
    run_phase("postbuild", Pipeline.run_postbuild)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print(f"  Build manifest:      {settings.manifest_filename}")
        console.print()
        console.print("[bold]Remote naming:[/bold]")
        console.print(f"  Parameter root:      {settings.parameter_root or '(none)'}")
        console.print(f"  Review app prefix:   {settings.review_app_stack_prefix}")
        console.print(f"  Cache prefix:        {settings.cache_prefix}")
        console.print(f"  Docker Hub mirror:   {settings.docker_hub_mirror}")
        console.print()
        console.print("[bold]Logging:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Debug:               {settings.debug}")


if __name__ == "__main__":
    app()
