"""Pipeline orchestration.

This module provides the three pipeline phases:
- Pipeline.run_prebuild(): review app gate, cache download, logins, engine
  preparation, build network and addons
- Pipeline.run_build(): env resolution, image build, process metadata, publish
- Pipeline.run_postbuild(): run the test command in the built image

Each phase is a separate process invocation; state carried between them
lives in the work directory (see builds/state.py).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import IO, TYPE_CHECKING

from appbuilder.builds.addons import start_addons
from appbuilder.builds.context import BuildConfig, image_name, new_build_config
from appbuilder.builds.overlay import env_to_list, load_build_env, load_test_env
from appbuilder.builds.review_apps import ReviewAppStateMachine
from appbuilder.builds.runner import (
    PULL_IF_NOT_PRESENT,
    buildkitd_config,
    console_log_writers,
)
from appbuilder.builds.state import (
    BUILD_LOG_FILENAME,
    TEST_LOG_FILENAME,
)
from appbuilder.builds.tasks import TaskGroup
from appbuilder.manifests.io import (
    APP_JSON_FILENAME,
    PROCESS_METADATA_FILENAME,
    load_app_json,
    load_build_manifest,
    load_process_metadata,
    write_build_manifest,
    write_process_metadata,
    write_toml,
)
from appbuilder.manifests.processes import (
    apply_process_metadata,
    services_to_process_metadata,
)
from appbuilder.types import (
    AppBuilderError,
    BuildSystem,
    ContainerError,
    ContainerSpec,
    PhaseName,
    PhaseResult,
)

if TYPE_CHECKING:
    from appbuilder.builds.context import BuildContext
    from appbuilder.builds.state import FileState
    from appbuilder.config import Settings
    from appbuilder.manifests.schema import AppJsonManifest, BuildManifest
    from appbuilder.ports import (
        BuildpackEngine,
        ContainerRuntime,
        ObjectStore,
        ParameterStore,
        RegistryAuth,
        StackService,
    )

logger = logging.getLogger(__name__)

MARKER = "#*#*#*#*#*# apppack-{phase}-{edge} #*#*#*#*#*#"

BUILDPACK_METADATA_PATH = "/layers/config/metadata.toml"
BUILDPACK_LAUNCHER = "/cnb/lifecycle/launcher"

# Docker Hub credentials come from the parameter store, which cannot hold an
# empty value; "~" stands in for "not set".
UNSET_CREDENTIAL = "~"


class TestFailedError(AppBuilderError):
    """Raised when the test command exits non-zero."""

    __test__ = False

    def __init__(self, exit_code: int, code: str = "test_failed") -> None:
        super().__init__(f"test failed with exit code {exit_code}", code)
        self.exit_code = exit_code


def print_start_marker(phase: str) -> None:
    """Print the log marker opening a phase section."""
    sys.stdout.write(MARKER.format(phase=phase, edge="start") + "\n")
    sys.stdout.flush()


def print_end_marker(phase: str) -> None:
    """Print the log marker closing a phase section."""
    sys.stdout.write(MARKER.format(phase=phase, edge="end") + "\n")
    sys.stdout.flush()


def registry_host(repo: str) -> str:
    """Return the registry hostname of an image repository."""
    return repo.split("/", 1)[0]


def _credential_set(value: str) -> bool:
    return value not in ("", UNSET_CREDENTIAL)


class Pipeline:
    """Runs the prebuild, build and postbuild phases for one build.

    Args:
        context: Build context from the CI environment.
        settings: Application settings.
        state: Working-tree state.
        store: Parameter store (config overlays, review app status).
        stacks: Stack service (review app stacks).
        registry_auth: Private registry credential exchange.
        object_store: Object store holding the build cache.
        runtime: Container runtime.
        buildpack_engine: Buildpack build engine.
    """

    def __init__(
        self,
        context: BuildContext,
        settings: Settings,
        state: FileState,
        store: ParameterStore,
        stacks: StackService,
        registry_auth: RegistryAuth,
        object_store: ObjectStore,
        runtime: ContainerRuntime,
        buildpack_engine: BuildpackEngine,
    ) -> None:
        self.context = context
        self.settings = settings
        self.state = state
        self.store = store
        self.stacks = stacks
        self.registry_auth = registry_auth
        self.object_store = object_store
        self.runtime = runtime
        self.buildpack_engine = buildpack_engine
        self.build_manifest: BuildManifest = load_build_manifest(
            state.path(state.manifest_filename)
        )
        self.app_json: AppJsonManifest = load_app_json(state.path(APP_JSON_FILENAME))

    def close(self) -> None:
        """Release the container runtime connection."""
        self.runtime.close()

    @property
    def cache_dir(self) -> Path:
        return self.settings.cache_dir

    @property
    def build_system(self) -> BuildSystem:
        return self.build_manifest.build_system()

    def buildpack_builders(self) -> list[str]:
        """Return builder images, the builder first."""
        if self.build_manifest.build.builder:
            return [self.build_manifest.build.builder]
        return self.app_json.builders()

    def buildpacks(self) -> list[str]:
        if self.build_manifest.build.buildpacks:
            return list(self.build_manifest.build.buildpacks)
        return self.app_json.buildpack_urls()

    def mirrored(self, image: str) -> str:
        """Return the Docker Hub mirror reference for an image."""
        return f"{self.settings.docker_hub_mirror}/{image}"

    def test_command(self) -> str:
        """Return the declared test command, or an empty string."""
        return self.build_manifest.test.command or self.app_json.test_script()

    def test_env_base(self) -> dict[str, str]:
        if self.build_manifest.test.command:
            return self.build_manifest.get_test_env()
        return self.app_json.test_env()

    # Prebuild

    def review_apps(self) -> ReviewAppStateMachine:
        return ReviewAppStateMachine(
            context=self.context,
            store=self.store,
            stacks=self.stacks,
            state=self.state,
            parameter_root=self.settings.parameter_root,
            stack_prefix=self.settings.review_app_stack_prefix,
        )

    def download_cache(self) -> None:
        logger.info("Downloading build cache")
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.object_store.download_prefix(
            self.context.artifact_bucket,
            self.settings.cache_prefix,
            self.cache_dir,
        )

    def docker_hub_login(self) -> None:
        """Log in to Docker Hub when credentials are configured."""
        username = self.context.docker_hub_username
        token = self.context.docker_hub_access_token
        if not (_credential_set(username) and _credential_set(token)):
            logger.debug("No Docker Hub credentials provided, skipping login")
            return
        logger.debug("Logging in to Docker Hub as %s", username)
        self.runtime.login("", username, token)

    def registry_login(self) -> None:
        """Log in to the private registry holding the target repository."""
        logger.debug("Logging in to registry for %s", self.context.repo)
        username, password = self.registry_auth.exchange_login()
        self.runtime.login(registry_host(self.context.repo), username, password)

    def prepare_buildpacks(self) -> None:
        logger.info("Pulling buildpack images")
        for image in self.buildpack_builders():
            self.runtime.pull_image(self.mirrored(image))

    def prepare_dockerfile(self) -> None:
        if self.runtime.builder_ready():
            logger.debug("Docker buildx builder is ready")
            return
        logger.info("Setting up docker buildx builder")
        config_path = self.settings.buildkitd_config_path()
        write_toml(config_path, buildkitd_config(self.settings.docker_hub_mirror))
        self.runtime.create_builder(self.context.container_name, config_path)

    def convert_app_json(self) -> None:
        """Write a build manifest derived from app.json if only app.json exists."""
        filename = self.state.manifest_filename
        if not self.state.file_exists(APP_JSON_FILENAME) or self.state.file_exists(filename):
            return
        logger.info("Converting %s to %s", APP_JSON_FILENAME, filename)
        self.build_manifest = self.app_json.to_build_manifest()
        write_build_manifest(self.state.path(filename), self.build_manifest)

    def run_prebuild(self) -> PhaseResult:
        """Prepare the environment for a build.

        Returns:
            PhaseResult; skipped when the review app gate stopped the build.

        Raises:
            AppBuilderError: If a required step fails.
        """
        logger.debug("Running prebuild")
        if self.review_apps().handle():
            return PhaseResult(phase=PhaseName.PREBUILD, skipped=True, message="review app gate")

        with TaskGroup("prebuild") as tasks:
            # start downloading the cache while we do other work
            tasks.spawn("download cache", self.download_cache, required=False)
            self.build_manifest.ensure_valid()
            self.state.relocate_git_dir()
            self.docker_hub_login()
            self.registry_login()
            if self.build_system == BuildSystem.DOCKERFILE:
                self.prepare_dockerfile()
            else:
                self.prepare_buildpacks()
            self.runtime.create_network(self.context.build_id)
            overrides = start_addons(
                self.runtime, self.context.build_id, self.app_json.test_addons()
            )
            self.state.write_env_file(overrides)
            self.convert_app_json()

        return PhaseResult(
            phase=PhaseName.PREBUILD,
            details={"build_system": self.build_system.value, "addons": sorted(overrides)},
        )

    # Build

    def build_with_dockerfile(self, config: BuildConfig) -> None:
        dockerfile = self.build_manifest.dockerfile_path()
        logger.info("Building %s from %s", config.image, dockerfile)
        self.runtime.build_image(dockerfile, config)
        metadata = services_to_process_metadata(self.build_manifest)
        write_process_metadata(self.state.path(PROCESS_METADATA_FILENAME), metadata)

    def build_with_buildpacks(self, config: BuildConfig) -> None:
        with open(config.log_path, "a", encoding="utf-8") as log_file:
            self.buildpack_engine.build(
                app_path=self.state.work_dir,
                image=config.image,
                builder=self.mirrored(self.buildpack_builders()[0]),
                buildpacks=self.buildpacks(),
                env=config.env,
                cache_dir=config.cache_dir,
                tags=config.tags,
                pull_policy=PULL_IF_NOT_PRESENT,
                log_file=log_file,
            )
        self.extract_process_metadata(config.image)

    def extract_process_metadata(self, image: str) -> None:
        """Copy process metadata out of a built image into the manifests."""
        name = f"{self.context.container_name}-metadata"
        container_id = self.runtime.create_container(name, ContainerSpec(image=image))
        try:
            archive = self.runtime.copy_from_container(container_id, BUILDPACK_METADATA_PATH)
        finally:
            self.runtime.delete_container(container_id)
        self.state.unpack_tar_archive(archive)
        metadata = load_process_metadata(self.state.path(PROCESS_METADATA_FILENAME))
        self.build_manifest = apply_process_metadata(metadata, self.build_manifest)
        write_build_manifest(self.state.path(self.state.manifest_filename), self.build_manifest)

    def publish(self, config: BuildConfig) -> None:
        """Push every tag and archive the build cache."""
        logger.info("Pushing %s", config.build_tag)
        self.runtime.push_image(config.build_tag)
        with TaskGroup("publish") as tasks:
            for tag in config.remaining_tags:
                tasks.spawn(f"push {tag}", self.runtime.push_image, tag)
            tasks.spawn(
                "archive cache",
                self.object_store.upload_dir,
                config.cache_dir,
                self.context.artifact_bucket,
                self.settings.cache_prefix,
                delete_extraneous=True,
            )

    def run_build(self) -> PhaseResult:
        """Build and publish the image.

        Raises:
            AppBuilderError: If any step fails.
        """
        if self.state.has_skip_marker(self.context.build_id):
            logger.info("Skipping build")
            return PhaseResult(phase=PhaseName.BUILD, skipped=True, message="build skipped")

        env = load_build_env(
            self.store,
            self.state,
            pipeline=self.context.pipeline,
            app_name=self.context.app_name,
            source_version=self.context.source_version,
            root=self.settings.parameter_root,
        )
        config = new_build_config(
            self.context,
            git_sha=self.state.git_sha(),
            env=env,
            cache_dir=self.cache_dir,
            log_path=self.state.path(BUILD_LOG_FILENAME),
        )
        config.cache_dir.mkdir(parents=True, exist_ok=True)
        config.log_path.write_text("", encoding="utf-8")

        print_start_marker(PhaseName.BUILD.value)
        try:
            if self.build_system == BuildSystem.DOCKERFILE:
                self.build_with_dockerfile(config)
            else:
                self.build_with_buildpacks(config)
        finally:
            print_end_marker(PhaseName.BUILD.value)

        self.publish(config)
        self.state.write_commit_txt()
        return PhaseResult(
            phase=PhaseName.BUILD,
            details={"image": config.image, "tags": config.tags},
        )

    # Postbuild

    def test_container_spec(self, image: str, command: str, env: dict[str, str]) -> ContainerSpec:
        entrypoint = None
        if self.build_system == BuildSystem.BUILDPACK:
            entrypoint = [BUILDPACK_LAUNCHER]
        return ContainerSpec(
            image=image,
            command=["/bin/sh", "-c", command],
            entrypoint=entrypoint,
            env=env_to_list(env),
        )

    def remove_test_container(self, container_id: str) -> None:
        try:
            self.runtime.delete_container(container_id)
        except ContainerError as e:
            logger.warning("Failed to delete test container: %s", e)

    def run_test_container(self, spec: ContainerSpec, stdout: IO[str], stderr: IO[str]) -> int:
        """Run the test container and stream its output; returns the exit code."""
        container_id = self.runtime.run_container(
            self.context.container_name, self.context.build_id, spec
        )
        removed = False
        try:
            with TaskGroup("test") as tasks:
                tasks.spawn(
                    "stream logs",
                    self.runtime.attach_logs,
                    container_id,
                    stdout,
                    stderr,
                    required=False,
                )
                try:
                    exit_code = self.runtime.wait_for_exit(container_id)
                except Exception:
                    # the log stream only ends once the container is gone
                    self.remove_test_container(container_id)
                    removed = True
                    raise
        finally:
            if not removed:
                self.remove_test_container(container_id)
        return exit_code

    def run_postbuild(self) -> PhaseResult:
        """Run the test command against the built image.

        Raises:
            TestFailedError: If the test command exits non-zero.
            AppBuilderError: If the test cannot be run.
        """
        if self.state.has_skip_marker(self.context.build_id):
            logger.info("Skipping test")
            return PhaseResult(phase=PhaseName.POSTBUILD, skipped=True, message="test skipped")

        with self.state.create_log_file(TEST_LOG_FILENAME) as log_file:
            stdout, stderr = console_log_writers(log_file)
            command = self.test_command()
            print_start_marker("test")
            try:
                if not command:
                    stdout.write("no tests defined\n")
                    return PhaseResult(phase=PhaseName.POSTBUILD, message="no tests defined")
                stdout.write(f"+ {command}\n")
                image = image_name(self.context.repo, self.state.git_sha())
                env = load_test_env(self.test_env_base(), self.state)
                spec = self.test_container_spec(image, command, env)
                exit_code = self.run_test_container(spec, stdout, stderr)
            finally:
                print_end_marker("test")

        if exit_code != 0:
            raise TestFailedError(exit_code)
        return PhaseResult(phase=PhaseName.POSTBUILD, details={"exit_code": exit_code})


__all__ = [
    "BUILDPACK_LAUNCHER",
    "BUILDPACK_METADATA_PATH",
    "MARKER",
    "Pipeline",
    "TestFailedError",
    "print_end_marker",
    "print_start_marker",
    "registry_host",
]
