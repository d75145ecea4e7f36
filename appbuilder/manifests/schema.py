"""Pydantic models for the declarative manifests.

Three documents are modelled here:

- the build manifest (``apppack.toml``): build system selector, buildpacks or
  Dockerfile, declared services, test command/env and release command;
- the legacy app manifest (``app.json``): buildpack list, stack and
  per-environment scripts/env/addons;
- the buildpack process metadata (``metadata.toml``) embedded in images built
  by the buildpack engine.

Validation of the build manifest is an explicit step of the prebuild phase
(see BuildManifest.ensure_valid), not a side effect of loading it, so later
phases can always read whatever the checkout contains.
"""

from pydantic import BaseModel, ConfigDict, Field

from appbuilder.types import AppBuilderError, BuildSystem

DEFAULT_STACK = "heroku-20"

# pack builder inspect heroku/builder:22 --output json | jq [.remote_info.buildpacks[].id]
CNB_BUILDPACKS = frozenset(
    {
        "heroku/java",
        "heroku/java-function",
        "heroku/jvm",
        "heroku/jvm-function-invoker",
        "heroku/maven",
        "heroku/nodejs",
        "heroku/nodejs-engine",
        "heroku/nodejs-function",
        "heroku/nodejs-function-invoker",
        "heroku/nodejs-npm",
        "heroku/nodejs-yarn",
        "heroku/procfile",
        "heroku/python",
    }
)

CNB_BUILDPACK_PREFIX = "urn:cnb:builder:"

STACK_BUILDERS: dict[str, list[str]] = {
    "heroku-18": ["heroku/buildpacks:18", "heroku/heroku:18-cnb"],
    "heroku-20": ["heroku/buildpacks:20", "heroku/heroku:20-cnb"],
    "heroku-22": ["heroku/builder-classic:22", "heroku/heroku:22-cnb"],
}


class ManifestValidationError(AppBuilderError):
    """Raised when a declarative manifest is malformed."""

    def __init__(self, message: str, code: str = "manifest_invalid") -> None:
        super().__init__(message, code)


class BuildSectionSchema(BaseModel):
    """``[build]`` table of the build manifest.

    Attributes:
        system: Build system keyword (``buildpack``, ``dockerfile`` or empty).
        buildpacks: Buildpacks to apply (buildpack system only).
        builder: Builder image override (buildpack system only).
        dockerfile: Path to the Dockerfile (dockerfile system only).
    """

    model_config = ConfigDict(extra="ignore")

    system: str = ""
    buildpacks: list[str] = Field(default_factory=list)
    builder: str = ""
    dockerfile: str = ""


class TestingSectionSchema(BaseModel):
    """``[test]`` table of the build manifest."""

    model_config = ConfigDict(extra="ignore")

    command: str = ""
    env: list[str] = Field(default_factory=list)


class DeploySectionSchema(BaseModel):
    """``[deploy]`` table of the build manifest."""

    model_config = ConfigDict(extra="ignore")

    release_command: str = ""


class ServiceSchema(BaseModel):
    """One ``[services.<name>]`` table."""

    model_config = ConfigDict(extra="ignore")

    command: str = ""


class BuildManifest(BaseModel):
    """The primary build manifest."""

    model_config = ConfigDict(extra="ignore")

    build: BuildSectionSchema = Field(default_factory=BuildSectionSchema)
    test: TestingSectionSchema = Field(default_factory=TestingSectionSchema)
    deploy: DeploySectionSchema = Field(default_factory=DeploySectionSchema)
    services: dict[str, ServiceSchema] = Field(default_factory=dict)

    def use_dockerfile(self) -> bool:
        """Return True if the Dockerfile build path applies."""
        return self.build.system == BuildSystem.DOCKERFILE.value

    def use_buildpacks(self) -> bool:
        """Return True if the buildpack build path applies."""
        return self.build.system in ("", BuildSystem.BUILDPACK.value)

    def build_system(self) -> BuildSystem:
        """Return the selected build system (buildpack unless told otherwise)."""
        if self.use_dockerfile():
            return BuildSystem.DOCKERFILE
        return BuildSystem.BUILDPACK

    def ensure_valid(self) -> None:
        """Validate cross-field rules.

        Raises:
            ManifestValidationError: On the first rule that fails.
        """
        system = self.build.system
        if system not in ("", BuildSystem.BUILDPACK.value, BuildSystem.DOCKERFILE.value):
            raise ManifestValidationError(
                f"[build] unknown value for system: {system!r}",
                code="unknown_build_system",
            )
        if self.use_buildpacks() and self.services:
            raise ManifestValidationError(
                "[build] buildpacks cannot be used with services -- use Procfile instead",
                code="buildpack_services",
            )
        for entry in self.test.env:
            if "=" not in entry:
                raise ManifestValidationError(
                    f"[test] env {entry} is not in KEY=VALUE format",
                    code="invalid_test_env",
                )
        if not self.use_dockerfile():
            return
        for name, service in self.services.items():
            if not service.command:
                raise ManifestValidationError(
                    f"[services] service {name} has no command",
                    code="service_without_command",
                )
        if "web" not in self.services:
            raise ManifestValidationError(
                "[services] no web service defined",
                code="missing_web_service",
            )

    def get_test_env(self) -> dict[str, str]:
        """Return the declared test env with the CI=true baseline."""
        env = {"CI": "true"}
        for entry in self.test.env:
            key, sep, value = entry.partition("=")
            if sep:
                env[key] = value
        return env

    def dockerfile_path(self) -> str:
        """Return the Dockerfile path, defaulting to ``Dockerfile``."""
        return self.build.dockerfile or "Dockerfile"


class BuildpackRefSchema(BaseModel):
    """A buildpack reference in app.json."""

    model_config = ConfigDict(extra="ignore")

    url: str


class EnvironmentSchema(BaseModel):
    """One entry under app.json ``environments``."""

    model_config = ConfigDict(extra="ignore")

    scripts: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    addons: list[str] = Field(default_factory=list)


class AppJsonManifest(BaseModel):
    """The legacy app manifest."""

    model_config = ConfigDict(extra="ignore")

    buildpacks: list[BuildpackRefSchema] = Field(default_factory=list)
    stack: str = DEFAULT_STACK
    scripts: dict[str, str] = Field(default_factory=dict)
    environments: dict[str, EnvironmentSchema] = Field(default_factory=dict)

    def builders(self) -> list[str]:
        """Return builder images for the stack.

        The first item is the builder, the second the run image; the run
        image is only used for prefetching, so custom stacks still work.
        """
        return list(STACK_BUILDERS.get(self.stack, [self.stack]))

    def buildpack_urls(self) -> list[str]:
        """Return buildpacks in a form the buildpack engine accepts.

        Cloud Native buildpacks are preferred over the legacy ones of the
        same name.
        """
        return [patch_buildpack(bp.url) for bp in self.buildpacks]

    def _test_environment(self) -> EnvironmentSchema:
        return self.environments.get("test") or EnvironmentSchema()

    def test_script(self) -> str:
        """Return the test script, or an empty string if none is declared."""
        return self._test_environment().scripts.get("test", "")

    def test_env(self) -> dict[str, str]:
        """Return the test env with the CI=true baseline."""
        env = {"CI": "true"}
        env.update(self._test_environment().env)
        return env

    def test_addons(self) -> list[str]:
        """Return the addons declared for the test environment."""
        return list(self._test_environment().addons)

    def to_build_manifest(self) -> BuildManifest:
        """Convert to an equivalent build manifest."""
        return BuildManifest(
            build=BuildSectionSchema(
                system=BuildSystem.BUILDPACK.value,
                buildpacks=self.buildpack_urls(),
                builder=self.builders()[0],
            ),
            test=TestingSectionSchema(
                command=self.test_script(),
                env=[f"{k}={v}" for k, v in self._test_environment().env.items()],
            ),
        )


def patch_buildpack(buildpack: str) -> str:
    """Return the Cloud Native identifier for known buildpacks.

    Args:
        buildpack: Buildpack name or URL from app.json.

    Returns:
        The prefixed identifier for CNB buildpacks, the input otherwise.
    """
    if buildpack in CNB_BUILDPACKS:
        return CNB_BUILDPACK_PREFIX + buildpack
    return buildpack


class ProcessSchema(BaseModel):
    """A process entry in buildpack metadata."""

    model_config = ConfigDict(extra="ignore")

    type: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    buildpack_id: str = ""


class ProcessMetadata(BaseModel):
    """Buildpack process metadata (``metadata.toml``)."""

    model_config = ConfigDict(extra="ignore")

    processes: list[ProcessSchema] = Field(default_factory=list)


__all__ = [
    "AppJsonManifest",
    "BuildManifest",
    "BuildSectionSchema",
    "BuildpackRefSchema",
    "CNB_BUILDPACK_PREFIX",
    "DEFAULT_STACK",
    "DeploySectionSchema",
    "EnvironmentSchema",
    "ManifestValidationError",
    "ProcessMetadata",
    "ProcessSchema",
    "ServiceSchema",
    "TestingSectionSchema",
    "patch_buildpack",
]
