"""Per-invocation build context and per-run build configuration.

BuildContext is read once from the CI environment and never changes.
BuildConfig holds the values derived for one pipeline run (image tags,
resolved env, cache and log locations).
"""

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PR_SOURCE_PREFIX = "pr/"


class BuildContext(BaseSettings):
    """Build context from the CI environment.

    Fields are read only from the CI variable names; where several names are
    listed the first non-empty one wins.

    Attributes:
        app_name: Application (or pipeline) name.
        artifact_bucket: Bucket holding the build cache.
        branch: Branch being built.
        build_id: CI build id; names the network and skip marker.
        build_number: CI build number; names the numbered image tag.
        webhook_event: Source-control webhook event, if any.
        source_version: Source version (``pr/<n>`` for pull requests).
        docker_hub_username: Optional Docker Hub username.
        docker_hub_access_token: Optional Docker Hub access token.
        repo: Target image repository.
        pipeline: Whether this is a pipeline (review app) build.
        review_app_status: ``created`` when a review app was requested.
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    app_name: str = Field(default="", validation_alias="APPNAME")
    artifact_bucket: str = Field(default="", validation_alias="ARTIFACT_BUCKET")
    branch: str = Field(
        default="",
        validation_alias=AliasChoices(
            "BRANCH", "CODEBUILD_WEBHOOK_HEAD_REF", "CODEBUILD_SOURCE_VERSION"
        ),
    )
    build_id: str = Field(default="", validation_alias="CODEBUILD_BUILD_ID")
    build_number: str = Field(default="", validation_alias="CODEBUILD_BUILD_NUMBER")
    webhook_event: str = Field(
        default="",
        validation_alias=AliasChoices("CODEBUILD_WEBHOOK_EVENT", "PULL_REQUEST_UPDATED"),
    )
    source_version: str = Field(default="", validation_alias="CODEBUILD_SOURCE_VERSION")
    docker_hub_username: str = Field(default="", validation_alias="DOCKERHUB_USERNAME")
    docker_hub_access_token: str = Field(default="", validation_alias="DOCKERHUB_ACCESS_TOKEN")
    repo: str = Field(default="", validation_alias="DOCKER_REPO")
    pipeline: bool = Field(default=False, validation_alias="PIPELINE")
    review_app_status: str = Field(default="", validation_alias="REVIEW_APP_STATUS")

    @field_validator("pipeline", mode="before")
    @classmethod
    def parse_pipeline_flag(cls, v: object) -> bool:
        """Only the literal "1" (or True) marks a pipeline build."""
        if isinstance(v, bool):
            return v
        return str(v) == "1"

    @property
    def create_review_app(self) -> bool:
        """True when the CLI asked for a review app to be created."""
        return self.review_app_status == "created"

    @property
    def is_pull_request(self) -> bool:
        """True when the source version names a pull request."""
        return self.source_version.startswith(PR_SOURCE_PREFIX)

    @property
    def pr_number(self) -> str:
        """Pull request number without the ``pr/`` prefix."""
        return self.source_version.removeprefix(PR_SOURCE_PREFIX)

    @property
    def container_name(self) -> str:
        """Build id in a form usable as a container or builder name."""
        return self.build_id.replace(":", "-")


@dataclass(frozen=True)
class BuildConfig:
    """Values derived for one build run.

    Attributes:
        image: Immutable content-addressed tag, ``{repo}:{git sha}``.
        latest_tag: Floating tag, ``{repo}:latest``.
        build_tag: Numbered tag, ``{repo}:build-{number}``.
        cache_dir: Local cache directory bind-mounted into the build.
        log_path: Build log file.
        env: Resolved build env.
    """

    image: str
    latest_tag: str
    build_tag: str
    cache_dir: Path
    log_path: Path
    env: dict[str, str] = field(default_factory=dict)

    @property
    def tags(self) -> list[str]:
        """All tags, the numbered tag first."""
        return [self.build_tag, self.latest_tag, self.image]

    @property
    def remaining_tags(self) -> list[str]:
        """Tags pushed after the numbered tag has landed."""
        return [self.latest_tag, self.image]


def image_name(repo: str, git_sha: str) -> str:
    """Return the immutable image reference for a revision."""
    return f"{repo}:{git_sha}"


def new_build_config(
    context: BuildContext,
    git_sha: str,
    env: dict[str, str],
    cache_dir: Path,
    log_path: Path,
) -> BuildConfig:
    """Create the BuildConfig for a run.

    Args:
        context: Build context.
        git_sha: Current revision.
        env: Resolved build env.
        cache_dir: Local cache directory.
        log_path: Build log file.

    Returns:
        BuildConfig with all three tags filled in.
    """
    return BuildConfig(
        image=image_name(context.repo, git_sha),
        latest_tag=f"{context.repo}:latest",
        build_tag=f"{context.repo}:build-{context.build_number}",
        cache_dir=cache_dir,
        log_path=log_path,
        env=dict(env),
    )


__all__ = [
    "PR_SOURCE_PREFIX",
    "BuildConfig",
    "BuildContext",
    "image_name",
    "new_build_config",
]
