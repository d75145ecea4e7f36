"""Tests for builds/service.py module.

Drives the pipeline phases end to end against the in-memory adapters.
"""

import json
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from appbuilder.adapters.memory import (
    FakeBuildpackEngine,
    FakeContainerRuntime,
    MemoryObjectStore,
    MemoryParameterStore,
    MemoryRegistryAuth,
    MemoryStacks,
    tar_archive,
)
from appbuilder.builds.service import (
    BUILDPACK_LAUNCHER,
    BUILDPACK_METADATA_PATH,
    Pipeline,
    TestFailedError,
    registry_host,
)
from appbuilder.config import Settings
from appbuilder.manifests.schema import ManifestValidationError
from appbuilder.types import ContainerError, ObjectStoreError
from conftest import GIT_SHA, make_context

REPO = "123456789012.dkr.ecr.us-east-1.amazonaws.com/myapp"
REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"

DOCKERFILE_MANIFEST = """\
[build]
system = "dockerfile"
dockerfile = "Dockerfile"

[deploy]
release_command = "python manage.py migrate"

[services.web]
command = "gunicorn app:app --bind 0.0.0.0:$PORT"

[services.worker]
command = "celery worker"
"""

APP_JSON = {
    "stack": "heroku-20",
    "buildpacks": [{"url": "heroku/python"}],
    "environments": {
        "test": {
            "scripts": {"test": "pytest -x"},
            "env": {"DJANGO_SETTINGS_MODULE": "app.settings.test"},
            "addons": ["heroku-redis:in-dyno", "heroku-redis:in-dyno"],
        }
    },
}

BUILDPACK_METADATA = """\
[[processes]]
type = "web"
command = ["gunicorn", "app:app"]
buildpack_id = "heroku/python"

[[processes]]
type = "release"
command = ["python", "manage.py", "migrate"]
buildpack_id = "heroku/python"
"""


@dataclass
class FollowingLogsRuntime(FakeContainerRuntime):
    """Runtime whose log stream, like docker attach, ends only when the container goes."""

    removed: threading.Event = field(default_factory=threading.Event)
    stream_ended_by_removal: bool = False

    def attach_logs(self, container_id, stdout, stderr) -> None:
        super().attach_logs(container_id, stdout, stderr)
        self.stream_ended_by_removal = self.removed.wait(timeout=5)

    def delete_container(self, container_id: str) -> None:
        super().delete_container(container_id)
        self.removed.set()


class Harness:
    """A pipeline plus the fakes behind it."""

    def __init__(self, state, tmp_path: Path, **context_overrides: object) -> None:
        self.settings = Settings(
            _env_file=None,
            cache_dir=tmp_path / "cache",
            tmp_dir=tmp_path,
        )
        self.context = make_context(repo=REPO, **context_overrides)
        self.state = state
        self.store = MemoryParameterStore({"/apps/myapp/config/SECRET_KEY": "s3cret"})
        self.stacks = MemoryStacks()
        self.registry_auth = MemoryRegistryAuth()
        self.object_store = MemoryObjectStore({("artifacts", "cache/layer.tar"): b"layer"})
        self.runtime = FakeContainerRuntime()
        self.engine = FakeBuildpackEngine()

    def pipeline(self) -> Pipeline:
        return Pipeline(
            context=self.context,
            settings=self.settings,
            state=self.state,
            store=self.store,
            stacks=self.stacks,
            registry_auth=self.registry_auth,
            object_store=self.object_store,
            runtime=self.runtime,
            buildpack_engine=self.engine,
        )


@pytest.fixture
def harness(state, tmp_path) -> Harness:
    """Harness for a plain (non-pipeline) app build."""
    (state.work_dir / ".git").mkdir()
    return Harness(state, tmp_path)


def write_dockerfile_manifest(state) -> None:
    state.path("apppack.toml").write_text(DOCKERFILE_MANIFEST)


def write_app_json(state) -> None:
    state.path("app.json").write_text(json.dumps(APP_JSON))


class TestRegistryHost:
    """Tests for registry_host function."""

    def test_strips_repository_path(self):
        """Only the hostname should remain."""
        assert registry_host(REPO) == REGISTRY


class TestPrebuild:
    """Tests for Pipeline.run_prebuild."""

    def test_dockerfile_prebuild(self, harness):
        """Dockerfile builds log in, create a builder and a network."""
        write_dockerfile_manifest(harness.state)

        result = harness.pipeline().run_prebuild()

        assert result.skipped is False
        runtime = harness.runtime
        assert runtime.calls_to("login") == [(REGISTRY, "AWS", "token")]
        assert runtime.calls_to("builder_ready") == [()]
        config_path = harness.settings.buildkitd_config_path()
        assert runtime.calls_to("create_builder") == [("myapp-build-1234", config_path)]
        with open(config_path, "rb") as f:
            assert tomllib.load(f) == {
                "registry": {"docker.io": {"mirrors": ["registry.apppackcdn.net"]}}
            }
        assert runtime.networks == ["myapp-build:1234"]
        assert harness.state.read_env_file() == {}
        assert harness.object_store.downloads == [
            ("artifacts", "cache", harness.settings.cache_dir)
        ]
        assert (harness.settings.cache_dir / "layer.tar").read_bytes() == b"layer"

    def test_ready_builder_is_reused(self, harness):
        """A running buildx builder should not be recreated."""
        write_dockerfile_manifest(harness.state)
        harness.runtime.ready = True
        harness.pipeline().run_prebuild()
        assert harness.runtime.calls_to("create_builder") == []

    def test_buildpack_prebuild_from_app_json(self, harness):
        """Legacy apps pull builders, start addons and get a manifest."""
        write_app_json(harness.state)

        harness.pipeline().run_prebuild()

        runtime = harness.runtime
        assert runtime.calls_to("pull_image")[:2] == [
            ("registry.apppackcdn.net/heroku/buildpacks:20",),
            ("registry.apppackcdn.net/heroku/heroku:20-cnb",),
        ]
        assert len(runtime.calls_to("run_container")) == 1
        assert runtime.containers["redis"].network == "myapp-build:1234"
        assert harness.state.read_env_file() == {"REDIS_URL": "redis://redis:6379"}
        with open(harness.state.path("apppack.toml"), "rb") as f:
            manifest = tomllib.load(f)
        assert manifest["build"]["buildpacks"] == ["urn:cnb:builder:heroku/python"]
        assert manifest["test"]["command"] == "pytest -x"

    def test_existing_manifest_not_replaced(self, harness):
        """app.json should not overwrite an existing build manifest."""
        write_app_json(harness.state)
        write_dockerfile_manifest(harness.state)
        harness.pipeline().run_prebuild()
        assert harness.state.path("apppack.toml").read_text() == DOCKERFILE_MANIFEST

    def test_docker_hub_login(self, state, tmp_path):
        """Docker Hub credentials should trigger a login."""
        (state.work_dir / ".git").mkdir()
        harness = Harness(
            state, tmp_path, docker_hub_username="user", docker_hub_access_token="tok"
        )
        harness.pipeline().run_prebuild()
        assert ("", "user", "tok") in harness.runtime.calls_to("login")

    @pytest.mark.parametrize(("username", "token"), [("~", "tok"), ("user", "~"), ("", "")])
    def test_docker_hub_login_skipped(self, state, tmp_path, username, token):
        """Placeholder or missing credentials should skip the login."""
        (state.work_dir / ".git").mkdir()
        harness = Harness(
            state, tmp_path, docker_hub_username=username, docker_hub_access_token=token
        )
        harness.pipeline().run_prebuild()
        assert harness.runtime.calls_to("login") == [(REGISTRY, "AWS", "token")]

    def test_review_app_gate_skips(self, state, tmp_path):
        """An unopened PR should stop before any external work."""
        harness = Harness(
            state,
            tmp_path,
            pipeline=True,
            source_version="pr/5",
            webhook_event="PULL_REQUEST_UPDATED",
        )

        result = harness.pipeline().run_prebuild()

        assert result.skipped is True
        assert harness.runtime.calls == []
        assert harness.object_store.downloads == []
        assert harness.state.has_skip_marker("myapp-build:1234")

    def test_invalid_manifest_fails_before_logins(self, harness):
        """Validation errors stop the phase; the download is still joined."""
        harness.state.path("apppack.toml").write_text('[build]\nsystem = "nix"\n')

        with pytest.raises(ManifestValidationError):
            harness.pipeline().run_prebuild()

        assert harness.runtime.calls_to("login") == []
        assert len(harness.object_store.downloads) == 1

    def test_cache_download_failure_tolerated(self, harness):
        """A failed cache download only logs a warning."""
        harness.object_store.fail_download = True
        result = harness.pipeline().run_prebuild()
        assert result.skipped is False


class TestBuild:
    """Tests for Pipeline.run_build."""

    def test_skipped_build(self, harness):
        """A skip marker should stop the build."""
        harness.state.write_skip_marker("myapp-build:1234")
        result = harness.pipeline().run_build()
        assert result.skipped is True
        assert harness.runtime.calls == []
        assert harness.engine.builds == []

    def test_dockerfile_build(self, harness, capsys):
        """Dockerfile builds write process metadata from services."""
        write_dockerfile_manifest(harness.state)

        result = harness.pipeline().run_build()

        (dockerfile, config), = harness.runtime.calls_to("build_image")
        assert dockerfile == "Dockerfile"
        assert config.image == f"{REPO}:{GIT_SHA}"
        assert config.env == {"CI": "true", "SECRET_KEY": "s3cret"}
        assert result.details["image"] == config.image

        with open(harness.state.path("metadata.toml"), "rb") as f:
            processes = tomllib.load(f)["processes"]
        assert [p["type"] for p in processes] == ["web", "worker", "release"]
        assert processes[0]["command"] == ["gunicorn app:app --bind 0.0.0.0:$PORT"]
        assert processes[-1]["command"] == ["python manage.py migrate"]

        out = capsys.readouterr().out
        assert "#*#*#*#*#*# apppack-build-start #*#*#*#*#*#" in out
        assert "#*#*#*#*#*# apppack-build-end #*#*#*#*#*#" in out

    def test_publish_order(self, harness):
        """The numbered tag is pushed first, then the rest and the cache."""
        write_dockerfile_manifest(harness.state)
        harness.settings.cache_dir.mkdir(parents=True)
        (harness.settings.cache_dir / "blob").write_bytes(b"new")

        harness.pipeline().run_build()

        pushes = [call[0] for call in harness.runtime.calls_to("push_image")]
        assert pushes[0] == f"{REPO}:build-42"
        assert sorted(pushes[1:]) == sorted([f"{REPO}:latest", f"{REPO}:{GIT_SHA}"])
        assert harness.object_store.uploads == [
            (harness.settings.cache_dir, "artifacts", "cache", True)
        ]
        assert ("artifacts", "cache/layer.tar") not in harness.object_store.objects
        assert harness.object_store.objects[("artifacts", "cache/blob")] == b"new"
        assert harness.state.file_exists("commit.txt")

    def test_archive_failure_is_fatal(self, harness):
        """A failed cache upload should fail the build."""
        write_dockerfile_manifest(harness.state)
        harness.object_store.fail_upload = True
        with pytest.raises(ObjectStoreError):
            harness.pipeline().run_build()

    def test_buildpack_build(self, harness):
        """Buildpack builds copy process metadata into the manifest."""
        harness.runtime.files[BUILDPACK_METADATA_PATH] = tar_archive(
            {"metadata.toml": BUILDPACK_METADATA}
        )

        harness.pipeline().run_build()

        (build,) = harness.engine.builds
        assert build["image"] == f"{REPO}:{GIT_SHA}"
        assert build["builder"] == "registry.apppackcdn.net/heroku/buildpacks:20"
        assert build["env"]["SECRET_KEY"] == "s3cret"
        assert build["pull_policy"] == "if-not-present"
        assert build["cache_dir"] == harness.settings.cache_dir
        assert set(build["tags"]) == {
            f"{REPO}:{GIT_SHA}",
            f"{REPO}:latest",
            f"{REPO}:build-42",
        }

        (name, spec), = harness.runtime.calls_to("create_container")
        assert name == "myapp-build-1234-metadata"
        assert spec.image == build["image"]
        assert harness.runtime.containers[name].deleted is True

        with open(harness.state.path("apppack.toml"), "rb") as f:
            manifest = tomllib.load(f)
        assert manifest["services"] == {"web": {"command": "gunicorn app:app"}}
        assert manifest["deploy"]["release_command"] == "python manage.py migrate"
        assert "built" in harness.state.path("build.log").read_text()

    def test_metadata_container_deleted_on_copy_failure(self, harness):
        """The throwaway container is removed even if the copy fails."""
        with pytest.raises(ContainerError):
            harness.pipeline().run_build()
        assert harness.runtime.calls_to("delete_container") == [("myapp-build-1234-metadata",)]


class TestPostbuild:
    """Tests for Pipeline.run_postbuild."""

    def test_skipped(self, harness):
        """A skip marker should skip the tests."""
        harness.state.write_skip_marker("myapp-build:1234")
        assert harness.pipeline().run_postbuild().skipped is True
        assert harness.runtime.calls == []

    def test_no_tests_defined(self, harness):
        """Without a test command the phase succeeds and says so."""
        result = harness.pipeline().run_postbuild()
        assert result.skipped is False
        assert "no tests defined" in harness.state.path("test.log").read_text()
        assert harness.runtime.calls == []

    def test_buildpack_test_run(self, harness, capsys):
        """Tests run through the launcher with the merged test env."""
        write_app_json(harness.state)
        harness.state.write_env_file({"REDIS_URL": "redis://redis:6379"})
        harness.runtime.stdout = "5 passed\n"
        harness.runtime.stderr = "warning\n"

        result = harness.pipeline().run_postbuild()

        assert result.details == {"exit_code": 0}
        (name, network, spec), = harness.runtime.calls_to("run_container")
        assert name == "myapp-build-1234"
        assert network == "myapp-build:1234"
        assert spec.image == f"{REPO}:{GIT_SHA}"
        assert spec.entrypoint == [BUILDPACK_LAUNCHER]
        assert spec.command == ["/bin/sh", "-c", "pytest -x"]
        assert "CI=true" in spec.env
        assert "REDIS_URL=redis://redis:6379" in spec.env
        assert "DJANGO_SETTINGS_MODULE=app.settings.test" in spec.env
        assert harness.runtime.containers[name].deleted is True

        log = harness.state.path("test.log").read_text()
        assert "+ pytest -x" in log
        assert "5 passed" in log
        assert "warning" in log
        captured = capsys.readouterr()
        assert "apppack-test-start" in captured.out
        assert "apppack-test-end" in captured.out
        assert "warning" in captured.err

    def test_dockerfile_test_run(self, harness):
        """Dockerfile images run the command without the launcher."""
        harness.state.path("apppack.toml").write_text(
            DOCKERFILE_MANIFEST + '\n[test]\ncommand = "make test"\nenv = ["A=1"]\n'
        )
        harness.pipeline().run_postbuild()
        (_name, _network, spec), = harness.runtime.calls_to("run_container")
        assert spec.entrypoint is None
        assert spec.command == ["/bin/sh", "-c", "make test"]
        assert "A=1" in spec.env

    def test_failed_tests(self, harness):
        """A non-zero exit raises TestFailedError and removes the container."""
        write_app_json(harness.state)
        harness.runtime.exit_code = 2

        with pytest.raises(TestFailedError, match="test failed with exit code 2"):
            harness.pipeline().run_postbuild()

        assert harness.runtime.containers["myapp-build-1234"].deleted is True

    def test_wait_failure_removes_container_before_joining(self, harness):
        """A failed wait removes the container so the log stream can end."""
        write_app_json(harness.state)
        runtime = FollowingLogsRuntime(fail_on={"wait_for_exit"})
        harness.runtime = runtime

        with pytest.raises(ContainerError, match="wait_for_exit failed"):
            harness.pipeline().run_postbuild()

        assert runtime.stream_ended_by_removal is True
        assert runtime.calls_to("delete_container") == [("myapp-build-1234",)]
