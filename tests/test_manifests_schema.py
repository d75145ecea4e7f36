"""Tests for manifest schema validation.

Covers the build manifest rules, app.json helpers and buildpack patching.
"""

import pytest

from appbuilder.manifests.schema import (
    AppJsonManifest,
    BuildManifest,
    ManifestValidationError,
    patch_buildpack,
)
from appbuilder.types import BuildSystem


def manifest(**data) -> BuildManifest:
    return BuildManifest.model_validate(data)


class TestBuildSystem:
    """Tests for build system selection."""

    def test_empty_manifest_uses_buildpacks(self):
        """No build table means buildpacks."""
        assert BuildManifest().build_system() == BuildSystem.BUILDPACK

    def test_dockerfile_path_alone_keeps_buildpacks(self):
        """Without an explicit system a dockerfile path does not switch engines."""
        m = manifest(build={"dockerfile": "docker/Dockerfile"})
        assert m.build_system() == BuildSystem.BUILDPACK
        assert m.use_buildpacks() is True
        assert m.use_dockerfile() is False

    def test_explicit_dockerfile_system(self):
        """system = dockerfile selects the Dockerfile build and its path."""
        m = manifest(build={"system": "dockerfile", "dockerfile": "docker/Dockerfile"})
        assert m.build_system() == BuildSystem.DOCKERFILE
        assert m.dockerfile_path() == "docker/Dockerfile"

    def test_explicit_buildpack_system(self):
        """system = buildpack ignores a dockerfile path."""
        m = manifest(build={"system": "buildpack", "dockerfile": "Dockerfile"})
        assert m.build_system() == BuildSystem.BUILDPACK

    def test_default_dockerfile_path(self):
        """The Dockerfile path defaults to Dockerfile."""
        assert manifest(build={"system": "dockerfile"}).dockerfile_path() == "Dockerfile"


class TestEnsureValid:
    """Tests for BuildManifest.ensure_valid."""

    def test_valid_dockerfile_manifest(self):
        """A dockerfile manifest with a web service is valid."""
        manifest(
            build={"system": "dockerfile"},
            services={"web": {"command": "gunicorn app"}},
        ).ensure_valid()

    def test_empty_manifest_is_valid(self):
        """An empty manifest is valid."""
        BuildManifest().ensure_valid()

    @pytest.mark.parametrize(
        ("data", "code"),
        [
            ({"build": {"system": "nix"}}, "unknown_build_system"),
            (
                {"build": {"dockerfile": "Dockerfile"}, "services": {"web": {"command": "run"}}},
                "buildpack_services",
            ),
            ({"services": {"web": {"command": "run"}}}, "buildpack_services"),
            ({"test": {"env": ["NOVALUE"]}}, "invalid_test_env"),
            (
                {"build": {"system": "dockerfile"}, "services": {"web": {"command": ""}}},
                "service_without_command",
            ),
            (
                {"build": {"system": "dockerfile"}, "services": {"worker": {"command": "w"}}},
                "missing_web_service",
            ),
            ({"build": {"system": "dockerfile"}}, "missing_web_service"),
        ],
    )
    def test_invalid(self, data, code):
        """Each broken rule should raise with its own code."""
        with pytest.raises(ManifestValidationError) as exc_info:
            manifest(**data).ensure_valid()
        assert exc_info.value.code == code

    def test_test_env_parsed(self):
        """Test env entries split on the first '='."""
        m = manifest(test={"env": ["A=1", "URL=postgres://x?a=b"]})
        assert m.get_test_env() == {"CI": "true", "A": "1", "URL": "postgres://x?a=b"}


class TestPatchBuildpack:
    """Tests for patch_buildpack function."""

    def test_cnb_buildpack_prefixed(self):
        """Known CNB buildpacks get the builder prefix."""
        assert patch_buildpack("heroku/python") == "urn:cnb:builder:heroku/python"

    def test_other_buildpack_unchanged(self):
        """Unknown buildpacks pass through."""
        url = "https://github.com/heroku/heroku-buildpack-ruby"
        assert patch_buildpack(url) == url


class TestAppJsonManifest:
    """Tests for AppJsonManifest helpers."""

    def test_defaults(self):
        """An empty app.json uses the default stack and has no tests."""
        app = AppJsonManifest()
        assert app.builders() == ["heroku/buildpacks:20", "heroku/heroku:20-cnb"]
        assert app.test_script() == ""
        assert app.test_env() == {"CI": "true"}
        assert app.test_addons() == []

    def test_heroku_22_builders(self):
        """heroku-22 uses the classic builder."""
        app = AppJsonManifest(stack="heroku-22")
        assert app.builders()[0] == "heroku/builder-classic:22"

    def test_custom_stack(self):
        """Unknown stacks are used as the builder image."""
        assert AppJsonManifest(stack="me/builder:1").builders() == ["me/builder:1"]

    def test_test_environment(self):
        """Test script, env and addons come from environments.test."""
        app = AppJsonManifest.model_validate(
            {
                "environments": {
                    "test": {
                        "scripts": {"test": "npm test"},
                        "env": {"NODE_ENV": "test", "CI": "false"},
                        "addons": ["heroku-postgresql:in-dyno"],
                    }
                }
            }
        )
        assert app.test_script() == "npm test"
        assert app.test_env() == {"CI": "false", "NODE_ENV": "test"}
        assert app.test_addons() == ["heroku-postgresql:in-dyno"]

    def test_to_build_manifest(self):
        """Conversion keeps buildpacks, builder and the test command."""
        app = AppJsonManifest.model_validate(
            {
                "stack": "heroku-22",
                "buildpacks": [{"url": "heroku/nodejs"}, {"url": "https://example.com/bp.tgz"}],
                "environments": {"test": {"scripts": {"test": "npm test"}, "env": {"A": "1"}}},
            }
        )
        converted = app.to_build_manifest()
        assert converted.build.system == "buildpack"
        assert converted.build.builder == "heroku/builder-classic:22"
        assert converted.build.buildpacks == [
            "urn:cnb:builder:heroku/nodejs",
            "https://example.com/bp.tgz",
        ]
        assert converted.test.command == "npm test"
        assert converted.test.env == ["A=1"]
        converted.ensure_valid()
