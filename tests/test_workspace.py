"""Tests for workspace allocation, materialization and cleanup."""

import json
from unittest.mock import MagicMock

import pytest

from infraflow.modules.deployments.schemas import Provider
from infraflow.modules.deployments.workspace import (
    BACKEND_FILE,
    MAIN_FILE,
    PROVIDERS_FILE,
    TFVARS_FILE,
    VARIABLES_FILE,
    WorkspaceManager,
)

from tests.conftest import VALID_DESCRIPTION


@pytest.fixture
def manager(settings):
    return WorkspaceManager(settings.workspace_root, settings)


class TestAcquire:
    def test_acquire_is_idempotent(self, manager):
        first = manager.acquire("dep-1")
        (first / "terraform.tfstate").write_text("{}")
        second = manager.acquire("dep-1")

        assert first == second
        assert (second / "terraform.tfstate").read_text() == "{}"
        assert manager.exists("dep-1")

    @pytest.mark.parametrize("bad_id", ["", "../escape", "a/b", ".hidden"])
    def test_rejects_unsafe_ids(self, manager, bad_id):
        with pytest.raises(ValueError):
            manager.path_for(bad_id)


class TestMaterialize:
    @pytest.mark.parametrize("provider,marker", [
        (Provider.AWS, 'provider "aws"'),
        (Provider.GCP, 'provider "google"'),
        (Provider.AZURE, 'provider "azurerm"'),
    ])
    def test_writes_provider_boilerplate(self, manager, provider, marker):
        path = manager.acquire("dep-1")
        manager.materialize(path, VALID_DESCRIPTION, provider)

        assert (path / MAIN_FILE).read_text() == VALID_DESCRIPTION
        assert marker in (path / PROVIDERS_FILE).read_text()
        assert 'variable "environment"' in (path / VARIABLES_FILE).read_text()
        assert not (path / BACKEND_FILE).exists()

    def test_default_variables_never_contain_credentials(self, settings):
        settings.aws_access_key_id = "AKIATEST"
        settings.aws_region = "eu-west-1"
        manager = WorkspaceManager(settings.workspace_root, settings)
        path = manager.acquire("dep-1")
        manager.materialize(path, VALID_DESCRIPTION, Provider.AWS)

        with open(path / TFVARS_FILE) as f:
            assert json.load(f) == {"aws_region": "eu-west-1"}
        assert "AKIATEST" not in "".join(p.read_text() for p in path.iterdir())

    def test_backend_block_with_remote_state(self, settings):
        backend = MagicMock()
        backend.backend_block.return_value = 'terraform {\n  backend "s3" {}\n}\n'
        manager = WorkspaceManager(settings.workspace_root, settings, state_backend=backend)
        path = manager.acquire("dep-1")
        manager.materialize(path, VALID_DESCRIPTION, Provider.AWS, deployment_id="dep-1")

        backend.ensure_bucket.assert_called_once()
        backend.backend_block.assert_called_once_with("dep-1")
        assert 'backend "s3"' in (path / BACKEND_FILE).read_text()


class TestRelease:
    def test_release_removes_directory(self, manager):
        path = manager.acquire("dep-1")
        manager.release(path)
        assert not manager.exists("dep-1")

    def test_release_of_missing_path_is_quiet(self, manager):
        manager.release(manager.path_for("never-created"))

    def test_validation_workspace_is_always_removed(self, manager):
        with pytest.raises(RuntimeError):
            with manager.validation_workspace() as path:
                assert path.is_dir()
                assert path.parent == manager.root
                assert path.name.startswith("validate-")
                seen = path
                raise RuntimeError("boom")
        assert not seen.exists()
