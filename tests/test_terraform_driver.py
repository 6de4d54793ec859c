"""Tests for the terraform CLI driver, run against a fake terraform shell script."""

import json
import stat
import sys

import pytest

from infraflow.modules.deployments import process_registry
from infraflow.modules.deployments.exceptions import (
    ProvisioningError,
    ProvisioningTimeoutError,
    WorkspaceMissingError,
)
from infraflow.modules.deployments.schemas import Provider
from infraflow.modules.deployments.terraform_driver import (
    PlanArtifact,
    TerraformDriver,
    extract_output_values,
    format_diagnostics,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake terraform is a POSIX shell script")

VALID_JSON = json.dumps({"valid": True, "error_count": 0, "warning_count": 0, "diagnostics": []})
INVALID_JSON = json.dumps({
    "valid": False,
    "error_count": 1,
    "diagnostics": [{
        "severity": "error",
        "summary": "Unsupported block type",
        "detail": "Blocks of type resourc are not expected here.",
        "range": {"filename": "main.tf", "start": {"line": 2}},
    }],
})
OUTPUT_JSON = json.dumps({
    "bucket_name": {"sensitive": False, "type": "string", "value": "my-bucket"},
    "db_password": {"sensitive": True, "type": "string", "value": "hunter2"},
})

DEFAULT_CASES = {
    "init": 'echo "Terraform has been successfully initialized!"; exit 0',
    "validate": f"echo '{VALID_JSON}'; exit 0",
    "plan": 'echo "Plan: 1 to add, 0 to change, 0 to destroy."; touch tfplan; exit 2',
    "apply": 'echo "Apply complete! Resources: 1 added."; echo "warning line" >&2; exit 0',
    "output": f"echo '{OUTPUT_JSON}'; exit 0",
    "destroy": 'echo "Destroy complete! Resources: 1 destroyed."; exit 0',
    "show": """echo '{"values": {"root_module": {"resources": []}}}'; exit 0""",
}


def make_terraform(tmp_path, **overrides):
    """Write a fake terraform binary that dispatches on its first argument."""
    cases = dict(DEFAULT_CASES, **overrides)
    body = "\n".join(f"  {verb}) {command} ;;" for verb, command in cases.items())
    script = tmp_path / "terraform"
    script.write_text(f'#!/bin/sh\ncase "$1" in\n{body}\nesac\necho "unknown command $1" >&2\nexit 1\n')
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "ws"
    path.mkdir()
    return path


def driver_for(settings, tmp_path, **overrides):
    settings.terraform_bin = make_terraform(tmp_path, **overrides)
    return TerraformDriver(settings)


class TestValidate:
    def test_valid_configuration(self, settings, tmp_path, workspace):
        lines = []
        result = driver_for(settings, tmp_path).validate(workspace, Provider.AWS, lines.extend)

        assert result.valid
        assert result.diagnostic is None
        assert "Terraform has been successfully initialized!" in lines

    def test_invalid_configuration_returns_diagnostic(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, validate=f"echo '{INVALID_JSON}'; exit 1")
        result = driver.validate(workspace, Provider.AWS)

        assert not result.valid
        assert "Unsupported block type (main.tf:2)" in result.diagnostic

    def test_init_failure_does_not_raise(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, init='echo "Error: Failed to query provider" >&2; exit 1')
        result = driver.validate(workspace, Provider.AWS)

        assert not result.valid
        assert "Failed to query provider" in result.diagnostic

    def test_unreadable_output_does_not_raise(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, validate='echo "panic: not json" >&2; exit 1')
        result = driver.validate(workspace, Provider.AWS)

        assert not result.valid
        assert result.diagnostic == "panic: not json"

    def test_missing_binary_does_not_raise(self, settings, workspace, tmp_path):
        settings.terraform_bin = str(tmp_path / "no-such-terraform")
        result = TerraformDriver(settings).validate(workspace, Provider.AWS)

        assert not result.valid
        assert "Terraform not found" in result.diagnostic


class TestPlanAndApply:
    def test_plan_with_changes(self, settings, tmp_path, workspace):
        plan = driver_for(settings, tmp_path).plan(workspace, Provider.AWS)
        assert plan.has_changes
        assert plan.path == workspace / "tfplan"

    def test_plan_without_changes(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, plan="touch tfplan; exit 0")
        assert not driver.plan(workspace, Provider.AWS).has_changes

    def test_plan_failure_raises(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, plan='echo "Error: invalid credentials" >&2; exit 1')
        with pytest.raises(ProvisioningError, match="invalid credentials") as exc_info:
            driver.plan(workspace, Provider.AWS)
        assert exc_info.value.returncode == 1

    def test_apply_reads_outputs(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path)
        plan = driver.plan(workspace, Provider.AWS)
        lines = []
        result = driver.apply(workspace, plan, Provider.AWS, lines.extend)

        assert result.outputs == {"bucket_name": "my-bucket", "db_password": "hunter2"}
        assert result.raw_outputs["db_password"]["sensitive"] is True
        assert result.warnings == []
        assert "Apply complete! Resources: 1 added." in lines
        assert "warning line" in lines

    def test_unparseable_outputs_are_a_warning(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, output='echo "not json"; exit 0')
        plan = driver.plan(workspace, Provider.AWS)
        result = driver.apply(workspace, plan, Provider.AWS)

        assert result.outputs == {}
        assert result.warnings == ["Failed to parse Terraform outputs"]

    def test_apply_without_plan_file(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path)
        with pytest.raises(ProvisioningError, match="Plan file"):
            driver.apply(workspace, PlanArtifact(path=workspace / "tfplan"), Provider.AWS)

    def test_apply_timeout_terminates_process(self, settings, tmp_path, workspace):
        settings.terraform_apply_timeout = 1
        driver = driver_for(settings, tmp_path, apply="exec sleep 30")
        plan = driver.plan(workspace, Provider.AWS)

        with pytest.raises(ProvisioningTimeoutError, match="Terraform apply timed out after 1 seconds"):
            driver.apply(workspace, plan, Provider.AWS, deployment_id="dep-timeout")
        assert process_registry.get_process("dep-timeout") is None


class TestDestroyAndShow:
    def test_destroy(self, settings, tmp_path, workspace):
        assert driver_for(settings, tmp_path).destroy(workspace, Provider.AWS) is True

    def test_destroy_requires_workspace(self, settings, tmp_path):
        driver = driver_for(settings, tmp_path)
        with pytest.raises(WorkspaceMissingError):
            driver.destroy(tmp_path / "gone", Provider.AWS)

    def test_destroy_failure_raises(self, settings, tmp_path, workspace):
        driver = driver_for(settings, tmp_path, destroy='echo "Error: DependencyViolation" >&2; exit 1')
        with pytest.raises(ProvisioningError, match="DependencyViolation"):
            driver.destroy(workspace, Provider.AWS)

    def test_show(self, settings, tmp_path, workspace):
        state = driver_for(settings, tmp_path).show(workspace, Provider.AWS)
        assert state == {"values": {"root_module": {"resources": []}}}


class TestEnvironment:
    def test_aws_credentials_are_passed_through_env(self, settings, tmp_path):
        settings.aws_access_key_id = "AKIATEST"
        settings.aws_secret_access_key = "secret"
        env = TerraformDriver(settings)._get_terraform_env(Provider.AWS)

        assert env["TF_IN_AUTOMATION"] == "1"
        assert env["AWS_ACCESS_KEY_ID"] == "AKIATEST"
        assert env["AWS_DEFAULT_REGION"] == settings.aws_region

    def test_inline_gcp_key_is_written_to_a_file(self, settings):
        settings.gcp_project_id = "my-project"
        settings.gcp_service_account_key = '{"type": "service_account"}'
        env = TerraformDriver(settings)._get_terraform_env(Provider.GCP)

        with open(env["GOOGLE_APPLICATION_CREDENTIALS"]) as f:
            assert json.load(f) == {"type": "service_account"}
        assert env["GOOGLE_PROJECT"] == "my-project"

    def test_azure_credentials(self, settings):
        settings.azure_client_id = "client"
        settings.azure_tenant_id = "tenant"
        env = TerraformDriver(settings)._get_terraform_env(Provider.AZURE)
        assert env["ARM_CLIENT_ID"] == "client"
        assert env["ARM_TENANT_ID"] == "tenant"


class TestHelpers:
    def test_extract_output_values(self):
        raw = {"a": {"value": 1, "type": "number"}, "b": "plain"}
        assert extract_output_values(raw) == {"a": 1, "b": "plain"}
        assert extract_output_values(None) == {}

    def test_format_diagnostics(self):
        text = format_diagnostics([
            {"severity": "warning", "summary": "Deprecated attribute"},
            {"severity": "error", "summary": "Missing argument", "detail": "region is required",
             "range": {"filename": "providers.tf", "start": {"line": 9}}},
        ])
        assert text.splitlines() == [
            "warning: Deprecated attribute",
            "error: Missing argument (providers.tf:9) - region is required",
        ]
