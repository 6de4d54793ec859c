"""Pytest configuration and shared fixtures."""

import threading
import time
from pathlib import Path

import pytest

from infraflow.config import Settings
from infraflow.modules.deployments.repository import InMemoryDeploymentRepository
from infraflow.modules.deployments.schemas import DeploymentStatus
from infraflow.modules.deployments.service import build_orchestrator
from infraflow.modules.deployments.terraform_driver import (
    ApplyResult,
    CommandResult,
    PlanArtifact,
    ProvisioningDriver,
    ValidationResult,
)

VALID_DESCRIPTION = '''
resource "aws_s3_bucket" "site" {
  bucket = "infraflow-test-bucket"
}

output "bucket_name" {
  value = aws_s3_bucket.site.bucket
}
'''

SAMPLE_STATE = {
    "format_version": "1.0",
    "values": {
        "root_module": {
            "resources": [
                {"address": "aws_s3_bucket.site", "mode": "managed", "type": "aws_s3_bucket", "name": "site"},
            ],
            "child_modules": [
                {
                    "address": "module.network",
                    "resources": [
                        {"address": "module.network.aws_vpc.main", "mode": "managed",
                         "type": "aws_vpc", "name": "main"},
                        {"address": "module.network.data.aws_region.current", "mode": "data",
                         "type": "aws_region", "name": "current"},
                    ],
                },
            ],
        }
    },
}


class FakeDriver(ProvisioningDriver):
    """
    Deterministic stand-in for terraform.

    Set `valid`, `plan_error`, `apply_error`, `destroy_error` to steer the
    outcome; set `gate` to a threading.Event to hold apply/destroy until the
    test releases it.
    """

    def __init__(self):
        self.calls = []
        self.valid = True
        self.diagnostic = None
        self.plan_error = None
        self.apply_error = None
        self.destroy_error = None
        self.show_error = None
        self.outputs = {"bucket_name": "infraflow-test-bucket"}
        self.apply_warnings = []
        self.state = SAMPLE_STATE
        self.gate = None
        self._lock = threading.Lock()

    def _record(self, verb):
        with self._lock:
            self.calls.append(verb)

    def _wait(self):
        if self.gate is not None:
            assert self.gate.wait(timeout=10), "test gate was never released"

    def init(self, workspace_path, provider, log_callback=None, deployment_id=None, use_backend=True):
        self._record("init")
        return CommandResult(returncode=0)

    def validate(self, workspace_path, provider, log_callback=None, deployment_id=None, use_backend=True):
        self._record("validate")
        if log_callback:
            log_callback(["Terraform has been successfully initialized!"])
        return ValidationResult(valid=self.valid, diagnostic=self.diagnostic)

    def plan(self, workspace_path, provider, log_callback=None, deployment_id=None):
        self._record("plan")
        if self.plan_error:
            raise self.plan_error
        if log_callback:
            log_callback(["Plan: 1 to add, 0 to change, 0 to destroy."])
        return PlanArtifact(path=Path(workspace_path) / "tfplan", has_changes=True)

    def apply(self, workspace_path, plan, provider, log_callback=None, deployment_id=None):
        self._record("apply")
        self._wait()
        if self.apply_error:
            raise self.apply_error
        if log_callback:
            log_callback(["Apply complete! Resources: 1 added, 0 changed, 0 destroyed."])
        return ApplyResult(outputs=dict(self.outputs), warnings=list(self.apply_warnings))

    def destroy(self, workspace_path, provider, log_callback=None, deployment_id=None):
        self._record("destroy")
        self._wait()
        if self.destroy_error:
            raise self.destroy_error
        if log_callback:
            log_callback(["Destroy complete! Resources: 1 destroyed."])
        return True

    def show(self, workspace_path, provider):
        self._record("show")
        if self.show_error:
            raise self.show_error
        return self.state


class FakeEstimator:
    def __init__(self, result=None, error=None):
        self.result = result or {
            "monthly_estimate": 12.5,
            "currency": "USD",
            "breakdown": [{"resource": "aws_s3_bucket.site", "monthly_cost": 12.5}],
        }
        self.error = error
        self.calls = 0
        self.gate = None

    def estimate(self, workspace_path):
        self.calls += 1
        if self.gate is not None:
            assert self.gate.wait(timeout=10), "test gate was never released"
        if self.error:
            raise self.error
        return self.result


def wait_for_rest(orchestrator, deployment_id, timeout=5.0):
    """Poll until the job and its follow-up work are done; returns the final record."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        record = orchestrator.repository.get(deployment_id)
        scheduler = orchestrator.scheduler
        if not record.is_active and not scheduler.is_active(deployment_id) and not scheduler.has_followups(deployment_id):
            return record
        time.sleep(0.01)
    raise AssertionError(f"Deployment {deployment_id} still active after {timeout}s")


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment: in-memory store, tmp workspaces."""
    return Settings(
        _env_file=None,
        persistence_backend="memory",
        workspace_root=str(tmp_path / "workspaces"),
        state_bucket_name=None,
        cost_estimation_enabled=False,
        log_flush_interval_seconds=0.0,
        max_concurrent_jobs=4,
        max_pending_jobs=8,
        terminate_grace_seconds=1.0,
    )


@pytest.fixture
def repository():
    return InMemoryDeploymentRepository()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def estimator():
    return FakeEstimator()


@pytest.fixture
def orchestrator(settings, driver, estimator, repository):
    orch = build_orchestrator(settings, driver=driver, estimator=estimator, repository=repository)
    yield orch
    for gate in (driver.gate, estimator.gate):
        if gate is not None:
            gate.set()
    orch.scheduler.shutdown(wait=True)


@pytest.fixture
def deployed(orchestrator):
    """A deployment that finished its deploy job successfully."""
    record = orchestrator.create("user-1", "aws", VALID_DESCRIPTION, project_id="project-1")
    final = wait_for_rest(orchestrator, record.id)
    assert final.status == DeploymentStatus.DEPLOYED
    return final
