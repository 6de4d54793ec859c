"""Errors raised by the deployment orchestrator.

Input and lifecycle-conflict errors are raised synchronously to the caller.
Provisioning and infrastructure errors are raised inside a job and end up on
the deployment record as a `failed` transition.
"""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class InvalidDescriptionError(OrchestratorError):
    """The infrastructure description is empty or not valid HCL."""


class DeploymentNotFoundError(OrchestratorError):
    def __init__(self, deployment_id: str):
        super().__init__(f"Deployment {deployment_id} not found")
        self.deployment_id = deployment_id


class NoDeployedDeploymentError(OrchestratorError):
    def __init__(self, project_id: str):
        super().__init__(f"No active deployment found for rollback in project {project_id}")
        self.project_id = project_id


class InvalidTransitionError(OrchestratorError):
    def __init__(self, deployment_id: str, current: str, target: str):
        super().__init__(
            f"Deployment {deployment_id} cannot move from '{current}' to '{target}'"
        )
        self.deployment_id = deployment_id
        self.current = current
        self.target = target


class JobAlreadyActiveError(OrchestratorError):
    def __init__(self, deployment_id: str):
        super().__init__(f"A job is already active for deployment {deployment_id}")
        self.deployment_id = deployment_id


class SchedulerSaturatedError(OrchestratorError):
    """Too many jobs queued or running; the caller should retry later."""


class ConcurrentModificationError(OrchestratorError):
    def __init__(self, deployment_id: str, expected_version: int):
        super().__init__(
            f"Deployment {deployment_id} was modified concurrently (expected version {expected_version})"
        )
        self.deployment_id = deployment_id
        self.expected_version = expected_version


class ProvisioningError(OrchestratorError):
    """A terraform command exited unsuccessfully."""

    def __init__(self, message: str, returncode: int = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ProvisioningTimeoutError(ProvisioningError):
    def __init__(self, verb: str, timeout: float):
        super().__init__(f"Terraform {verb} timed out after {timeout:g} seconds")
        self.verb = verb
        self.timeout = timeout


class WorkspaceMissingError(ProvisioningError):
    def __init__(self, path: str):
        super().__init__(f"Workspace {path} does not exist; cannot run terraform against it")
        self.path = path


class CostEstimationError(OrchestratorError):
    """The estimation backend could not produce a cost breakdown."""
