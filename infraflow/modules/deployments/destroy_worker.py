import logging
from pathlib import Path

from infraflow.modules.deployments.exceptions import ProvisioningError, WorkspaceMissingError
from infraflow.modules.deployments.schemas import Deployment
from infraflow.modules.deployments.state_machine import DeploymentLogBuffer, DeploymentStateMachine
from infraflow.modules.deployments.terraform_driver import ProvisioningDriver
from infraflow.modules.deployments.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

LOG_FLUSH_INTERVAL_SEC = 2.0


def run_rollback_job(
    deployment_id: str,
    state_machine: DeploymentStateMachine,
    workspaces: WorkspaceManager,
    driver: ProvisioningDriver,
    flush_interval: float = LOG_FLUSH_INTERVAL_SEC,
):
    """
    Rollback job: destroy everything the deployment's state tracks.

    Runs after the record was moved to `rolling_back`. On success the
    workspace is released; on failure it is kept so an operator can inspect
    the state, and the record is flagged for manual intervention.
    """
    record = state_machine.repository.get(deployment_id)
    log_buffer = DeploymentLogBuffer(state_machine, deployment_id, flush_interval)

    try:
        workspace_path = _prepare_workspace(record, workspaces, driver, log_buffer)
        log_buffer.add("Destroying Terraform-managed resources...")
        driver.destroy(workspace_path, record.provider, log_buffer, deployment_id)

        log_buffer.flush()
        state_machine.mark_rolled_back(deployment_id)
        logger.info(f"Rollback of deployment {deployment_id} completed successfully")
        workspaces.release(workspace_path)
    except ProvisioningError as e:
        log_buffer.flush()
        state_machine.mark_failed(deployment_id, str(e))
        logger.error(f"Rollback of deployment {deployment_id} failed: {str(e)}")
    finally:
        log_buffer.flush()


def _prepare_workspace(
    record: Deployment,
    workspaces: WorkspaceManager,
    driver: ProvisioningDriver,
    log_buffer: DeploymentLogBuffer,
) -> Path:
    """The deploy job's workspace, or a fresh one re-initialized from remote state."""
    if workspaces.exists(record.id):
        return workspaces.path_for(record.id)

    backend = workspaces.state_backend
    if backend is None or not backend.state_exists(record.id):
        raise WorkspaceMissingError(str(workspaces.path_for(record.id)))

    log_buffer.add("Local workspace not found; restoring it from remote state")
    workspace_path = workspaces.acquire(record.id)
    workspaces.materialize(workspace_path, record.infra_description, record.provider, record.id)
    driver.init(workspace_path, record.provider, log_buffer, record.id)
    return workspace_path
