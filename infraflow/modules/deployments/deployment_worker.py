import time
import logging
from functools import partial
from typing import Callable, Optional

from infraflow.modules.deployments.exceptions import ProvisioningError
from infraflow.modules.deployments.reconciler import CostReconciler
from infraflow.modules.deployments.schemas import LogLevel
from infraflow.modules.deployments.state_machine import DeploymentLogBuffer, DeploymentStateMachine
from infraflow.modules.deployments.terraform_driver import ProvisioningDriver
from infraflow.modules.deployments.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

LOG_FLUSH_INTERVAL_SEC = 2.0


def run_deploy_job(
    deployment_id: str,
    state_machine: DeploymentStateMachine,
    workspaces: WorkspaceManager,
    driver: ProvisioningDriver,
    reconciler: Optional[CostReconciler] = None,
    flush_interval: float = LOG_FLUSH_INTERVAL_SEC,
) -> Optional[Callable[[], None]]:
    """
    Deploy job: materialize, validate, plan, apply.

    Runs on a scheduler worker thread after the record was moved to
    `deploying`. Provisioning errors end the job as `failed`; anything
    else propagates to the scheduler, which records it the same way.
    The workspace is released unless an apply was attempted, since from then
    on it holds the state a rollback needs.

    On success returns the reconciliation step for the scheduler to run as a
    follow-up, after the deployment is released for rollback.
    """
    record = state_machine.repository.get(deployment_id)
    provider = record.provider
    log_buffer = DeploymentLogBuffer(state_machine, deployment_id, flush_interval)
    workspace_path = None
    keep_workspace = False
    followup = None

    try:
        workspace_path = workspaces.acquire(deployment_id)
        workspaces.materialize(workspace_path, record.infra_description, provider, deployment_id)
        log_buffer.add(f"Prepared workspace for {provider.value} deployment")

        validation = driver.validate(workspace_path, provider, log_buffer, deployment_id)
        if not validation.valid:
            log_buffer.flush()
            state_machine.mark_failed(deployment_id, f"Terraform validation failed: {validation.diagnostic}")
            logger.error(f"Deployment {deployment_id} failed validation")
            return
        log_buffer.add("Terraform configuration is valid")
        if validation.diagnostic:
            log_buffer.warning(validation.diagnostic)

        log_buffer.add("Planning Terraform changes...")
        plan = driver.plan(workspace_path, provider, log_buffer, deployment_id)
        if not plan.has_changes:
            log_buffer.warning("Plan contains no changes")

        log_buffer.add("Applying Terraform configuration...")
        keep_workspace = True
        started = time.monotonic()
        result = driver.apply(workspace_path, plan, provider, log_buffer, deployment_id)
        elapsed = time.monotonic() - started
        for warning in result.warnings:
            log_buffer.add(warning, LogLevel.WARNING)

        log_buffer.flush()
        state_machine.mark_deployed(deployment_id, result.outputs, elapsed)
        logger.info(f"Deployment {deployment_id} completed successfully in {elapsed:.1f}s")

        if reconciler is not None:
            followup = partial(reconciler.reconcile, deployment_id, workspace_path)
    except ProvisioningError as e:
        log_buffer.flush()
        state_machine.mark_failed(deployment_id, str(e))
        logger.error(f"Deployment {deployment_id} failed: {str(e)}")
    finally:
        log_buffer.flush()
        if workspace_path is not None and not keep_workspace:
            workspaces.release(workspace_path)
    return followup
