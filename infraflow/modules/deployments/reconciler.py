import json
import logging
import subprocess
from abc import ABC, abstractmethod
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from infraflow.config import Settings
from infraflow.modules.deployments.exceptions import CostEstimationError, DeploymentNotFoundError, ProvisioningError
from infraflow.modules.deployments.schemas import (
    CostEstimateResult,
    Deployment,
    DeploymentStatus,
    LiveStatusResult,
    LogEntry,
    LogLevel,
)
from infraflow.modules.deployments.state_machine import DeploymentStateMachine
from infraflow.modules.deployments.terraform_driver import ProvisioningDriver
from infraflow.modules.deployments.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class CostEstimator(ABC):
    """Estimation backend: one call from a workspace to a cost breakdown."""

    @abstractmethod
    def estimate(self, workspace_path: Path) -> Dict[str, Any]:
        """
        Return {monthly_estimate, currency, breakdown: [{resource, monthly_cost}]}.
        Raises CostEstimationError when no estimate can be produced.
        """


class InfracostEstimator(CostEstimator):
    """Runs `infracost breakdown` against a terraform workspace."""

    def __init__(self, settings: Settings):
        self.infracost_bin = settings.infracost_bin
        self.timeout = settings.infracost_timeout

    def estimate(self, workspace_path: Path) -> Dict[str, Any]:
        cmd = [
            self.infracost_bin, "breakdown",
            "--path", str(workspace_path),
            "--format", "json",
            "--no-color",
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise CostEstimationError(f"Infracost not found at '{self.infracost_bin}'")
        except subprocess.TimeoutExpired:
            raise CostEstimationError(f"Infracost timed out after {self.timeout} seconds")

        if result.returncode != 0:
            stderr = "\n".join(result.stderr.strip().splitlines()[-10:])
            raise CostEstimationError(f"Infracost failed with return code {result.returncode}: {stderr}")
        try:
            document = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise CostEstimationError(f"Failed to parse infracost output: {str(e)}")
        return parse_infracost_breakdown(document)


def parse_infracost_breakdown(document: Dict[str, Any]) -> Dict[str, Any]:
    """Map infracost's JSON report to the stored cost estimate shape."""
    if not isinstance(document, dict):
        raise CostEstimationError("Unexpected infracost output format")
    breakdown = []
    for project in document.get("projects") or []:
        resources = ((project or {}).get("breakdown") or {}).get("resources") or []
        for resource in resources:
            breakdown.append({
                "resource": resource.get("name"),
                "monthly_cost": _to_float(resource.get("monthlyCost")),
            })
    return {
        "monthly_estimate": _to_float(document.get("totalMonthlyCost")),
        "currency": document.get("currency") or "USD",
        "breakdown": breakdown,
    }


def collect_resources(state: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten the resources of `terraform show -json`, including child modules."""
    resources = []

    def walk(module: Dict[str, Any]):
        for resource in module.get("resources") or []:
            resources.append({
                "address": resource.get("address"),
                "type": resource.get("type"),
                "name": resource.get("name"),
                "mode": resource.get("mode", "managed"),
            })
        for child in module.get("child_modules") or []:
            walk(child)

    root = ((state or {}).get("values") or {}).get("root_module") or {}
    walk(root)
    return resources


def summarize_state(state: Dict[str, Any]) -> Dict[str, Any]:
    managed = [r for r in collect_resources(state) if r["mode"] == "managed"]
    return {
        "resource_count": len(managed),
        "resource_types": dict(Counter(r["type"] for r in managed)),
        "resources": [r["address"] for r in managed],
    }


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


class CostReconciler:
    """
    Attaches cost and resource summaries to deployed records, and answers
    on-demand cost and live-status queries.

    Nothing here changes a deployment's status: every failure becomes a
    warning log entry (post-apply) or an `available=False` result (on demand).
    """

    def __init__(
        self,
        state_machine: DeploymentStateMachine,
        workspaces: WorkspaceManager,
        driver: ProvisioningDriver,
        estimator: Optional[CostEstimator] = None,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.workspaces = workspaces
        self.driver = driver
        self.estimator = estimator

    def reconcile(self, deployment_id: str, workspace_path: Path) -> Optional[Deployment]:
        """
        Post-deploy summaries, run as a follow-up once the deploy job has
        released the deployment. Results are discarded if the record left
        `deployed` in the meantime (a rollback was accepted).
        """
        try:
            record = self.repository.get(deployment_id)
        except DeploymentNotFoundError:
            logger.info(f"Skipping reconciliation of deleted deployment {deployment_id}")
            return None
        if record.status != DeploymentStatus.DEPLOYED:
            logger.info(f"Skipping reconciliation of deployment {deployment_id}: {record.status.value}")
            return None

        entries = []
        resource_summary = None
        cost_estimate = None

        try:
            resource_summary = summarize_state(self.driver.show(workspace_path, record.provider))
        except (ProvisioningError, OSError) as e:
            entries.append(self._warning(deployment_id, f"Resource summary unavailable: {str(e)}"))

        if self.estimator is not None:
            try:
                cost_estimate = self.estimator.estimate(workspace_path)
            except CostEstimationError as e:
                entries.append(self._warning(deployment_id, f"Cost estimation unavailable: {str(e)}"))

        if cost_estimate is not None:
            entries.append(LogEntry(
                message=f"Estimated monthly cost: {cost_estimate.get('monthly_estimate')} {cost_estimate.get('currency')}"
            ))
        if resource_summary is None and not entries:
            return None

        try:
            saved = self.state_machine.attach_reconciliation(
                deployment_id, cost_estimate=cost_estimate, resource_summary=resource_summary, entries=entries
            )
        except Exception as e:
            logger.warning(f"Failed to store cost and resource summary for deployment {deployment_id}: {str(e)}")
            return None
        if saved is None:
            logger.info(f"Discarded reconciliation of deployment {deployment_id}: no longer deployed")
        return saved

    def estimate(self, deployment_id: str) -> CostEstimateResult:
        """Stored estimate if present, otherwise a read-only estimate of the current workspace."""
        record = self.repository.get(deployment_id)
        if record.cost_estimate:
            return CostEstimateResult(available=True, cost_estimate=record.cost_estimate)
        if self.estimator is None:
            return CostEstimateResult.unavailable()
        if record.is_active:
            return CostEstimateResult.unavailable("Cost estimation unavailable while a job is active")
        if not self.workspaces.exists(deployment_id):
            return CostEstimateResult.unavailable("Cost estimation unavailable: workspace not found")
        try:
            estimate = self.estimator.estimate(self.workspaces.path_for(deployment_id))
        except CostEstimationError as e:
            logger.warning(f"Cost estimation failed for deployment {deployment_id}: {str(e)}")
            return CostEstimateResult.unavailable(f"Cost estimation unavailable: {str(e)}")
        return CostEstimateResult(available=True, cost_estimate=estimate)

    def live_status(self, deployment_id: str) -> LiveStatusResult:
        """Resources currently tracked in the deployment's terraform state."""
        record = self.repository.get(deployment_id)
        if record.is_active:
            return LiveStatusResult.unavailable("A job is active for this deployment")
        if record.status != DeploymentStatus.DEPLOYED:
            return LiveStatusResult(available=False, status="not_deployed")
        if not self.workspaces.exists(deployment_id):
            return LiveStatusResult(available=False, status="not_deployed", error="Workspace not found")
        try:
            state = self.driver.show(self.workspaces.path_for(deployment_id), record.provider)
        except (ProvisioningError, OSError) as e:
            logger.warning(f"Failed to get live status for deployment {deployment_id}: {str(e)}")
            return LiveStatusResult.unavailable(str(e))
        resources = collect_resources(state)
        return LiveStatusResult(
            available=True,
            status="deployed",
            resources=resources,
            resource_count=len(resources),
        )

    def _warning(self, deployment_id: str, message: str) -> LogEntry:
        logger.warning(f"Deployment {deployment_id}: {message}")
        return LogEntry(message=message, level=LogLevel.WARNING)
