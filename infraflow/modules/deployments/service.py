import logging
import math
from functools import partial
from typing import List, Optional, Tuple

from infraflow.config import Settings
from infraflow.modules.deployments import process_registry
from infraflow.modules.deployments.deployment_worker import run_deploy_job
from infraflow.modules.deployments.destroy_worker import run_rollback_job
from infraflow.modules.deployments.exceptions import (
    DeploymentNotFoundError,
    InvalidDescriptionError,
    JobAlreadyActiveError,
    NoDeployedDeploymentError,
    OrchestratorError,
)
from infraflow.modules.deployments.hcl import check_description, parse_description
from infraflow.modules.deployments.reconciler import CostEstimator, CostReconciler, InfracostEstimator
from infraflow.modules.deployments.repository import (
    DeploymentRepository,
    InMemoryDeploymentRepository,
    SupabaseDeploymentRepository,
)
from infraflow.modules.deployments.scheduler import JobScheduler
from infraflow.modules.deployments.schemas import (
    CostEstimateResult,
    Deployment,
    DeploymentEvent,
    DeploymentListResponse,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentStatus,
    DeploymentStatusResponse,
    ExportFormat,
    ExportResponse,
    JobKind,
    LogEntry,
    LogLevel,
    Provider,
    ValidationResponse,
)
from infraflow.modules.deployments.state_backend import S3StateBackend
from infraflow.modules.deployments.state_machine import DeploymentStateMachine, Listener
from infraflow.modules.deployments.terraform_driver import ProvisioningDriver, TerraformDriver
from infraflow.modules.deployments.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Entry point for the request layer.

    Input errors and lifecycle conflicts are raised synchronously; everything
    that happens inside a job is only observable through the record.
    Every read and write is scoped to the owning user.
    """

    def __init__(
        self,
        repository: DeploymentRepository,
        state_machine: DeploymentStateMachine,
        scheduler: JobScheduler,
        workspaces: WorkspaceManager,
        driver: ProvisioningDriver,
        reconciler: CostReconciler,
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.scheduler = scheduler
        self.workspaces = workspaces
        self.driver = driver
        self.reconciler = reconciler

    def create(
        self,
        user_id: str,
        provider: Provider,
        infra_description: str,
        project_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Deployment:
        """Store a pending deployment and submit its deploy job. Returns the record as `deploying`."""
        provider = _coerce_provider(provider)
        warnings = check_description(infra_description)

        fields = {"user_id": user_id, "provider": provider, "infra_description": infra_description}
        if project_id:
            fields["project_id"] = project_id
        if name:
            fields["name"] = name
        record = Deployment(
            **fields,
            logs=[LogEntry(message=w, level=LogLevel.WARNING) for w in warnings],
        )
        self.repository.insert(record)
        logger.info(f"Created deployment {record.id} for user {user_id} ({provider.value})")

        try:
            return self.scheduler.submit(record.id, JobKind.DEPLOY)
        except OrchestratorError:
            # Not accepted: do not leave a pending record without a job behind
            self.repository.delete_if_inactive(record.id)
            raise

    def get_deployment(self, deployment_id: str, user_id: str) -> Deployment:
        record = self.repository.get(deployment_id)
        if record.user_id != user_id:
            raise DeploymentNotFoundError(deployment_id)
        return record

    def list_deployments(
        self,
        user_id: str,
        status: Optional[DeploymentStatus] = None,
        provider: Optional[Provider] = None,
        project_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Deployment], int]:
        return self.repository.list_by_owner(
            user_id, status=status, provider=provider, project_id=project_id, page=page, limit=limit
        )

    def get_status(self, deployment_id: str, user_id: str, include_live: bool = False) -> DeploymentStatusResponse:
        record = self.get_deployment(deployment_id, user_id)
        live_status = None
        if include_live and record.status == DeploymentStatus.DEPLOYED:
            live_status = self.reconciler.live_status(deployment_id)
        return DeploymentStatusResponse(
            deployment_id=record.id,
            status=record.status,
            outputs=record.outputs,
            cost_estimate=record.cost_estimate,
            deployment_time_seconds=record.deployment_time_seconds,
            deployed_at=record.deployed_at,
            rolled_back_at=record.rolled_back_at,
            failure_phase=record.failure_phase,
            requires_manual_intervention=record.requires_manual_intervention,
            live_status=live_status,
        )

    def get_logs(self, deployment_id: str, user_id: str) -> DeploymentLogsResponse:
        record = self.get_deployment(deployment_id, user_id)
        return DeploymentLogsResponse(
            deployment_id=record.id,
            logs=record.logs,
            status=record.status,
            has_more=(
                record.is_active
                or record.status == DeploymentStatus.PENDING
                or self.scheduler.has_followups(deployment_id)
            ),
        )

    def get_cost(self, deployment_id: str, user_id: str) -> CostEstimateResult:
        self.get_deployment(deployment_id, user_id)
        return self.reconciler.estimate(deployment_id)

    def rollback(self, project_id: str, user_id: str) -> Deployment:
        """Roll back the project's most recent deployed record."""
        record = self.repository.find_latest(project_id, user_id, status=DeploymentStatus.DEPLOYED)
        if record is None:
            in_progress = self.repository.find_latest(project_id, user_id, status=DeploymentStatus.ROLLING_BACK)
            if in_progress is not None:
                raise JobAlreadyActiveError(in_progress.id)
            raise NoDeployedDeploymentError(project_id)
        logger.info(f"Rollback requested for deployment {record.id} in project {project_id}")
        return self.scheduler.submit(record.id, JobKind.ROLLBACK)

    def delete(self, deployment_id: str, user_id: str):
        record = self.get_deployment(deployment_id, user_id)
        if self.scheduler.is_active(deployment_id) or not self.repository.delete_if_inactive(deployment_id):
            raise JobAlreadyActiveError(deployment_id)
        if record.status == DeploymentStatus.DEPLOYED:
            logger.warning(f"Deleted deployment {deployment_id} while deployed; its cloud resources were not destroyed")
        self.workspaces.release(self.workspaces.path_for(deployment_id))
        logger.info(f"Deleted deployment {deployment_id}")

    def export_configuration(
        self, deployment_id: str, user_id: str, export_format: ExportFormat = ExportFormat.STRUCTURED
    ) -> ExportResponse:
        record = self.get_deployment(deployment_id, user_id)
        export_format = ExportFormat(export_format)
        if export_format == ExportFormat.RAW:
            configuration = record.infra_description
        else:
            configuration = parse_description(record.infra_description)
        return ExportResponse(deployment_id=record.id, format=export_format, configuration=configuration)

    def validate_configuration(self, provider: Provider, infra_description: str) -> ValidationResponse:
        """Pre-flight check in a throwaway workspace; no record is created."""
        try:
            provider = _coerce_provider(provider)
            warnings = check_description(infra_description)
        except InvalidDescriptionError as e:
            return ValidationResponse(valid=False, diagnostic=str(e))

        with self.workspaces.validation_workspace() as workspace_path:
            self.workspaces.materialize(workspace_path, infra_description, provider)
            result = self.driver.validate(workspace_path, provider, use_backend=False)
        return ValidationResponse(valid=result.valid, diagnostic=result.diagnostic, warnings=warnings)

    def add_listener(self, listener: Listener):
        self.scheduler.add_listener(listener)

    def recover_interrupted(self) -> List[str]:
        return self.scheduler.recover_interrupted()

    def shutdown(self, wait: bool = False, grace_seconds: float = 5.0):
        self.scheduler.shutdown(wait=wait)
        process_registry.terminate_all(grace_seconds)


def to_list_response(items: List[Deployment], total: int, page: int, limit: int) -> DeploymentListResponse:
    return DeploymentListResponse(
        deployments=[DeploymentResponse.model_validate(d, from_attributes=True) for d in items],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if limit else 0,
    )


def log_event(event: DeploymentEvent):
    for entry in event.new_logs:
        logger.debug(f"[{event.deployment_id}] {entry.level.value}: {entry.message}")


def _coerce_provider(provider) -> Provider:
    try:
        return Provider(provider)
    except ValueError:
        raise InvalidDescriptionError(
            f"Unsupported provider '{provider}'; expected one of: {', '.join(p.value for p in Provider)}"
        )


def build_repository(settings: Settings) -> DeploymentRepository:
    if settings.persistence_backend == "memory":
        logger.warning("Using in-memory deployment store; records are lost on restart")
        return InMemoryDeploymentRepository()
    from infraflow.database.supabase_client import SupabaseClient
    return SupabaseDeploymentRepository(SupabaseClient.get_service_client())


def build_orchestrator(
    settings: Settings,
    driver: Optional[ProvisioningDriver] = None,
    estimator: Optional[CostEstimator] = None,
    repository: Optional[DeploymentRepository] = None,
    state_backend: Optional[S3StateBackend] = None,
) -> DeploymentOrchestrator:
    """Wire the orchestrator; backends default to terraform, infracost and the configured store."""
    repository = repository or build_repository(settings)
    state_backend = state_backend or S3StateBackend.from_settings(settings)
    workspaces = WorkspaceManager(settings.workspace_root, settings, state_backend)
    driver = driver or TerraformDriver(settings)
    if estimator is None and settings.cost_estimation_enabled:
        estimator = InfracostEstimator(settings)

    state_machine = DeploymentStateMachine(repository)
    reconciler = CostReconciler(state_machine, workspaces, driver, estimator)
    runners = {
        JobKind.DEPLOY: partial(
            run_deploy_job,
            state_machine=state_machine,
            workspaces=workspaces,
            driver=driver,
            reconciler=reconciler,
            flush_interval=settings.log_flush_interval_seconds,
        ),
        JobKind.ROLLBACK: partial(
            run_rollback_job,
            state_machine=state_machine,
            workspaces=workspaces,
            driver=driver,
            flush_interval=settings.log_flush_interval_seconds,
        ),
    }
    scheduler = JobScheduler(
        state_machine,
        runners,
        max_workers=settings.max_concurrent_jobs,
        max_pending=settings.max_pending_jobs,
    )
    return DeploymentOrchestrator(repository, state_machine, scheduler, workspaces, driver, reconciler)
