from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import time
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    AWS = "aws"
    GCP = "gcp"
    AZURE = "azure"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({DeploymentStatus.DEPLOYING, DeploymentStatus.ROLLING_BACK})


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class JobKind(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class FailurePhase(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class ExportFormat(str, Enum):
    STRUCTURED = "structured"
    RAW = "raw-text"


class LogEntry(BaseModel):
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = Field(default_factory=utcnow)


class Deployment(BaseModel):
    """Persisted deployment record. Lifecycle fields are written only by the state machine."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    project_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    name: str = Field(default_factory=lambda: f"Deployment {int(time.time() * 1000)}")
    provider: Provider
    infra_description: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    outputs: Optional[Dict[str, Any]] = None
    cost_estimate: Optional[Dict[str, Any]] = None
    resource_summary: Optional[Dict[str, Any]] = None
    logs: List[LogEntry] = Field(default_factory=list)
    deployment_time_seconds: Optional[int] = None
    error_message: Optional[str] = None
    failure_phase: Optional[FailurePhase] = None
    requires_manual_intervention: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    version: int = 0

    class Config:
        from_attributes = True

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class DeploymentCreate(BaseModel):
    provider: Provider
    infra_description: str = Field(..., alias="terraform_code")
    project_id: Optional[str] = None
    name: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("infra_description")
    @classmethod
    def require_description(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Terraform code is required")
        return value


class ValidationRequest(BaseModel):
    provider: Provider
    infra_description: str = Field(..., alias="terraform_code")

    model_config = {"populate_by_name": True}


class RollbackRequest(BaseModel):
    project_id: str


class DeploymentResponse(BaseModel):
    id: str
    project_id: str
    user_id: str
    name: str
    provider: Provider
    status: DeploymentStatus
    outputs: Optional[Dict[str, Any]] = None
    cost_estimate: Optional[Dict[str, Any]] = None
    resource_summary: Optional[Dict[str, Any]] = None
    deployment_time_seconds: Optional[int] = None
    error_message: Optional[str] = None
    failure_phase: Optional[FailurePhase] = None
    requires_manual_intervention: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeploymentListResponse(BaseModel):
    deployments: List[DeploymentResponse]
    page: int
    limit: int
    total: int
    pages: int


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[LogEntry]
    status: DeploymentStatus
    has_more: bool = False


class LiveStatusResult(BaseModel):
    available: bool
    status: Optional[str] = None
    resources: List[Dict[str, Any]] = Field(default_factory=list)
    resource_count: int = 0
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, reason: str) -> "LiveStatusResult":
        return cls(available=False, status="error", error=reason)


class CostEstimateResult(BaseModel):
    available: bool
    cost_estimate: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, reason: str = "Cost estimation unavailable") -> "CostEstimateResult":
        return cls(available=False, error=reason)


class DeploymentStatusResponse(BaseModel):
    deployment_id: str
    status: DeploymentStatus
    outputs: Optional[Dict[str, Any]] = None
    cost_estimate: Optional[Dict[str, Any]] = None
    deployment_time_seconds: Optional[int] = None
    deployed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    failure_phase: Optional[FailurePhase] = None
    requires_manual_intervention: bool = False
    live_status: Optional[LiveStatusResult] = None


class ValidationResponse(BaseModel):
    valid: bool
    diagnostic: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ExportResponse(BaseModel):
    deployment_id: str
    format: ExportFormat
    configuration: Any


class DeploymentEvent(BaseModel):
    """Progress notification delivered to scheduler listeners after every persisted change."""

    deployment_id: str
    status: DeploymentStatus
    new_logs: List[LogEntry] = Field(default_factory=list)
