from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Used by background jobs to write deployment records

    # Persistence: "supabase" for the deployments table, "memory" for local runs and tests
    persistence_backend: str = "supabase"

    # Terraform
    terraform_bin: str = "terraform"
    workspace_root: str = "/tmp/infraflow/workspaces"
    terraform_init_timeout: int = 300
    terraform_validate_timeout: int = 120
    terraform_plan_timeout: int = 900
    terraform_apply_timeout: int = 1800  # 30 minutes
    terraform_destroy_timeout: int = 1800
    terraform_output_timeout: int = 60
    terminate_grace_seconds: float = 5.0

    # Remote state (optional); local terraform.tfstate in the workspace when unset
    state_bucket_name: Optional[str] = None

    # Job scheduler
    max_concurrent_jobs: int = 4
    max_pending_jobs: int = 64
    log_flush_interval_seconds: float = 2.0

    # AWS (will read from uppercase env vars automatically)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"

    # GCP Credentials
    gcp_project_id: Optional[str] = None
    gcp_service_account_key: Optional[str] = None  # JSON key as string or path
    gcp_region: str = "us-central1"

    # Azure Credentials
    azure_subscription_id: Optional[str] = None
    azure_client_id: Optional[str] = None
    azure_client_secret: Optional[str] = None
    azure_tenant_id: Optional[str] = None
    azure_location: str = "East US"

    # Cost estimation
    cost_estimation_enabled: bool = True
    infracost_bin: str = "infracost"
    infracost_timeout: int = 120

    # App
    app_name: str = "infraflow-backend"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
