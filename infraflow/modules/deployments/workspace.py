import json
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from infraflow.config import Settings
from infraflow.modules.deployments.schemas import Provider
from infraflow.modules.deployments.state_backend import S3StateBackend

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

MAIN_FILE = "main.tf"
PROVIDERS_FILE = "providers.tf"
VARIABLES_FILE = "variables.tf"
BACKEND_FILE = "backend.tf"
TFVARS_FILE = "terraform.tfvars.json"

PROVIDER_BLOCKS: Dict[Provider, str] = {
    Provider.AWS: """terraform {
  required_providers {
    aws = {
      source  = "hashicorp/aws"
      version = "~> 5.0"
    }
  }
}

provider "aws" {
  region = var.aws_region
}
""",
    Provider.GCP: """terraform {
  required_providers {
    google = {
      source  = "hashicorp/google"
      version = "~> 4.0"
    }
  }
}

provider "google" {
  project = var.gcp_project_id
  region  = var.gcp_region
}
""",
    Provider.AZURE: """terraform {
  required_providers {
    azurerm = {
      source  = "hashicorp/azurerm"
      version = "~> 3.0"
    }
  }
}

provider "azurerm" {
  features {}
}
""",
}

VARIABLE_BLOCKS: Dict[Provider, str] = {
    Provider.AWS: """variable "aws_region" {
  description = "AWS region"
  type        = string
  default     = "us-east-1"
}

variable "environment" {
  description = "Environment name"
  type        = string
  default     = "dev"
}
""",
    Provider.GCP: """variable "gcp_project_id" {
  description = "GCP Project ID"
  type        = string
}

variable "gcp_region" {
  description = "GCP region"
  type        = string
  default     = "us-central1"
}

variable "environment" {
  description = "Environment name"
  type        = string
  default     = "dev"
}
""",
    Provider.AZURE: """variable "azure_location" {
  description = "Azure location"
  type        = string
  default     = "East US"
}

variable "environment" {
  description = "Environment name"
  type        = string
  default     = "dev"
}
""",
}


class WorkspaceManager:
    """
    Owns the on-disk working directories terraform runs in.

    One directory per deployment id under `root`; it holds the submitted
    configuration, generated provider boilerplate and terraform's local state,
    so it must outlive a successful apply until the rollback destroys it.
    """

    def __init__(self, root: str, settings: Settings, state_backend: Optional[S3StateBackend] = None):
        self.root = Path(root)
        self.settings = settings
        self.state_backend = state_backend

    def path_for(self, deployment_id: str) -> Path:
        if not _SAFE_ID.match(deployment_id or ""):
            raise ValueError(f"Invalid deployment id for workspace: {deployment_id!r}")
        return self.root / deployment_id

    def exists(self, deployment_id: str) -> bool:
        return self.path_for(deployment_id).is_dir()

    def acquire(self, deployment_id: str) -> Path:
        """Create (or reuse) the workspace for a deployment. Existing content is kept."""
        path = self.path_for(deployment_id)
        existed = path.is_dir()
        path.mkdir(parents=True, exist_ok=True)
        if existed:
            logger.info(f"Reusing workspace {path}")
        else:
            logger.info(f"Created workspace {path}")
        return path

    def materialize(
        self,
        workspace_path: Path,
        infra_description: str,
        provider: Provider,
        deployment_id: Optional[str] = None,
    ):
        """Write the description plus provider boilerplate into the workspace."""
        provider = Provider(provider)
        workspace_path = Path(workspace_path)

        (workspace_path / MAIN_FILE).write_text(infra_description)
        (workspace_path / PROVIDERS_FILE).write_text(PROVIDER_BLOCKS[provider])
        (workspace_path / VARIABLES_FILE).write_text(VARIABLE_BLOCKS[provider])
        with open(workspace_path / TFVARS_FILE, 'w') as f:
            json.dump(self.default_variables(provider), f, indent=2)

        if self.state_backend and deployment_id:
            self.state_backend.ensure_bucket()
            (workspace_path / BACKEND_FILE).write_text(self.state_backend.backend_block(deployment_id))

        logger.info(f"Materialized {provider.value} configuration in {workspace_path}")

    def default_variables(self, provider: Provider) -> Dict[str, Any]:
        """Values for the generated variables.tf; credentials are never written here."""
        if provider == Provider.AWS:
            return {"aws_region": self.settings.aws_region}
        if provider == Provider.GCP:
            tf_vars = {"gcp_region": self.settings.gcp_region}
            if self.settings.gcp_project_id:
                tf_vars["gcp_project_id"] = self.settings.gcp_project_id
            return tf_vars
        return {"azure_location": self.settings.azure_location}

    def release(self, workspace_path: Path):
        """Delete a workspace. Failures are logged; the workspace is expendable."""
        if not workspace_path or not os.path.exists(workspace_path):
            return
        try:
            shutil.rmtree(workspace_path)
            logger.info(f"Cleaned up workspace: {workspace_path}")
        except Exception as e:
            logger.warning(f"Failed to cleanup workspace {workspace_path}: {str(e)}")

    @contextmanager
    def validation_workspace(self) -> Iterator[Path]:
        """Ephemeral directory for pre-flight checks, always removed afterwards."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix="validate-", dir=self.root))
        try:
            yield path
        finally:
            self.release(path)
