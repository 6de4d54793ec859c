import json
import logging
import os
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from infraflow.config import Settings
from infraflow.modules.deployments import process_registry
from infraflow.modules.deployments.exceptions import (
    ProvisioningError,
    ProvisioningTimeoutError,
    WorkspaceMissingError,
)
from infraflow.modules.deployments.schemas import Provider

logger = logging.getLogger(__name__)

LogCallback = Callable[[List[str]], None]

PLAN_FILE = "tfplan"
ERROR_TAIL_LINES = 20


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class ValidationResult:
    valid: bool
    diagnostic: Optional[str] = None


@dataclass
class PlanArtifact:
    path: Path
    has_changes: bool = True


@dataclass
class ApplyResult:
    outputs: Dict[str, Any] = field(default_factory=dict)
    raw_outputs: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class ProvisioningDriver(ABC):
    """The four lifecycle verbs of the provisioning backend, plus a state query."""

    @abstractmethod
    def validate(self, workspace_path: Path, provider: Provider, log_callback: Optional[LogCallback] = None,
                 deployment_id: Optional[str] = None, use_backend: bool = True) -> ValidationResult:
        ...

    @abstractmethod
    def plan(self, workspace_path: Path, provider: Provider, log_callback: Optional[LogCallback] = None,
             deployment_id: Optional[str] = None) -> PlanArtifact:
        ...

    @abstractmethod
    def apply(self, workspace_path: Path, plan: PlanArtifact, provider: Provider,
              log_callback: Optional[LogCallback] = None, deployment_id: Optional[str] = None) -> ApplyResult:
        ...

    @abstractmethod
    def destroy(self, workspace_path: Path, provider: Provider, log_callback: Optional[LogCallback] = None,
                deployment_id: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def init(self, workspace_path: Path, provider: Provider, log_callback: Optional[LogCallback] = None,
             deployment_id: Optional[str] = None, use_backend: bool = True) -> CommandResult:
        ...

    @abstractmethod
    def show(self, workspace_path: Path, provider: Provider) -> Dict[str, Any]:
        ...


class TerraformDriver(ProvisioningDriver):
    """Runs the terraform CLI in a workspace and maps exit codes to typed results."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.terraform_bin = settings.terraform_bin
        self._gcp_credentials_file: Optional[str] = None
        self._gcp_lock = threading.Lock()

    # Lifecycle verbs

    def init(
        self,
        workspace_path: Path,
        provider: Provider,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
        use_backend: bool = True,
    ) -> CommandResult:
        """terraform init; raises ProvisioningError on failure."""
        if log_callback:
            log_callback(["Initializing Terraform..."])
        args = ["init", "-input=false", "-no-color"]
        if not use_backend:
            args.append("-backend=false")
        result = self._run(
            "init", args, workspace_path, provider,
            timeout=self.settings.terraform_init_timeout,
            log_callback=log_callback,
            deployment_id=deployment_id,
        )
        if not result.ok:
            raise ProvisioningError(
                f"Terraform init failed with return code {result.returncode}: {_tail(result.stderr)}",
                result.returncode, result.stderr,
            )
        logger.info(f"Terraform initialized in {workspace_path}")
        return result

    def validate(
        self,
        workspace_path: Path,
        provider: Provider,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
        use_backend: bool = True,
    ) -> ValidationResult:
        """
        Initialize the workspace, then run `terraform validate -json`.

        Never raises: init failures, timeouts, non-zero exit codes and
        unreadable JSON all come back as valid=False with a diagnostic.
        """
        try:
            self.init(workspace_path, provider, log_callback, deployment_id, use_backend)
            result = self._run(
                "validate", ["validate", "-json", "-no-color"], workspace_path, provider,
                timeout=self.settings.terraform_validate_timeout,
                log_callback=log_callback,
                deployment_id=deployment_id,
            )
        except (ProvisioningError, OSError) as e:
            logger.info(f"Validation aborted in {workspace_path}: {str(e)}")
            return ValidationResult(valid=False, diagnostic=str(e))
        return self._parse_validation(result)

    def plan(
        self,
        workspace_path: Path,
        provider: Provider,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
    ) -> PlanArtifact:
        """Compute the change set into a plan file. Exit 0 = no changes, 2 = changes, anything else fails."""
        result = self._run(
            "plan",
            ["plan", "-input=false", "-no-color", "-detailed-exitcode", f"-out={PLAN_FILE}"],
            workspace_path, provider,
            timeout=self.settings.terraform_plan_timeout,
            log_callback=log_callback,
            deployment_id=deployment_id,
        )
        if result.returncode not in (0, 2):
            raise ProvisioningError(
                f"Terraform plan failed with return code {result.returncode}: {_tail(result.stderr)}",
                result.returncode, result.stderr,
            )
        has_changes = result.returncode == 2
        logger.info(f"Terraform plan completed in {workspace_path} (changes: {has_changes})")
        return PlanArtifact(path=Path(workspace_path) / PLAN_FILE, has_changes=has_changes)

    def apply(
        self,
        workspace_path: Path,
        plan: PlanArtifact,
        provider: Provider,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
    ) -> ApplyResult:
        """Apply a saved plan, then read `terraform output -json` into a flat outputs mapping."""
        if not Path(plan.path).is_file():
            raise ProvisioningError(f"Plan file {plan.path} not found; run plan before apply")

        result = self._run(
            "apply",
            ["apply", "-input=false", "-no-color", "-auto-approve", Path(plan.path).name],
            workspace_path, provider,
            timeout=self.settings.terraform_apply_timeout,
            log_callback=log_callback,
            deployment_id=deployment_id,
        )
        if not result.ok:
            raise ProvisioningError(
                f"Terraform apply failed with return code {result.returncode}: {_tail(result.stderr)}",
                result.returncode, result.stderr,
            )
        logger.info("Terraform apply completed successfully")
        return self._read_outputs(workspace_path, provider, log_callback, deployment_id)

    def destroy(
        self,
        workspace_path: Path,
        provider: Provider,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
    ) -> bool:
        """Destroy everything tracked by the workspace's state. The workspace must still exist."""
        if not Path(workspace_path).is_dir():
            raise WorkspaceMissingError(str(workspace_path))
        result = self._run(
            "destroy",
            ["destroy", "-input=false", "-no-color", "-auto-approve"],
            workspace_path, provider,
            timeout=self.settings.terraform_destroy_timeout,
            log_callback=log_callback,
            deployment_id=deployment_id,
        )
        if not result.ok:
            raise ProvisioningError(
                f"Terraform destroy failed with return code {result.returncode}: {_tail(result.stderr)}",
                result.returncode, result.stderr,
            )
        logger.info("Terraform destroy completed successfully")
        return True

    def show(self, workspace_path: Path, provider: Provider) -> Dict[str, Any]:
        """Current state as `terraform show -json`."""
        result = self._run(
            "show", ["show", "-json", "-no-color"], workspace_path, provider,
            timeout=self.settings.terraform_output_timeout,
            stream_stdout=False,
        )
        if not result.ok:
            raise ProvisioningError(
                f"Terraform show failed with return code {result.returncode}: {_tail(result.stderr)}",
                result.returncode, result.stderr,
            )
        try:
            return json.loads(result.stdout) if result.stdout.strip() else {}
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"Failed to parse terraform show output: {str(e)}")

    # Output handling

    def _read_outputs(
        self,
        workspace_path: Path,
        provider: Provider,
        log_callback: Optional[LogCallback],
        deployment_id: Optional[str],
    ) -> ApplyResult:
        apply_result = ApplyResult()
        try:
            result = self._run(
                "output", ["output", "-json", "-no-color"], workspace_path, provider,
                timeout=self.settings.terraform_output_timeout,
                log_callback=log_callback,
                deployment_id=deployment_id,
                stream_stdout=False,
            )
        except ProvisioningError as e:
            apply_result.warnings.append(f"Failed to read Terraform outputs: {str(e)}")
            return apply_result

        if not result.ok:
            apply_result.warnings.append(
                f"Failed to read Terraform outputs (return code {result.returncode}): {_tail(result.stderr)}"
            )
            return apply_result
        if not result.stdout.strip():
            return apply_result
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("Failed to parse Terraform outputs")
            apply_result.warnings.append("Failed to parse Terraform outputs")
            return apply_result
        if not isinstance(raw, dict):
            apply_result.warnings.append("Unexpected Terraform output format")
            return apply_result

        apply_result.raw_outputs = raw
        apply_result.outputs = extract_output_values(raw)
        return apply_result

    def _parse_validation(self, result: CommandResult) -> ValidationResult:
        try:
            document = json.loads(result.stdout) if result.stdout.strip() else None
        except json.JSONDecodeError:
            document = None

        if not isinstance(document, dict):
            diagnostic = (result.stderr or result.stdout or "").strip()
            return ValidationResult(
                valid=False,
                diagnostic=diagnostic or f"terraform validate exited with code {result.returncode} and no readable output",
            )

        diagnostic = format_diagnostics(document.get("diagnostics") or [])
        if document.get("valid") is True and result.ok:
            return ValidationResult(valid=True, diagnostic=diagnostic or None)
        return ValidationResult(
            valid=False,
            diagnostic=diagnostic or _tail(result.stderr) or f"terraform validate exited with code {result.returncode}",
        )

    # Subprocess plumbing

    def _run(
        self,
        verb: str,
        args: List[str],
        cwd: Path,
        provider: Provider,
        timeout: float,
        log_callback: Optional[LogCallback] = None,
        deployment_id: Optional[str] = None,
        stream_stdout: bool = True,
    ) -> CommandResult:
        """
        Run one terraform command with a hard timeout.

        stdout and stderr are read on separate threads and every non-blank
        line is forwarded to log_callback as soon as it is produced
        (stdout only when stream_stdout is set). On timeout the process group
        is terminated and ProvisioningTimeoutError is raised.
        """
        if not Path(cwd).is_dir():
            raise WorkspaceMissingError(str(cwd))

        cmd = [self.terraform_bin] + args
        env = self._get_terraform_env(provider)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise ProvisioningError(
                f"Terraform not found at '{self.terraform_bin}'. Please install Terraform from https://www.terraform.io/downloads"
            )

        key = deployment_id or str(cwd)
        process_registry.register(key, proc)
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def stream_output(stream, sink: List[str], forward: bool):
            for line in iter(stream.readline, ''):
                line = line.rstrip()
                sink.append(line)
                if forward and log_callback and line.strip():
                    try:
                        log_callback([line])
                    except Exception as e:
                        logger.error(f"Log callback failed: {str(e)}")
            stream.close()

        readers = [
            threading.Thread(target=stream_output, args=(proc.stdout, stdout_lines, stream_stdout), daemon=True),
            threading.Thread(target=stream_output, args=(proc.stderr, stderr_lines, True), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Terraform {verb} exceeded {timeout}s in {cwd}; terminating")
            process_registry.stop_process(proc, self.settings.terminate_grace_seconds)
            raise ProvisioningTimeoutError(verb, timeout)
        finally:
            process_registry.unregister(key, proc)
            for reader in readers:
                reader.join(timeout=5)

        return CommandResult(
            returncode=proc.returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )

    def _get_terraform_env(self, provider: Provider) -> dict:
        """
        Create the environment for a terraform subprocess.
        Credentials go through environment variables, never into the workspace.
        """
        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        env.update(self._provider_credentials(Provider(provider)))

        # S3 state backend always authenticates with the AWS credentials
        if self.settings.state_bucket_name:
            env.update(_present({
                "AWS_ACCESS_KEY_ID": self.settings.aws_access_key_id,
                "AWS_SECRET_ACCESS_KEY": self.settings.aws_secret_access_key,
                "AWS_DEFAULT_REGION": self.settings.aws_region,
            }))
        return env

    def _provider_credentials(self, provider: Provider) -> Dict[str, str]:
        s = self.settings
        if provider == Provider.AWS:
            return _present({
                "AWS_ACCESS_KEY_ID": s.aws_access_key_id,
                "AWS_SECRET_ACCESS_KEY": s.aws_secret_access_key,
                "AWS_DEFAULT_REGION": s.aws_region,
            })
        if provider == Provider.GCP:
            return _present({
                "GOOGLE_PROJECT": s.gcp_project_id,
                "GOOGLE_APPLICATION_CREDENTIALS": self._setup_gcp_credentials(),
            })
        return _present({
            "ARM_SUBSCRIPTION_ID": s.azure_subscription_id,
            "ARM_CLIENT_ID": s.azure_client_id,
            "ARM_CLIENT_SECRET": s.azure_client_secret,
            "ARM_TENANT_ID": s.azure_tenant_id,
        })

    def _setup_gcp_credentials(self) -> Optional[str]:
        """Return a path to the GCP service account key, writing inline JSON to a private temp file once."""
        key = self.settings.gcp_service_account_key
        if not key:
            return None
        if not key.strip().startswith('{'):
            return key
        with self._gcp_lock:
            if self._gcp_credentials_file and os.path.exists(self._gcp_credentials_file):
                return self._gcp_credentials_file
            fd, path = tempfile.mkstemp(prefix="gcp-credentials-", suffix=".json")
            with os.fdopen(fd, 'w') as f:
                f.write(key)
            self._gcp_credentials_file = path
            return path


def extract_output_values(raw_output: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten `terraform output -json` into name -> value.
    Sensitive values are kept as-is for storage; display masking is the UI's concern.
    """
    if not raw_output or not isinstance(raw_output, dict):
        return {}
    flat = {}
    for key, entry in raw_output.items():
        if isinstance(entry, dict) and "value" in entry:
            flat[key] = entry["value"]
        else:
            flat[key] = entry
    return flat


def format_diagnostics(diagnostics: List[Dict[str, Any]]) -> str:
    lines = []
    for diag in diagnostics:
        if not isinstance(diag, dict):
            continue
        line = f"{diag.get('severity', 'error')}: {diag.get('summary', '').strip()}"
        rng = diag.get("range") or {}
        if rng.get("filename"):
            start = rng.get("start") or {}
            line += f" ({rng['filename']}:{start.get('line', '?')})"
        detail = (diag.get("detail") or "").strip()
        if detail:
            line += f" - {detail}"
        lines.append(line)
    return "\n".join(lines)


def _tail(text: str, lines: int = ERROR_TAIL_LINES) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


def _present(values: Dict[str, Optional[str]]) -> Dict[str, str]:
    return {k: v for k, v in values.items() if v}
