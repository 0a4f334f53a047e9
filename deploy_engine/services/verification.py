"""
Verification collaborators - answer "is this gate step really done?".

Two implementations share the same `verify(deployment_id, step)` contract:

- HttpVerificationClient: asks an external verification service
  (POST /v1/verify) over httpx. Used when DEPLOY_ENGINE_VERIFICATION_URL
  is configured.
- ArtifactVerifier: inspects the deployment workspace and the audit log.
  Used otherwise.

The gate turns any exception raised here into a failed check; callers
should not rely on verifiers swallowing errors themselves.
"""

import json
import time
from typing import Optional, Protocol

import httpx

from deploy_engine.config import Settings, get_settings
from deploy_engine.db.repository import DeploymentRepository, LogRepository
from deploy_engine.domain.models import VerificationReport
from deploy_engine.errors import EngineError
from deploy_engine.services.workspace import Workspace, WorkspaceManager
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

SANDBOX_RESULTS_FILE = ".deploy/sandbox_results.json"


class Verifier(Protocol):
    async def verify(self, deployment_id: str, step: str) -> VerificationReport:
        ...


class VerificationError(EngineError):
    """Raised when the verification service cannot be reached or errors."""

    code = "VERIFICATION_FAILED"


class HttpVerificationClient:
    """
    HTTP client for an external verification service.

    Usage:
        client = HttpVerificationClient("http://verifier:8080")
        report = await client.verify(deployment_id, "iac_generation")

    The client:
    - Uses httpx.AsyncClient for non-blocking HTTP
    - Adds X-API-Key header for authentication
    - Parses the response into a VerificationReport
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the verification client.

        Args:
            base_url: Service URL (defaults to settings.verification_url)
            api_key: API key for auth (defaults to settings.verification_api_key)
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        settings = get_settings()

        url = base_url or settings.verification_url
        if not url:
            raise VerificationError("Verification service URL is not configured")
        self.base_url = url.rstrip("/")
        self.api_key = api_key or settings.verification_api_key
        self.timeout = timeout if timeout is not None else settings.verification_timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-API-Key"] = self.api_key

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )

        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def verify(self, deployment_id: str, step: str) -> VerificationReport:
        """
        Ask the service whether a step is complete.

        Raises:
            VerificationError: If the request fails
        """
        client = await self._get_client()
        payload = {"deployment_id": deployment_id, "step": step}
        start_time = time.perf_counter()

        try:
            response = await client.post("/v1/verify", json=payload)
        except httpx.TimeoutException:
            raise VerificationError(f"Verification timed out after {self.timeout}s")
        except httpx.RequestError as e:
            raise VerificationError(
                f"Failed to connect to verification service at {self.base_url}: {str(e)}"
            )

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        if response.status_code != 200:
            raise VerificationError(
                f"Verification service returned {response.status_code}: {response.text}",
                context={"deployment_id": deployment_id, "step": step},
            )

        data = response.json()
        logger.debug("Verified %s/%s in %dms: %s", deployment_id, step, latency_ms, data)
        return VerificationReport(
            complete=bool(data.get("complete", False)),
            detail=data.get("detail") or data.get("reason"),
        )

    def __repr__(self) -> str:
        return f"<HttpVerificationClient base_url='{self.base_url}'>"


class ArtifactVerifier:
    """
    Local verifier based on workspace files and command history.

    Per step:
    - env_collection: .env holds at least one KEY=value line
    - credential_collection: never verified locally (mark it explicitly)
    - iac_generation: a successful `<iac> validate` is in the audit log
    - sandbox_testing: .deploy/sandbox_results.json reports passed=true
    - deployment: the IaC state file exists
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        deployments: DeploymentRepository,
        logs: LogRepository,
        settings: Optional[Settings] = None,
    ):
        self.workspaces = workspaces
        self.deployments = deployments
        self.logs = logs
        self.settings = settings or get_settings()

    async def _workspace(self, deployment_id: str) -> Workspace:
        if deployment_id in self.workspaces:
            return self.workspaces.get(deployment_id)
        deployment = await self.deployments.require(deployment_id)
        return self.workspaces.get(deployment_id, path=deployment.workspace_path)

    async def verify(self, deployment_id: str, step: str) -> VerificationReport:
        workspace = await self._workspace(deployment_id)

        if step == "env_collection":
            return self._check_env_file(workspace)
        if step == "credential_collection":
            return VerificationReport(
                complete=False,
                detail="Credentials must be confirmed explicitly",
            )
        if step == "iac_generation":
            return await self._check_iac_validated(deployment_id)
        if step == "sandbox_testing":
            return self._check_sandbox_results(workspace)
        if step == "deployment":
            state_file = f"{self.settings.iac_dir}/terraform.tfstate"
            if workspace.is_file(state_file):
                return VerificationReport(complete=True, detail=f"{state_file} present")
            return VerificationReport(complete=False, detail=f"{state_file} not found")

        return VerificationReport(complete=False, detail=f"No verification rule for step: {step}")

    def _check_env_file(self, workspace: Workspace) -> VerificationReport:
        if not workspace.is_file(".env"):
            return VerificationReport(complete=False, detail=".env not found")
        variables = [
            line.split("=", 1)[0].strip()
            for line in workspace.read_text(".env").splitlines()
            if "=" in line and not line.lstrip().startswith("#")
        ]
        if not variables:
            return VerificationReport(complete=False, detail=".env has no variables")
        return VerificationReport(complete=True, detail=f"{len(variables)} variable(s) collected")

    async def _check_iac_validated(self, deployment_id: str) -> VerificationReport:
        entries = await self.logs.list(deployment_id, source="iac", limit=500)
        for entry in reversed(entries):
            meta = entry.extra or {}
            if meta.get("event") != "end":
                continue
            command = meta.get("command") or ""
            if " validate" in command or " fmt" in command:
                if meta.get("exit_code") == 0:
                    return VerificationReport(complete=True, detail=f"Validated by: {command}")
                return VerificationReport(complete=False, detail=f"Validation failed: {command}")
        return VerificationReport(complete=False, detail="IaC configuration not validated")

    def _check_sandbox_results(self, workspace: Workspace) -> VerificationReport:
        if not workspace.is_file(SANDBOX_RESULTS_FILE):
            return VerificationReport(complete=False, detail="Sandbox tests not completed")
        try:
            results = json.loads(workspace.read_text(SANDBOX_RESULTS_FILE))
        except json.JSONDecodeError as e:
            return VerificationReport(complete=False, detail=f"Unreadable sandbox results: {e}")
        if results.get("passed") is True:
            return VerificationReport(complete=True, detail="Sandbox tests passed")
        return VerificationReport(complete=False, detail="Sandbox tests failed")
