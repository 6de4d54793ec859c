"""
Core dependencies for deployment routes
"""

from fastapi import Header, HTTPException, Request, status
from infraflow.modules.deployments.service import DeploymentOrchestrator
import logging

logger = logging.getLogger(__name__)


def get_current_user_id(x_user_id: str = Header(default="", alias="X-User-Id")) -> str:
    """Caller identity as forwarded by the authenticating gateway"""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return user_id


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    """The orchestrator built at application startup"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        logger.error("Deployment orchestrator requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deployment service is not ready",
        )
    return orchestrator
