import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from infraflow.config import settings
from infraflow.modules.deployments import routes as deployments_routes
from infraflow.modules.deployments.exceptions import (
    ConcurrentModificationError,
    DeploymentNotFoundError,
    InvalidDescriptionError,
    InvalidTransitionError,
    JobAlreadyActiveError,
    NoDeployedDeploymentError,
    OrchestratorError,
    SchedulerSaturatedError,
)
from infraflow.modules.deployments.service import build_orchestrator, log_event

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    redirect_slashes=False,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

ERROR_STATUS_CODES = {
    InvalidDescriptionError: 400,
    DeploymentNotFoundError: 404,
    NoDeployedDeploymentError: 404,
    JobAlreadyActiveError: 409,
    InvalidTransitionError: 409,
    ConcurrentModificationError: 409,
    SchedulerSaturatedError: 503,
}


@app.exception_handler(OrchestratorError)
async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code == 500:
        logger.error(f"Unmapped orchestrator error: {str(exc)}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


class SecurityHeadersMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].extend([
                    (b"X-Content-Type-Options", b"nosniff"),
                    (b"X-Frame-Options", b"DENY"),
                    (b"X-XSS-Protection", b"1; mode=block"),
                ])
            await send(message)

        await self.app(scope, receive, send_with_headers)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(deployments_routes.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup")
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator(settings)
        app.state.orchestrator.add_listener(log_event)

    recovered = app.state.orchestrator.recover_interrupted()
    if recovered:
        logger.warning(f"Recovered {len(recovered)} deployment(s) interrupted by the previous shutdown")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown")
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        orchestrator.shutdown(wait=False, grace_seconds=settings.terminate_grace_seconds)


@app.get("/")
async def root():
    return {"message": "Welcome to infraflow-backend", "status": "healthy"}


@app.get("/health")
@limiter.exempt
async def health():
    return {"status": "healthy"}


@app.get("/ready")
@limiter.exempt
async def ready():
    """Readiness probe: the orchestrator is built and its scheduler accepts jobs."""
    if getattr(app.state, "orchestrator", None) is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return {"status": "ready", "active_jobs": app.state.orchestrator.scheduler.active_count}
