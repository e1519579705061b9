from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from .database import engine, AsyncSessionLocal, create_tables
from .routers import environments, kubeconfig
from .config import get_settings
from .errors import DevPocketError
from .services.connection import ClusterConnectionManager
from .services.datastore import Datastore
from .services.encryption import EncryptionService
from .services.environments import EnvironmentOrchestrator
from .services.kubeconfig import KubeconfigParser
from .services.retry import RetryPolicy
import asyncio
import logging

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="DevPocket Environment Orchestrator API")


@app.exception_handler(DevPocketError)
async def devpocket_error_handler(request: Request, exc: DevPocketError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def build_services(app: FastAPI) -> None:
    """Create the service graph and store it on app.state."""
    encryption_service = EncryptionService.from_settings(settings)
    encryption_service.validate_key()

    datastore = Datastore(AsyncSessionLocal)
    connection_manager = ClusterConnectionManager(
        datastore,
        encryption_service,
        allow_plaintext_fallback=settings.allow_plaintext_kubeconfig,
    )

    app.state.encryption_service = encryption_service
    app.state.kubeconfig_parser = KubeconfigParser.from_settings(settings)
    app.state.connection_manager = connection_manager
    app.state.orchestrator = EnvironmentOrchestrator(
        datastore=datastore,
        connection_manager=connection_manager,
        retry_policy=RetryPolicy.from_settings(settings),
        settings=settings,
    )


@app.on_event("startup")
async def startup():
    # Retry database connection up to 5 times with exponential backoff
    max_retries = 5
    for attempt in range(max_retries):
        try:
            await create_tables()
            logger.info("Database tables created successfully")
            break
        except Exception as e:
            if attempt == max_retries - 1:
                logger.error(f"Failed to connect to database after {max_retries} attempts: {e}")
                raise
            wait_time = 2 ** attempt
            logger.warning(f"Database connection attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
            await asyncio.sleep(wait_time)

    build_services(app)

    if settings.allow_plaintext_kubeconfig:
        logger.warning("[CLUSTER] Plaintext kubeconfig fallback is enabled")
    if not settings.internal_api_token:
        logger.warning("[AUTH] INTERNAL_API_TOKEN is not set, API calls are not authenticated")

    logger.info("DevPocket orchestrator started")


@app.on_event("shutdown")
async def shutdown():
    connection_manager = getattr(app.state, "connection_manager", None)
    if connection_manager is not None:
        connection_manager.close()
    await engine.dispose()
    logger.info("DevPocket orchestrator stopped")


app.include_router(environments.router)
app.include_router(kubeconfig.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "devpocket-orchestrator"}
