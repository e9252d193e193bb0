"""Main FastAPI application."""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadsync.config import settings
from leadsync.database import AsyncSessionLocal, Base, engine, init_models
from leadsync.errors import LeadSyncError
from leadsync.routers import namespace_routes, sync_routes
from leadsync.scheduler import SyncScheduler
from leadsync.services.dedup_store import DedupStore
from leadsync.services.job_tracker import JobTracker
from leadsync.services.namespace_router import NamespaceRegistry
from leadsync.services.notifier import build_notifier
from leadsync.services.rate_limiter import RateLimiterRegistry
from leadsync.services.sync_orchestrator import SyncOrchestrator
from leadsync.services.sync_state import SyncStateStore
from leadsync.services.user_store import UserStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything the routes need, built once per process."""
    bind: Any
    registry: NamespaceRegistry
    tracker: JobTracker
    dedup: DedupStore
    users: UserStore
    state: SyncStateStore
    limiters: RateLimiterRegistry
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler


def build_services(bind=None, session_factory=None, **orchestrator_kwargs) -> AppServices:
    bind = bind if bind is not None else engine
    session_factory = session_factory or AsyncSessionLocal

    registry = NamespaceRegistry(session_factory)
    tracker = JobTracker(session_factory)
    dedup = DedupStore(session_factory)
    users = UserStore(session_factory)
    state = SyncStateStore(session_factory)
    limiters = RateLimiterRegistry(
        overrides=settings.PLATFORM_RATE_LIMITS,
        timeout=settings.RATE_LIMIT_TIMEOUT_SECONDS,
    )
    orchestrator = SyncOrchestrator(
        registry=registry,
        tracker=tracker,
        dedup=dedup,
        users=users,
        state=state,
        limiters=limiters,
        notifier=orchestrator_kwargs.pop("notifier", None) or build_notifier(),
        **orchestrator_kwargs
    )
    return AppServices(
        bind=bind,
        registry=registry,
        tracker=tracker,
        dedup=dedup,
        users=users,
        state=state,
        limiters=limiters,
        orchestrator=orchestrator,
        scheduler=SyncScheduler(orchestrator),
    )


async def check_health(services: AppServices) -> Dict[str, Any]:
    """Dedup store ping plus test_connection for every configured platform."""
    orchestrator = services.orchestrator
    connectors: Dict[str, Any] = {}

    for platform, api_key in sorted(orchestrator.credentials.items()):
        if not api_key:
            connectors[platform] = {"configured": False}
            continue
        connector = orchestrator.connector_factory(platform, services.limiters.get(platform))
        try:
            ok = await connector.test_connection()
            connectors[platform] = {"configured": True, "ok": bool(ok)}
        except LeadSyncError as e:
            logger.warning(f"⚠️ Health check for {platform} failed: {e}")
            connectors[platform] = {"configured": True, "ok": False, "error": str(e)}
        finally:
            await connector.aclose()

    dedup_ok = await services.dedup.ping()
    healthy = dedup_ok and all(c.get("ok", True) for c in connectors.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "version": "1.0.0",
        "dedup_store": dedup_ok,
        "connectors": connectors,
        "scheduler": services.scheduler.status()["running"],
    }


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    app = FastAPI(
        title="LeadSync API",
        description="Outreach platform sync, deduplication and lead scoring",
        version="1.0.0",
        redirect_slashes=False
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services or build_services()

    app.include_router(sync_routes.router)
    app.include_router(namespace_routes.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return await check_health(app.state.services)

    @app.get("/")
    async def root():
        return {
            "message": "LeadSync API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health"
        }

    @app.on_event("startup")
    async def startup_event():
        """Run on application startup."""
        svc: AppServices = app.state.services
        logger.info("Starting LeadSync API...")
        await init_models(svc.bind)
        logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables")

        await svc.dedup.initialize()
        await svc.registry.ensure_default()
        await svc.registry.load()

        interrupted = await svc.tracker.recover_interrupted()
        if interrupted:
            logger.warning(f"⚠️ {len(interrupted)} interrupted jobs can be resumed: {interrupted}")

        svc.scheduler.start()
        logger.info("Application started successfully!")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Run on application shutdown."""
        svc: AppServices = app.state.services
        logger.info("Shutting down LeadSync API...")
        svc.scheduler.stop()
        await svc.dedup.close()

    return app


app = create_app()
