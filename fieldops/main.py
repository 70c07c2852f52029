import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .routes.attendance import router as attendance_router
from .routes.calendar import router as calendar_router
from .routes.interventions import router as interventions_router
from .services.errors import FieldOpsError
from .services.idle_monitor import start_idle_monitor

logger = structlog.get_logger(__name__)


async def fieldops_error_handler(request: Request, exc: FieldOpsError):
    logger.info(
        "request_rejected",
        path=request.url.path,
        code=exc.code,
        status=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(FieldOpsError, fieldops_error_handler)

    # Routers (calendar first: its static paths share the /interventions prefix)
    app.include_router(calendar_router)
    app.include_router(interventions_router)
    app.include_router(attendance_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_created")
        app.state.idle_scheduler = start_idle_monitor() if settings.enable_idle_monitor else None

    @app.on_event("shutdown")
    def _shutdown():
        scheduler = getattr(app.state, "idle_scheduler", None)
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("idle_monitor_stopped")

    return app


app = create_app()
