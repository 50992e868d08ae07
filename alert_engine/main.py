"""
Alert Engine - Main Application
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text

from alert_engine import __version__
from alert_engine.config import get_settings
from alert_engine.database import get_db, engine, Base, SessionLocal
from alert_engine.exceptions import (
    AlertValidationError,
    RuleValidationError,
    AlertGroupNotFoundError,
    RoutingRuleNotFoundError,
)
from alert_engine.routers import (
    webhook_router,
    rules_router,
    alert_groups_router,
    metrics_router,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()


def init_db():
    """Create missing tables. Production deployments run alembic migrations instead."""
    Base.metadata.create_all(bind=engine)


def reconcile_escalations(scheduler):
    """Re-queue escalation timers that were pending when the process stopped."""
    from alert_engine.services.escalation_service import EscalationService
    from alert_engine.services.notification_dispatcher import get_dispatcher

    db = SessionLocal()
    try:
        EscalationService(db, queue=scheduler, dispatcher=get_dispatcher()).reconcile()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info("Starting Alert Engine...")
    init_db()

    scheduler = None
    if settings.scheduler_enabled:
        from alert_engine.services.scheduler_service import get_scheduler

        scheduler = get_scheduler()
        await scheduler.start()
        reconcile_escalations(scheduler)
        if settings.auto_close_enabled:
            scheduler.schedule_auto_close(settings.auto_close_interval_minutes)
    else:
        logger.warning("Escalation scheduler disabled; escalation timers will not fire")

    logger.info("Alert Engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Alert Engine...")
    if scheduler is not None:
        await scheduler.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Alert Engine",
    description="Alert deduplication, correlation, routing and escalation",
    version=__version__,
    lifespan=lifespan
)


@app.exception_handler(AlertValidationError)
async def alert_validation_error_handler(request: Request, exc: AlertValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": exc.message, "field": exc.field}
    )


@app.exception_handler(RuleValidationError)
async def rule_validation_error_handler(request: Request, exc: RuleValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": exc.message, "errors": exc.errors}
    )


@app.exception_handler(AlertGroupNotFoundError)
@app.exception_handler(RoutingRuleNotFoundError)
async def not_found_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Include API routers
app.include_router(webhook_router)
app.include_router(rules_router)
app.include_router(alert_groups_router)
app.include_router(metrics_router)


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint
    """
    try:
        # Check database connection
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "version": __version__
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.app_port)
