"""Daily Settlement & Commission Engine - Main Application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement_engine import models  # noqa: F401  (registers tables)
from settlement_engine.api.routes import payouts, settlements
from settlement_engine.core.config import settings
from settlement_engine.core.database import Base, SessionLocal, engine
from settlement_engine.core.exceptions import SettlementError
from settlement_engine.core.logging import setup_logging
from settlement_engine.services.container import ServiceContainer
from settlement_engine.services.scheduler import SettlementScheduler

# Configure logging before anything else
logger = setup_logging(settings.log_level)

# Create all tables on startup
logger.info("Creating database tables...")
Base.metadata.create_all(bind=engine)
logger.info("Database tables ready")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the nightly scheduler when enabled; stop it on shutdown."""
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = SettlementScheduler(app.state.container, settings)
        scheduler.start()
        app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.shutdown()
    logger.info("Settlement engine shutting down")


# -- OpenAPI tag metadata for Swagger grouping --
tags_metadata = [
    {
        "name": "Health",
        "description": "Service health and pre-flight checks.",
    },
    {
        "name": "Settlements",
        "description": (
            "Generate one settlement per calendar day from completed payments, "
            "process it (commission payouts, SHA/MWU bank transfers), retry "
            "failed payouts and query totals."
        ),
    },
    {
        "name": "Payouts",
        "description": (
            "Commission payout history per recipient and the payment gateway "
            "result callback."
        ),
    },
]


app = FastAPI(
    title="Daily Settlement & Commission Engine",
    description=(
        "## Daily Settlement API\n\n"
        "Aggregates each day's completed payments into a settlement, splits it "
        "into the SHA share, the MWU share and delegate/coordinator commissions, "
        "and drives the payouts and bank transfers.\n\n"
        "### Settlement lifecycle\n"
        "- `pending` - generated, nothing sent yet\n"
        "- `processing` - payouts/transfers started; stays here while anything failed\n"
        "- `completed` - every attempted payout and transfer went through\n"
        "- `failed` - abandoned by an operator\n\n"
        "### Quick Start\n"
        "```bash\n"
        "# 1. Generate a settlement\n"
        'curl -X POST /api/v1/settlements/generate -H "Content-Type: application/json" '
        "-d '{\"settlement_date\":\"2024-03-01\"}'\n\n"
        "# 2. Process it\n"
        'curl -X POST /api/v1/settlements/<id>/process -H "Content-Type: application/json" '
        "-d '{\"operator\":\"admin\"}'\n"
        "```\n"
    ),
    version="1.0.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.container = ServiceContainer(settings, SessionLocal, engine=engine)

app.include_router(settlements.router, prefix="/api/v1/settlements", tags=["Settlements"])
app.include_router(payouts.router, prefix="/api/v1/payouts", tags=["Payouts"])

logger.info("Settlement engine API ready - routes registered")


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Map domain errors to their HTTP status with a stable error code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint.

    Returns a simple JSON object confirming the service is running.
    Useful for load balancers and monitoring systems.
    """
    return {"status": "healthy", "service": "settlement-engine"}


@app.get("/health/system", tags=["Health"])
def system_health(request: Request):
    """Storage and reports-directory check run before nightly batches."""
    report = request.app.state.container.orchestrator.validate_system_health()
    return {
        "status": "healthy" if report.healthy else "degraded",
        "issues": report.issues,
    }
