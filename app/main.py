# app/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from app.core.config import settings
from app.api.endpoints import balance, deposit, referral, x402
from app.db.session import create_db_engine, create_session_factory, init_db
from app.x402.gate import build_payment_gate
from app.x402.middleware import X402Middleware
from app.x402.verifier import FacilitatorVerifier
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the ledger store and wire the payment gate for the lifetime of the process."""
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    app.state.payment_gate = build_payment_gate(
        session_factory,
        verifier=FacilitatorVerifier.from_settings(),
    )
    logger.info(
        f"x402 gate ready (enabled: {settings.X402_ENABLED}, mode: {settings.X402_MODE}, "
        f"network: {settings.x402_network})"
    )
    try:
        yield
    finally:
        engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(X402Middleware)

# Include the API router(s)
# The prefix ensures all routes start with /api
app.include_router(deposit.router, prefix=f"{settings.API_PREFIX}/deposit", tags=["deposit"])
app.include_router(balance.router, prefix=f"{settings.API_PREFIX}/balance", tags=["balance"])
app.include_router(referral.router, prefix=f"{settings.API_PREFIX}/referral", tags=["referral"])
app.include_router(x402.router, prefix=f"{settings.API_PREFIX}/x402", tags=["x402"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}
