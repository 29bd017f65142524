"""
Carbon Claims Marketplace - HTTP Client Service

Main application entry point.

Run with:
    uvicorn carbonclaims.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.routes import router
from .config import MarketplaceConfig
from .core.actions import MarketplaceActions
from .core.ledger_client import LedgerClient
from .core.memory_ledger import InMemoryLedgerClient
from .core.sync import ClaimSyncCoordinator
from .core.tally import VoteTallyEngine
from .core.wallet import Wallet
from .core.wallet_service import get_wallet_service
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(
    client: Optional[LedgerClient] = None,
    config: Optional[MarketplaceConfig] = None,
    wallet: Optional[Wallet] = None,
) -> FastAPI:
    """
    Build the app.

    Without a client, an in-memory ledger is used (seeded when
    ENABLE_AUTO_SEED=1). Without a wallet, the session wallet comes from
    WalletService.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_config = config or MarketplaceConfig.from_env()
        ledger = client
        if ledger is None:
            ledger = InMemoryLedgerClient(app_config)
            if app_config.auto_seed:
                ledger.seed_demo_data()
        session_wallet = wallet or get_wallet_service().wallet

        coordinator = ClaimSyncCoordinator(ledger, session_wallet, app_config)
        app.state.config = app_config
        app.state.client = ledger
        app.state.wallet = session_wallet
        app.state.coordinator = coordinator
        app.state.engine = VoteTallyEngine(ledger, session_wallet, coordinator, app_config)
        app.state.actions = MarketplaceActions(ledger, session_wallet, app_config)

        # Initial load, like a view mounting
        await coordinator.refresh_passive()
        coordinator.start()

        logger.info(
            "Application startup complete",
            client_type=type(ledger).__name__,
            wallet_address=session_wallet.address,
            claim_count=len(coordinator.state.entries),
            polling=coordinator.is_polling,
        )

        yield

        await coordinator.close()
        await ledger.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Carbon Claims Marketplace",
        description="""
## Carbon Claims Marketplace Client

Organisations file claims for carbon credits; the community votes on
them within a voting window; the ledger settles each claim as approved
or rejected.

### API Design

**Commands** (POST only):
- Every command is a signed move call on the carbon_marketplace package
- No PATCH, no PUT, no DELETE

**Queries**:
- The claim list is the last published sync state, never a partial merge
- Vote eligibility is computed per viewer (X-Actor-Address)

### Ledger Backends

- **InMemoryLedgerClient**: Development/testing (default)
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    # CORS for the browser front-end dev servers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "carbonclaims"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check including claim sync state.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(coordinator=request.app.state.coordinator)
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
