# paygate/main.py
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paygate.api.endpoints import proxy, services, transactions
from paygate.core.config import Settings, get_settings
from paygate.core.version import VERSION
from paygate.services.catalog import ResourceCatalog
from paygate.services.chain import ChainGateway
from paygate.services.origin import OriginForwarder
from paygate.services.registry import AgentFundingReader, ServiceRegistryReader
from paygate.x402.audit import AuditLog
from paygate.x402.gate import PaymentGate
from paygate.x402.ledger import InMemoryLedgerStore, JsonlLedgerStore, LedgerStore, TransactionLedger
from paygate.x402.middleware import X402Middleware
from paygate.x402.settlement import SettlementExecutor
from paygate.x402.verifier import PaymentVerifier

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[ChainGateway] = None,
    registry: Optional[ServiceRegistryReader] = None,
    forwarder: Optional[OriginForwarder] = None,
    ledger_store: Optional[LedgerStore] = None,
    catalog: Optional[ResourceCatalog] = None,
    funding: Optional[AgentFundingReader] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Settings are read once here and handed to every component. Any
    collaborator can be passed in; missing ones are built from settings.
    """
    settings = settings or get_settings()

    if ledger_store is None:
        ledger_store = JsonlLedgerStore(settings.LEDGER_PATH) if settings.LEDGER_PATH else InMemoryLedgerStore()
    gateway = gateway or ChainGateway.from_settings(settings)
    registry = registry or ServiceRegistryReader.from_settings(settings)
    public_url = settings.PUBLIC_URL or "http://localhost:4402"

    audit = AuditLog(settings.X402_AUDIT_LOG_PATH)
    ledger = TransactionLedger(ledger_store)
    funding = funding or AgentFundingReader.from_settings(settings)
    catalog = catalog or ResourceCatalog(registry, public_url, settings.REGISTRY_SYNC_CONCURRENCY, funding)
    verifier = PaymentVerifier(ledger, clock_skew_seconds=settings.X402_CLOCK_SKEW_SECONDS)
    executor = SettlementExecutor(
        ledger,
        gateway,
        network=settings.X402_NETWORK,
        confirmation_timeout=settings.SETTLEMENT_CONFIRMATION_TIMEOUT,
        audit=audit,
    )

    app = FastAPI(title=settings.PROJECT_NAME, version=VERSION)
    app.state.settings = settings
    app.state.audit = audit
    app.state.ledger = ledger
    app.state.catalog = catalog
    app.state.forwarder = forwarder or OriginForwarder(timeout=settings.ORIGIN_TIMEOUT_SECONDS)
    app.state.gate = PaymentGate(settings, catalog, ledger, verifier, executor, gateway, audit)

    app.add_middleware(X402Middleware)
    # Added last so it wraps the payment gate and 402 responses carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-RESPONSE", "X-PAYMENT-ID", "PAYMENT-REQUIRED"],
    )

    app.include_router(services.router, tags=["services"])
    app.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
    app.include_router(proxy.router, prefix="/proxy", tags=["proxy"])

    @app.get("/", summary="Health Check", tags=["default"])
    @app.get("/health", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        return {
            "status": "ok",
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "version": VERSION,
            "network": settings.X402_NETWORK,
            "resources": len(catalog.list()),
        }

    logger.info(f"{settings.PROJECT_NAME} {VERSION} ready on {settings.X402_NETWORK}")
    return app


app = create_app()
