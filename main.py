"""
Song Token Marketplace - main entry point

Reads configuration, builds the core components, wires them into the
FastAPI app and starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the marketplace API
    uvicorn main:app            # Or via any ASGI runner
"""

import os
import logging
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from api.server import create_app
from marketplace import log_masking
from marketplace.adapters.song_catalog import HttpSongCatalog
from marketplace.config import Settings, load_delegate_credential
from marketplace.errors import ConfigurationError
from marketplace.fulfillment import TokenFulfillmentExecutor
from marketplace.inventory import InventoryLedger, build_tables, create_engine
from marketplace.ledger import SolanaLedgerClient
from marketplace.listings import ListingService
from marketplace.payment_verifier import PaymentVerifier
from marketplace.purchasing import PurchaseOrchestrator
from marketplace.reconciler import FulfillmentReconciler

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_mask_filter = log_masking.install()

logger = logging.getLogger("market.main")


# ============================================================
# WIRING
# ============================================================

def _ensure_sqlite_dir(database_url: str) -> None:
    """Local SQLite files live under data/; create the directory up front."""
    if not database_url.startswith("sqlite"):
        return
    _, _, path = database_url.partition(":///")
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def create_marketplace_app(settings: Settings) -> FastAPI:
    """Create the fully wired FastAPI app."""
    for secret in (settings.delegate_secret, settings.auth_secret, settings.song_catalog_api_key):
        _mask_filter.add_secret(secret)
    _ensure_sqlite_dir(settings.database_url)

    engine = create_engine(settings.database_url)
    inventory = InventoryLedger(engine, build_tables(settings.schema))

    ledger = SolanaLedgerClient(settings.rpc_url)
    verifier = PaymentVerifier(ledger)

    executor = None
    misconfiguration = ""
    try:
        credential = load_delegate_credential(settings.delegate_secret)
        _mask_filter.add_secret(str(credential.keypair))
        executor = TokenFulfillmentExecutor(ledger, credential, allows_airdrop=settings.allows_airdrop)
        logger.info(f"Marketplace delegate: {credential.public_key}")
    except ConfigurationError as e:
        # Browsing and listing still work; purchases answer "server misconfigured"
        misconfiguration = str(e)
        logger.error(f"Delegate credential unusable — purchases disabled: {e}")

    orchestrator = PurchaseOrchestrator(inventory, verifier, executor, misconfiguration=misconfiguration)
    reconciler = FulfillmentReconciler(inventory, executor) if executor else None

    if not settings.song_catalog_url:
        logger.warning("SONG_CATALOG_URL not set — listing creation will fail song validation")
    song_catalog = HttpSongCatalog(settings.song_catalog_url, settings.song_catalog_api_key)
    listing_service = ListingService(inventory, song_catalog)

    if not settings.auth_secret:
        logger.warning("MARKETPLACE_AUTH_SECRET not set — seller endpoints will reject every token")

    app = create_app(
        listing_service,
        orchestrator,
        auth_secret=settings.auth_secret,
        cors_origins=settings.cors_origins,
        inventory=inventory,
        reconciler=reconciler,
        cluster=settings.cluster,
    )

    @app.on_event("shutdown")
    async def _close_clients():
        await song_catalog.close()
        await ledger.close()
        await engine.dispose()

    logger.info(
        f"Marketplace ready: cluster={settings.cluster} "
        f"schema=v{settings.schema_version} airdrop={settings.allows_airdrop}"
    )
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_marketplace_app(Settings.from_env())

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
