"""Shared pytest fixtures for marketplace tests."""

from decimal import Decimal

import pytest
from solders.keypair import Keypair

from marketplace.config import DelegateCredential, SchemaCapabilities
from marketplace.fulfillment import TokenFulfillmentExecutor
from marketplace.inventory import InventoryLedger, build_tables, create_engine
from marketplace.listings import ListingDraft, ListingService
from marketplace.payment_verifier import PaymentVerifier
from marketplace.purchasing import PurchaseOrchestrator
from tests.fakes import SELLER_USER, FakeLedger, FakeSongCatalog, new_address, no_sleep


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def credential():
    return DelegateCredential(keypair=Keypair())


@pytest.fixture
def song_catalog():
    return FakeSongCatalog({"song-1": SELLER_USER, "song-2": SELLER_USER, "song-other": "user-else"})


@pytest.fixture
async def inventory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'market.db'}")
    ledger = InventoryLedger(engine, build_tables(SchemaCapabilities.for_version(2)))
    await ledger.create_schema()
    yield ledger
    await engine.dispose()


@pytest.fixture
def listing_service(inventory, song_catalog):
    return ListingService(inventory, song_catalog)


@pytest.fixture
def verifier(fake_ledger):
    return PaymentVerifier(fake_ledger, attempts=3, delay=0.0, sleep=no_sleep)


@pytest.fixture
def executor(fake_ledger, credential):
    return TokenFulfillmentExecutor(fake_ledger, credential, sleep=no_sleep)


@pytest.fixture
def orchestrator(inventory, verifier, executor):
    return PurchaseOrchestrator(inventory, verifier, executor)


@pytest.fixture
def seller_address():
    return new_address()


@pytest.fixture
def make_listing(listing_service, seller_address):
    """Create a listing and return (listing_id, inventory mints)."""

    async def _make(supply: int = 1, price: str = "0.5", song_id: str = "song-1"):
        mints = [new_address() for _ in range(supply)]
        listing_id = await listing_service.create_listing(
            SELLER_USER,
            ListingDraft(
                song_id=song_id,
                title="Night Drive",
                artist="The Lamports",
                price_sol=Decimal(price),
                supply=supply,
                seller_wallet_address=seller_address,
                inventory_mints=mints,
                metadata_uri="ipfs://meta",
            ),
        )
        return listing_id, mints

    return _make
