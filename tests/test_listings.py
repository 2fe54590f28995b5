"""Tests for listing creation, browsing and activation."""

from decimal import Decimal

import pytest
import sqlalchemy as sa

from marketplace.config import SchemaCapabilities
from marketplace.errors import (
    ListingForbidden,
    ListingNotFound,
    ListingSoldOut,
    ListingValidationError,
)
from marketplace.inventory import InventoryLedger, build_tables, create_engine
from marketplace.listings import ListingDraft, ListingService
from tests.fakes import SELLER_USER, FakeSongCatalog, new_address


def draft(**overrides) -> ListingDraft:
    supply = overrides.pop("supply", 2)
    values = dict(
        song_id="song-1",
        title="Night Drive",
        artist="The Lamports",
        price_sol=Decimal("0.25"),
        supply=supply,
        seller_wallet_address=new_address(),
        inventory_mints=[new_address() for _ in range(supply)],
    )
    values.update(overrides)
    return ListingDraft(**values)


async def count_rows(inventory, table) -> int:
    async with inventory.engine.connect() as conn:
        return (await conn.execute(sa.select(sa.func.count()).select_from(table))).scalar_one()


class TestCreateListing:

    async def test_creates_listing_and_units(self, listing_service, inventory):
        d = draft(supply=3, collection_mint_address=new_address())

        listing_id = await listing_service.create_listing(SELLER_USER, d)

        listing = await inventory.get_listing(listing_id)
        assert listing.supply == 3
        assert listing.sold_count == 0
        assert listing.active is True
        assert listing.price_sol == Decimal("0.25")
        assert listing.seller_user_id == SELLER_USER
        assert listing.collection_mint_address == d.collection_mint_address
        units = await inventory.list_units(listing_id)
        assert [u.mint_address for u in units] == d.inventory_mints
        assert [u.position for u in units] == [0, 1, 2]

    async def test_other_users_song_is_forbidden_and_nothing_written(self, listing_service, inventory):
        with pytest.raises(ListingForbidden):
            await listing_service.create_listing(SELLER_USER, draft(song_id="song-other"))

        assert await count_rows(inventory, inventory.tables.listings) == 0
        assert await count_rows(inventory, inventory.tables.units) == 0

    async def test_unknown_song_fails_validation(self, listing_service, inventory):
        with pytest.raises(ListingValidationError, match="Song validation failed"):
            await listing_service.create_listing(SELLER_USER, draft(song_id="song-missing"))
        assert await count_rows(inventory, inventory.tables.listings) == 0

    async def test_catalog_outage_fails_validation(self, inventory):
        service = ListingService(inventory, FakeSongCatalog(error=True))
        with pytest.raises(ListingValidationError):
            await service.create_listing(SELLER_USER, draft())

    @pytest.mark.parametrize(
        "overrides",
        [
            {"title": ""},
            {"price_sol": Decimal("0")},
            {"price_sol": Decimal("-1")},
            {"price_sol": Decimal("0.0000000001")},
            {"price_sol": Decimal("0.0000000015")},
            {"supply": 0, "inventory_mints": []},
            {"seller_wallet_address": "not-an-address"},
            {"inventory_mints": ["bad-mint", "also-bad"]},
        ],
    )
    async def test_rejects_invalid_input(self, listing_service, overrides):
        with pytest.raises(ListingValidationError):
            await listing_service.create_listing(SELLER_USER, draft(**overrides))

    async def test_inventory_must_match_supply(self, listing_service):
        with pytest.raises(ListingValidationError, match="does not match supply"):
            await listing_service.create_listing(
                SELLER_USER, draft(supply=3, inventory_mints=[new_address(), new_address()])
            )

    async def test_inventory_mints_must_be_unique(self, listing_service):
        mint = new_address()
        with pytest.raises(ListingValidationError, match="unique"):
            await listing_service.create_listing(SELLER_USER, draft(supply=2, inventory_mints=[mint, mint]))

    async def test_smallest_payable_price_is_accepted(self, listing_service, inventory):
        listing_id = await listing_service.create_listing(
            SELLER_USER, draft(price_sol=Decimal("0.000000001"))
        )
        assert (await inventory.get_listing(listing_id)).price_sol == Decimal("0.000000001")

    async def test_mint_already_listed_elsewhere_is_rejected(self, listing_service, inventory):
        mint = new_address()
        await listing_service.create_listing(SELLER_USER, draft(supply=1, inventory_mints=[mint]))

        with pytest.raises(ListingValidationError, match="Inventory mint already listed"):
            await listing_service.create_listing(
                SELLER_USER, draft(song_id="song-2", supply=2, inventory_mints=[new_address(), mint])
            )

        assert await count_rows(inventory, inventory.tables.listings) == 1
        assert await count_rows(inventory, inventory.tables.units) == 1

    async def test_collection_mint_ignored_on_v1_schema(self, tmp_path, song_catalog):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'v1.db'}")
        inventory = InventoryLedger(engine, build_tables(SchemaCapabilities.for_version(1)))
        await inventory.create_schema()
        service = ListingService(inventory, song_catalog)

        listing_id = await service.create_listing(SELLER_USER, draft(collection_mint_address=new_address()))

        listing = await inventory.get_listing(listing_id)
        assert listing.collection_mint_address is None
        await engine.dispose()


class TestListActive:

    async def test_newest_first_with_availability(self, listing_service, inventory, make_listing):
        older, _ = await make_listing(supply=2)
        newer, _ = await make_listing(supply=4, song_id="song-2")
        await inventory.consume_one_unit(newer, new_address(), "pay-1")

        page = await listing_service.list_active()

        assert [v.id for v in page.listings] == [newer, older]
        assert page.listings[0].sold_count == 1
        assert page.listings[0].available == 3
        assert page.warning == ""

    async def test_inactive_listings_are_hidden(self, listing_service, make_listing):
        listing_id, _ = await make_listing()
        await listing_service.set_active(listing_id, SELLER_USER, False)

        page = await listing_service.list_active()
        assert page.listings == []

    async def test_respects_limit(self, listing_service, make_listing):
        for _ in range(3):
            await make_listing()
        page = await listing_service.list_active(limit=2)
        assert len(page.listings) == 2

    async def test_missing_table_degrades_to_empty(self, tmp_path, song_catalog):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        inventory = InventoryLedger(engine, build_tables(SchemaCapabilities.for_version(2)))
        service = ListingService(inventory, song_catalog)

        page = await service.list_active()

        assert page.listings == []
        assert "not found" in page.warning
        await engine.dispose()

    async def test_view_serialization(self, listing_service, make_listing):
        listing_id, _ = await make_listing(supply=2, price="0.5")

        data = (await listing_service.list_active()).listings[0].to_dict()

        assert data["id"] == listing_id
        assert data["priceSol"] == 0.5
        assert data["soldCount"] == 0
        assert data["available"] == 2
        assert data["sellerUserId"] == SELLER_USER


class TestSetActive:

    async def test_seller_can_toggle(self, listing_service, make_listing):
        listing_id, _ = await make_listing(supply=2)

        off = await listing_service.set_active(listing_id, SELLER_USER, False)
        on = await listing_service.set_active(listing_id, SELLER_USER, True)

        assert off.active is False
        assert on.active is True

    async def test_other_user_is_forbidden(self, listing_service, make_listing):
        listing_id, _ = await make_listing()
        with pytest.raises(ListingForbidden):
            await listing_service.set_active(listing_id, "someone-else", False)

    async def test_unknown_listing(self, listing_service):
        with pytest.raises(ListingNotFound):
            await listing_service.set_active("nope", SELLER_USER, True)

    async def test_sold_out_cannot_be_reactivated(self, listing_service, inventory, make_listing):
        listing_id, _ = await make_listing(supply=1)
        await inventory.consume_one_unit(listing_id, new_address(), "pay-1")

        with pytest.raises(ListingSoldOut):
            await listing_service.set_active(listing_id, SELLER_USER, True)

        listing = await inventory.get_listing(listing_id)
        assert listing.active is False
