"""
Listing Service — sellers put songs up for sale

A listing is a fixed supply of pre-minted tokens for one song. The seller
hands over the full inventory at creation time (one mint address per unit)
and approves the marketplace delegate to move them; from then on the
inventory ledger owns the supply counters.

Design:
- Only the owner of a song can list it (checked against the song catalog)
- Listing + every unit row are written in ONE transaction
- Inventory size must match supply exactly, mints are unique
- Browsing degrades to an empty page when the table is missing or the
  datastore denies the read, so a fresh deployment doesn't break the UI
- A sold-out listing cannot be switched back on
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError, IntegrityError

from marketplace.adapters.song_catalog import SongCatalog
from marketplace.config import MARKET_RULES
from marketplace.errors import (
    CatalogError,
    ListingForbidden,
    ListingNotFound,
    ListingSoldOut,
    ListingValidationError,
)
from marketplace.inventory import InventoryLedger, ListingRecord, UnitStatus, listing_from_row, utcnow
from marketplace.payment_verifier import to_smallest_unit
from marketplace.purchasing import normalize_address

logger = logging.getLogger("market.listings")

# Error fragments meaning "table not there yet" / "not allowed to read it"
_MISSING_TABLE_MARKERS = ("42p01", "no such table", "does not exist")
_DENIED_MARKERS = ("42501", "permission denied", "row level security", "row-level security")


# ============================================================
# DATA TYPES
# ============================================================

@dataclass
class ListingDraft:
    song_id: str
    title: str
    artist: str
    price_sol: Decimal
    supply: int
    seller_wallet_address: str
    inventory_mints: list[str] = field(default_factory=list)
    metadata_uri: Optional[str] = None
    collection_mint_address: Optional[str] = None


@dataclass
class ListingView:
    """Public shape of a listing (what the browse page renders)."""
    id: str
    song_id: str
    title: str
    artist: str
    metadata_uri: Optional[str]
    price_sol: Decimal
    supply: int
    sold_count: int
    available: int
    seller_wallet_address: str
    seller_user_id: str
    active: bool
    created_at: datetime
    updated_at: datetime
    collection_mint_address: Optional[str] = None

    @classmethod
    def from_record(cls, record: ListingRecord) -> "ListingView":
        return cls(
            id=record.id,
            song_id=record.song_id,
            title=record.title,
            artist=record.artist,
            metadata_uri=record.metadata_uri,
            price_sol=record.price_sol,
            supply=record.supply,
            sold_count=record.sold_count,
            available=record.available,
            seller_wallet_address=record.seller_wallet_address,
            seller_user_id=record.seller_user_id,
            active=record.active,
            created_at=record.created_at,
            updated_at=record.updated_at,
            collection_mint_address=record.collection_mint_address,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "songId": self.song_id,
            "title": self.title,
            "artist": self.artist,
            "metadataUri": self.metadata_uri,
            "priceSol": float(self.price_sol),
            "supply": self.supply,
            "soldCount": self.sold_count,
            "available": self.available,
            "collectionMintAddress": self.collection_mint_address,
            "sellerWalletAddress": self.seller_wallet_address,
            "sellerUserId": self.seller_user_id,
            "active": self.active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ActiveListings:
    listings: list[ListingView]
    warning: str = ""


# ============================================================
# VALIDATION
# ============================================================

def _validate(draft: ListingDraft) -> tuple[Decimal, str, list[str]]:
    """Return (price, seller address, inventory mints) in canonical form."""
    if not draft.song_id or not draft.title or not draft.artist or not draft.seller_wallet_address:
        raise ListingValidationError("Missing required fields")

    try:
        price = Decimal(str(draft.price_sol))
    except (InvalidOperation, ValueError):
        raise ListingValidationError("Invalid price")
    if not price.is_finite() or price <= 0:
        raise ListingValidationError("Invalid price")
    # Stored with 9 decimals and charged in lamports: anything finer can't be paid exactly
    lamports = price * MARKET_RULES.LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value() or to_smallest_unit(price) < 1:
        raise ListingValidationError("Invalid price")

    if isinstance(draft.supply, bool) or not isinstance(draft.supply, int) or draft.supply < 1:
        raise ListingValidationError("Invalid supply")

    seller = normalize_address(draft.seller_wallet_address)
    if seller is None:
        raise ListingValidationError("Invalid sellerWalletAddress")

    if len(draft.inventory_mints) != draft.supply:
        raise ListingValidationError(
            f"Inventory size {len(draft.inventory_mints)} does not match supply {draft.supply}"
        )

    mints = []
    for raw in draft.inventory_mints:
        mint = normalize_address(raw) if isinstance(raw, str) else None
        if mint is None:
            raise ListingValidationError(f"Invalid inventory mint address: {raw}")
        mints.append(mint)
    if len(set(mints)) != len(mints):
        raise ListingValidationError("Inventory mint addresses must be unique")

    return price, seller, mints


def _degrade_reason(error: DBAPIError) -> Optional[str]:
    text = f"{getattr(error.orig, 'sqlstate', '')} {error.orig}".lower()
    if any(marker in text for marker in _MISSING_TABLE_MARKERS):
        return "marketplace_listings table not found"
    if any(marker in text for marker in _DENIED_MARKERS):
        return "datastore denies SELECT on marketplace_listings"
    return None


# ============================================================
# SERVICE
# ============================================================

class ListingService:
    """
    Usage:
        service = ListingService(inventory, HttpSongCatalog(url, key))
        listing_id = await service.create_listing(user_id, draft)
        page = await service.list_active()
    """

    def __init__(self, inventory: InventoryLedger, song_catalog: SongCatalog):
        self._inventory = inventory
        self._catalog = song_catalog

    async def create_listing(self, user_id: str, draft: ListingDraft) -> str:
        price, seller, mints = _validate(draft)

        try:
            owner = await self._catalog.get_owner(draft.song_id)
        except CatalogError as e:
            logger.warning(f"Song lookup failed for {draft.song_id}: {e}")
            raise ListingValidationError("Song validation failed") from e
        if owner is None:
            raise ListingValidationError("Song validation failed")
        if owner != user_id:
            logger.warning(f"LISTING REFUSED: user {user_id} tried to list song {draft.song_id} owned by {owner}")
            raise ListingForbidden("You can only list your own song")

        tables = self._inventory.tables
        listing_id = str(uuid.uuid4())
        now = utcnow()

        values = {
            "id": listing_id,
            "song_id": draft.song_id,
            "title": draft.title,
            "artist": draft.artist,
            "price_sol": price,
            "supply": draft.supply,
            "sold_count": 0,
            "seller_wallet_address": seller,
            "seller_user_id": user_id,
            "metadata_uri": draft.metadata_uri or None,
            "active": True,
            "created_at": now,
            "updated_at": now,
        }
        if draft.collection_mint_address:
            if tables.has_collection_mint:
                values["collection_mint_address"] = draft.collection_mint_address
            else:
                logger.debug(
                    f"Schema v{tables.capabilities.version} has no collection column — "
                    f"ignoring collection mint for listing {listing_id}"
                )

        unit_rows = [
            {
                "listing_id": listing_id,
                "position": position,
                "mint_address": mint,
                "status": UnitStatus.AVAILABLE.value,
                "updated_at": now,
            }
            for position, mint in enumerate(mints)
        ]

        try:
            async with self._inventory.engine.begin() as conn:
                await conn.execute(sa.insert(tables.listings).values(**values))
                await conn.execute(sa.insert(tables.units), unit_rows)
        except IntegrityError as e:
            if "mint_address" not in str(e.orig).lower():
                raise
            logger.warning(f"LISTING REFUSED: inventory for song {draft.song_id} reuses a listed mint")
            raise ListingValidationError("Inventory mint already listed") from e

        logger.info(
            f"LISTING CREATED: {listing_id} song={draft.song_id} supply={draft.supply} "
            f"price={price} SOL seller={seller[:12]}..."
        )
        return listing_id

    async def list_active(self, limit: int = MARKET_RULES.LISTINGS_PAGE_LIMIT) -> ActiveListings:
        listings = self._inventory.tables.listings
        query = (
            sa.select(listings)
            .where(listings.c.active.is_(True))
            .order_by(listings.c.created_at.desc())
            .limit(limit)
        )
        try:
            async with self._inventory.engine.connect() as conn:
                rows = (await conn.execute(query)).all()
        except DBAPIError as e:
            reason = _degrade_reason(e)
            if reason is None:
                raise
            logger.warning(f"Listings read degraded: {reason} ({type(e.orig).__name__})")
            return ActiveListings(listings=[], warning=reason)

        return ActiveListings(listings=[ListingView.from_record(listing_from_row(r)) for r in rows])

    async def set_active(self, listing_id: str, user_id: str, active: bool) -> ListingView:
        listings = self._inventory.tables.listings

        async with self._inventory.engine.begin() as conn:
            row = (await conn.execute(
                sa.select(listings).where(listings.c.id == listing_id)
            )).first()
            if row is None:
                raise ListingNotFound(listing_id)

            record = listing_from_row(row)
            if record.seller_user_id != user_id:
                raise ListingForbidden("Forbidden")

            if active and record.sold_out:
                raise ListingSoldOut(f"listing {listing_id} is sold out and cannot be re-activated")

            # Guard on sold_count so a purchase landing in between can't be undone
            updated = (await conn.execute(
                sa.update(listings)
                .where(listings.c.id == listing_id)
                .where(listings.c.sold_count < listings.c.supply if active else sa.true())
                .values(active=active, updated_at=utcnow())
                .returning(*listings.c)
            )).first()
            if updated is None:
                raise ListingSoldOut(f"listing {listing_id} is sold out and cannot be re-activated")

        logger.info(f"LISTING {'ACTIVATED' if active else 'DEACTIVATED'}: {listing_id} by {user_id}")
        return ListingView.from_record(listing_from_row(updated))
