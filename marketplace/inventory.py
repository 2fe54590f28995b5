"""
Inventory Ledger — authoritative supply state

Relational record of every listing's supply and of each pre-minted unit.
The one operation that matters under concurrency is consume_one_unit():
it runs as a single datastore transaction whose first statement is a
conditional UPDATE on the listing row, so concurrent buyers serialize on
that row and at most `supply` consumptions can ever succeed.

Design:
- SQLAlchemy Core on an AsyncEngine (aiosqlite locally, asyncpg in prod)
- One row per unit in listing_units; `position` is load order, so the unit
  handed out is always position == sold_count - 1 (first-in-first-assigned)
- payment_ref is UNIQUE: one ledger payment can never consume two units
- Consumption is not terminal. Units move
      available → pending_transfer → fulfilled | needs_reconciliation
  and the reconciler drives needs_reconciliation → fulfilled
- Table shape follows the SchemaCapabilities descriptor picked at startup
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from marketplace.config import SchemaCapabilities
from marketplace.errors import (
    InventoryError,
    ListingNotFound,
    OutOfStock,
    PaymentAlreadyUsed,
)

logger = logging.getLogger("market.inventory")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UnitStatus(str, Enum):
    AVAILABLE = "available"
    PENDING_TRANSFER = "pending_transfer"
    FULFILLED = "fulfilled"
    NEEDS_RECONCILIATION = "needs_reconciliation"


# ============================================================
# SCHEMA
# ============================================================

@dataclass(frozen=True)
class MarketTables:
    capabilities: SchemaCapabilities
    metadata: sa.MetaData
    listings: sa.Table
    units: sa.Table

    @property
    def has_collection_mint(self) -> bool:
        return "collection_mint_address" in self.listings.c


def build_tables(capabilities: SchemaCapabilities) -> MarketTables:
    metadata = sa.MetaData()

    listing_columns = [
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("song_id", sa.String(64), nullable=False, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("artist", sa.String(200), nullable=False),
        sa.Column("price_sol", sa.Numeric(20, 9, asdecimal=True), nullable=False),
        sa.Column("supply", sa.Integer, nullable=False),
        sa.Column("sold_count", sa.Integer, nullable=False, default=0),
        sa.Column("seller_wallet_address", sa.String(64), nullable=False),
        sa.Column("seller_user_id", sa.String(64), nullable=False, index=True),
        sa.Column("metadata_uri", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, default=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]
    if capabilities.collection_mint:
        listing_columns.append(sa.Column("collection_mint_address", sa.String(64), nullable=True))

    listings = sa.Table(
        "marketplace_listings",
        metadata,
        *listing_columns,
        sa.CheckConstraint("supply >= 1", name="ck_listing_supply_positive"),
        sa.CheckConstraint("sold_count >= 0 AND sold_count <= supply", name="ck_listing_sold_within_supply"),
    )

    units = sa.Table(
        "listing_units",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.String(36), sa.ForeignKey("marketplace_listings.id"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("mint_address", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(32), nullable=False, default=UnitStatus.AVAILABLE.value),
        sa.Column("buyer_address", sa.String(64), nullable=True),
        sa.Column("payment_ref", sa.String(128), nullable=True, unique=True),
        sa.Column("transfer_ref", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("listing_id", "position", name="uq_unit_listing_position"),
        sa.Index("ix_units_status", "status"),
    )

    return MarketTables(capabilities=capabilities, metadata=metadata, listings=listings, units=units)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)


# ============================================================
# RECORDS
# ============================================================

@dataclass
class ListingRecord:
    id: str
    song_id: str
    title: str
    artist: str
    price_sol: Decimal
    supply: int
    sold_count: int
    seller_wallet_address: str
    seller_user_id: str
    metadata_uri: Optional[str]
    active: bool
    created_at: datetime
    updated_at: datetime
    collection_mint_address: Optional[str] = None

    @property
    def available(self) -> int:
        return max(0, self.supply - self.sold_count)

    @property
    def sold_out(self) -> bool:
        return self.sold_count >= self.supply


@dataclass
class UnitRecord:
    id: int
    listing_id: str
    position: int
    mint_address: str
    status: UnitStatus
    buyer_address: Optional[str]
    payment_ref: Optional[str]
    transfer_ref: Optional[str]
    last_error: Optional[str]
    consumed_at: Optional[datetime]
    updated_at: datetime


@dataclass
class ConsumedUnit:
    """Result of a successful consume_one_unit()."""
    unit_id: int
    listing_id: str
    mint_address: str
    buyer_address: str
    payment_ref: str
    sold_count: int
    still_active: bool


def listing_from_row(row) -> ListingRecord:
    m = row._mapping
    return ListingRecord(
        id=m["id"],
        song_id=m["song_id"],
        title=m["title"],
        artist=m["artist"],
        price_sol=Decimal(str(m["price_sol"])),
        supply=m["supply"],
        sold_count=m["sold_count"],
        seller_wallet_address=m["seller_wallet_address"],
        seller_user_id=m["seller_user_id"],
        metadata_uri=m["metadata_uri"],
        active=bool(m["active"]),
        created_at=as_utc(m["created_at"]),
        updated_at=as_utc(m["updated_at"]),
        collection_mint_address=m.get("collection_mint_address"),
    )


def _unit_from_row(row) -> UnitRecord:
    m = row._mapping
    return UnitRecord(
        id=m["id"],
        listing_id=m["listing_id"],
        position=m["position"],
        mint_address=m["mint_address"],
        status=UnitStatus(m["status"]),
        buyer_address=m["buyer_address"],
        payment_ref=m["payment_ref"],
        transfer_ref=m["transfer_ref"],
        last_error=m["last_error"],
        consumed_at=as_utc(m["consumed_at"]),
        updated_at=as_utc(m["updated_at"]),
    )


# ============================================================
# INVENTORY LEDGER
# ============================================================

class InventoryLedger:
    """
    Usage:
        ledger = InventoryLedger(engine, build_tables(SchemaCapabilities.for_version(2)))
        await ledger.create_schema()
        unit = await ledger.consume_one_unit(listing_id, buyer, signature)
    """

    def __init__(self, engine: AsyncEngine, tables: MarketTables):
        self.engine = engine
        self.tables = tables

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(self.tables.metadata.create_all)
        logger.info(f"Schema ready (capabilities v{self.tables.capabilities.version})")

    # ----------------------------------------------------------
    # READS
    # ----------------------------------------------------------

    async def get_listing(self, listing_id: str) -> Optional[ListingRecord]:
        listings = self.tables.listings
        async with self.engine.connect() as conn:
            row = (await conn.execute(
                sa.select(listings).where(listings.c.id == listing_id)
            )).first()
        return listing_from_row(row) if row else None

    async def find_by_payment_ref(self, payment_ref: str) -> Optional[UnitRecord]:
        units = self.tables.units
        async with self.engine.connect() as conn:
            row = (await conn.execute(
                sa.select(units).where(units.c.payment_ref == payment_ref)
            )).first()
        return _unit_from_row(row) if row else None

    async def list_units(self, listing_id: str) -> list[UnitRecord]:
        units = self.tables.units
        async with self.engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(units).where(units.c.listing_id == listing_id).order_by(units.c.position)
            )).all()
        return [_unit_from_row(r) for r in rows]

    async def units_needing_reconciliation(
        self, limit: int = 50, stale_before: Optional[datetime] = None
    ) -> list[UnitRecord]:
        """
        Units parked for the reconciler, oldest first. With `stale_before`, also
        units stuck in pending_transfer since before that time (the request that
        consumed them never recorded an outcome).
        """
        units = self.tables.units
        condition = units.c.status == UnitStatus.NEEDS_RECONCILIATION.value
        if stale_before is not None:
            condition = sa.or_(
                condition,
                sa.and_(
                    units.c.status == UnitStatus.PENDING_TRANSFER.value,
                    units.c.updated_at < stale_before,
                ),
            )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(units)
                .where(condition)
                .order_by(units.c.updated_at)
                .limit(limit)
            )).all()
        return [_unit_from_row(r) for r in rows]

    # ----------------------------------------------------------
    # ATOMIC CONSUME
    # ----------------------------------------------------------

    async def consume_one_unit(self, listing_id: str, buyer_address: str, payment_ref: str) -> ConsumedUnit:
        """
        Hand the next unit of a listing to a buyer, or raise.

        Raises:
            ListingNotFound     — no such listing
            OutOfStock          — inactive or nothing left
            PaymentAlreadyUsed  — payment_ref already bound to another unit
            InventoryError      — listing counters and unit rows disagree
        """
        listings = self.tables.listings
        units = self.tables.units
        now = utcnow()

        try:
            async with self.engine.begin() as conn:
                claimed = (await conn.execute(
                    sa.update(listings)
                    .where(
                        listings.c.id == listing_id,
                        listings.c.active.is_(True),
                        listings.c.sold_count < listings.c.supply,
                    )
                    .values(
                        sold_count=listings.c.sold_count + 1,
                        active=sa.case(
                            (listings.c.sold_count + 1 >= listings.c.supply, sa.false()),
                            else_=listings.c.active,
                        ),
                        updated_at=now,
                    )
                    .returning(listings.c.sold_count, listings.c.active)
                )).first()

                if claimed is None:
                    exists = (await conn.execute(
                        sa.select(listings.c.id).where(listings.c.id == listing_id)
                    )).first()
                    if exists is None:
                        raise ListingNotFound(listing_id)
                    raise OutOfStock(listing_id)

                sold_count, still_active = int(claimed[0]), bool(claimed[1])

                unit = (await conn.execute(
                    sa.update(units)
                    .where(
                        units.c.listing_id == listing_id,
                        units.c.position == sold_count - 1,
                        units.c.status == UnitStatus.AVAILABLE.value,
                    )
                    .values(
                        status=UnitStatus.PENDING_TRANSFER.value,
                        buyer_address=buyer_address,
                        payment_ref=payment_ref,
                        consumed_at=now,
                        updated_at=now,
                    )
                    .returning(units.c.id, units.c.mint_address)
                )).first()

                if unit is None:
                    raise InventoryError(
                        f"listing {listing_id}: no available unit at position {sold_count - 1}"
                    )
        except IntegrityError as e:
            if "payment_ref" in str(e.orig):
                raise PaymentAlreadyUsed(payment_ref) from e
            raise

        logger.info(
            f"UNIT CONSUMED: listing={listing_id} mint={unit[1][:12]}... "
            f"sold={sold_count} active={still_active}"
        )
        return ConsumedUnit(
            unit_id=int(unit[0]),
            listing_id=listing_id,
            mint_address=unit[1],
            buyer_address=buyer_address,
            payment_ref=payment_ref,
            sold_count=sold_count,
            still_active=still_active,
        )

    # ----------------------------------------------------------
    # FULFILLMENT STATUS
    # ----------------------------------------------------------

    async def _set_status(self, unit_id: int, status: UnitStatus, **values) -> None:
        units = self.tables.units
        async with self.engine.begin() as conn:
            await conn.execute(
                sa.update(units)
                .where(units.c.id == unit_id)
                .values(status=status.value, updated_at=utcnow(), **values)
            )

    async def mark_fulfilled(self, unit_id: int, transfer_ref: Optional[str]) -> None:
        await self._set_status(unit_id, UnitStatus.FULFILLED, transfer_ref=transfer_ref, last_error=None)

    async def mark_needs_reconciliation(self, unit_id: int, transfer_ref: Optional[str], reason: str) -> None:
        await self._set_status(
            unit_id,
            UnitStatus.NEEDS_RECONCILIATION,
            transfer_ref=transfer_ref,
            last_error=reason[:500],
        )
