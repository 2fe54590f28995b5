"""
Fulfillment Reconciler — finish what the request path couldn't confirm

Background worker for units left in needs_reconciliation (transfer
submission failed, or its confirmation timed out), and for units stuck in
pending_transfer longer than retry_after (the request died between
consuming the unit and recording the transfer outcome). Each pass:

  1. buyer already holds the token       → mark fulfilled
  2. recently touched (< retry_after)     → leave it, a transfer may be in flight
  3. seller's pool still holds the token  → re-submit the transfer
  4. token is in neither account          → leave it and warn (manual review)

Non-fatal: a failing unit is logged and retried next cycle.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from marketplace.config import MARKET_RULES
from marketplace.fulfillment import TokenFulfillmentExecutor
from marketplace.inventory import InventoryLedger, UnitRecord, utcnow

logger = logging.getLogger("market.reconciler")


@dataclass
class ReconcileStats:
    checked: int = 0
    fulfilled: int = 0
    retried: int = 0
    waiting: int = 0
    failed: int = 0


class FulfillmentReconciler:

    def __init__(
        self,
        inventory: InventoryLedger,
        executor: TokenFulfillmentExecutor,
        retry_after: float = MARKET_RULES.RECONCILE_RETRY_AFTER_SECONDS,
        batch_size: int = MARKET_RULES.RECONCILE_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._inventory = inventory
        self._executor = executor
        self._retry_after = timedelta(seconds=retry_after)
        self._batch_size = batch_size
        self._clock = clock

    async def _reconcile_unit(self, unit: UnitRecord, stats: ReconcileStats) -> None:
        listing = await self._inventory.get_listing(unit.listing_id)
        if listing is None or not unit.buyer_address:
            logger.warning(f"Unit {unit.id}: listing or buyer missing — skipping")
            stats.waiting += 1
            return

        if await self._executor.delivered(unit.mint_address, unit.buyer_address):
            await self._inventory.mark_fulfilled(unit.id, unit.transfer_ref)
            logger.info(f"RECONCILED: unit {unit.id} mint={unit.mint_address[:12]}... already delivered")
            stats.fulfilled += 1
            return

        if self._clock() - unit.updated_at < self._retry_after:
            stats.waiting += 1
            return

        if not await self._executor.seller_holds(unit.mint_address, listing.seller_wallet_address):
            logger.warning(
                f"Unit {unit.id}: mint {unit.mint_address[:12]}... held by neither seller nor buyer "
                f"— needs manual review"
            )
            stats.waiting += 1
            return

        receipt = await self._executor.transfer_one_unit(
            unit.mint_address, listing.seller_wallet_address, unit.buyer_address
        )
        stats.retried += 1
        if receipt.confirmed:
            await self._inventory.mark_fulfilled(unit.id, receipt.signature)
            stats.fulfilled += 1
            logger.info(f"RECONCILED: unit {unit.id} re-sent and confirmed ({receipt.signature[:16]}...)")
        else:
            await self._inventory.mark_needs_reconciliation(unit.id, receipt.signature, receipt.error)

    async def run_once(self) -> ReconcileStats:
        stats = ReconcileStats()
        units = await self._inventory.units_needing_reconciliation(
            self._batch_size, stale_before=self._clock() - self._retry_after
        )
        for unit in units:
            stats.checked += 1
            try:
                await self._reconcile_unit(unit, stats)
            except Exception as e:
                stats.failed += 1
                logger.warning(f"Reconcile failed for unit {unit.id}: {type(e).__name__}: {e}")
        if stats.checked:
            logger.info(
                f"Reconcile pass: checked={stats.checked} fulfilled={stats.fulfilled} "
                f"retried={stats.retried} waiting={stats.waiting} failed={stats.failed}"
            )
        return stats

    async def run_forever(self, interval: float = MARKET_RULES.RECONCILE_INTERVAL_SECONDS) -> None:
        logger.info(f"Reconciler started (interval: {interval}s)")
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.warning(f"Reconcile cycle error: {e}")
            await asyncio.sleep(interval)
