"""
Purchase Orchestrator — one paid transaction, one unit

Sequences a buyer's purchase end to end:

    Received → Verifying → {Rejected, Pending, Verified}
             → Consuming → {OutOfStock, Consumed}
             → Fulfilling → {Fulfilled, FulfillmentUncertain}

Rules:
- Client input problems are answered immediately, never retried
- Pending is a "try again shortly with the same signature" answer, not a failure
- Inventory is consumed only after the payment is verified
- Once consumed, a unit is never rolled back. If the token transfer can't be
  confirmed the unit goes to needs_reconciliation and the caller is told the
  fulfilment is uncertain; the reconciler finishes the job
- Idempotency is keyed on the ledger signature: replaying a signature that
  already bought a unit returns that unit's outcome and consumes nothing

Every request runs independently; the only shared mutable state is the
listing row inside the datastore.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solders.pubkey import Pubkey

from marketplace.errors import (
    InvalidReference,
    LedgerError,
    ListingNotFound,
    OutOfStock,
    PaymentAlreadyUsed,
)
from marketplace.fulfillment import TokenFulfillmentExecutor
from marketplace.inventory import InventoryLedger, UnitRecord, UnitStatus
from marketplace.payment_verifier import (
    PaymentVerifier,
    VerificationStatus,
    to_smallest_unit,
)

logger = logging.getLogger("market.purchasing")


# ============================================================
# DATA TYPES
# ============================================================

class PurchaseStatus(Enum):
    """Terminal outcomes of one purchase call."""
    FULFILLED = "fulfilled"                           # Paid, unit consumed, token confirmed
    PENDING = "pending"                               # Payment not observable yet — retry same signature
    REJECTED = "rejected"                             # Payment doesn't qualify
    OUT_OF_STOCK = "out_of_stock"                     # Inactive or sold out
    NOT_FOUND = "not_found"                           # No such listing
    INVALID_REQUEST = "invalid_request"               # Missing / malformed input
    FULFILLMENT_UNCERTAIN = "fulfillment_uncertain"   # Unit consumed, delivery not confirmed
    MISCONFIGURED = "misconfigured"                   # Server can't sign transfers


@dataclass
class PurchaseResult:
    status: PurchaseStatus
    listing_id: str
    payment_ref: str = ""
    mint_address: str = ""
    sold_count: Optional[int] = None
    active: Optional[bool] = None
    transfer_ref: str = ""
    error: str = ""
    replayed: bool = False

    def to_dict(self) -> dict:
        """Serialize for API response."""
        data = {
            "status": self.status.value,
            "listing_id": self.listing_id,
        }
        if self.status == PurchaseStatus.PENDING:
            data["pending"] = True
        if self.mint_address:
            data["mintAddress"] = self.mint_address
        if self.sold_count is not None:
            data["soldCount"] = self.sold_count
        if self.active is not None:
            data["active"] = self.active
        if self.transfer_ref:
            data["transferSignature"] = self.transfer_ref
        if self.error:
            data["error"] = self.error
        if self.replayed:
            data["replayed"] = True
        return data


def normalize_address(address: str) -> Optional[str]:
    """Canonical base58 form, or None if it isn't a public key."""
    try:
        return str(Pubkey.from_string(address.strip()))
    except (ValueError, AttributeError):
        return None


# ============================================================
# ORCHESTRATOR
# ============================================================

class PurchaseOrchestrator:
    """
    Usage:
        orchestrator = PurchaseOrchestrator(inventory, verifier, executor)
        result = await orchestrator.purchase(listing_id, signature, buyer_address)
    """

    def __init__(
        self,
        inventory: InventoryLedger,
        verifier: PaymentVerifier,
        executor: Optional[TokenFulfillmentExecutor],
        misconfiguration: str = "",
    ):
        self._inventory = inventory
        self._verifier = verifier
        self._executor = executor
        self._misconfiguration = misconfiguration or (
            "" if executor is not None else "fulfillment executor not configured"
        )

    @property
    def configured(self) -> bool:
        return self._executor is not None

    async def purchase(
        self,
        listing_id: str,
        payment_ref: Optional[str],
        buyer_address: Optional[str],
    ) -> PurchaseResult:
        # --- Received ---
        payment_ref = (payment_ref or "").strip()
        if not payment_ref or not buyer_address:
            return PurchaseResult(
                status=PurchaseStatus.INVALID_REQUEST,
                listing_id=listing_id,
                error="Missing signature or buyer_wallet_address",
            )

        buyer = normalize_address(buyer_address)
        if buyer is None:
            return PurchaseResult(
                status=PurchaseStatus.INVALID_REQUEST,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Invalid buyer_wallet_address",
            )

        if self._executor is None:
            logger.error(f"PURCHASE REFUSED (server misconfigured): {self._misconfiguration}")
            return PurchaseResult(
                status=PurchaseStatus.MISCONFIGURED,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Server misconfigured",
            )

        # --- Idempotency: this signature already bought something ---
        existing = await self._inventory.find_by_payment_ref(payment_ref)
        if existing is not None:
            return await self._replay(listing_id, payment_ref, buyer, existing)

        listing = await self._inventory.get_listing(listing_id)
        if listing is None:
            return PurchaseResult(
                status=PurchaseStatus.NOT_FOUND,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Listing not found",
            )
        if not listing.active or listing.sold_out:
            return PurchaseResult(
                status=PurchaseStatus.OUT_OF_STOCK,
                listing_id=listing_id,
                payment_ref=payment_ref,
                sold_count=listing.sold_count,
                active=listing.active,
                error="Listing sold out" if listing.sold_out else "Listing inactive",
            )

        # --- Verifying ---
        expected = to_smallest_unit(listing.price_sol)
        try:
            verification = await self._verifier.verify_payment(
                payment_ref,
                expected_source=buyer,
                expected_destination=normalize_address(listing.seller_wallet_address) or listing.seller_wallet_address,
                expected_min_amount=expected,
            )
        except InvalidReference:
            return PurchaseResult(
                status=PurchaseStatus.INVALID_REQUEST,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Invalid signature",
            )
        if verification.status == VerificationStatus.PENDING:
            return PurchaseResult(
                status=PurchaseStatus.PENDING,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error=verification.reason,
            )
        if verification.status == VerificationStatus.REJECTED:
            return PurchaseResult(
                status=PurchaseStatus.REJECTED,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error=verification.reason,
            )

        # --- Consuming ---
        try:
            unit = await self._inventory.consume_one_unit(listing_id, buyer, payment_ref)
        except ListingNotFound:
            return PurchaseResult(
                status=PurchaseStatus.NOT_FOUND,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Listing not found",
            )
        except OutOfStock as e:
            logger.info(f"PURCHASE OUT OF STOCK after verification: {listing_id} ({e.reason})")
            return PurchaseResult(
                status=PurchaseStatus.OUT_OF_STOCK,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Listing sold out",
            )
        except PaymentAlreadyUsed:
            # A concurrent request with the same signature won the race
            existing = await self._inventory.find_by_payment_ref(payment_ref)
            if existing is None:
                raise
            return await self._replay(listing_id, payment_ref, buyer, existing)

        # --- Fulfilling ---
        try:
            receipt = await self._executor.transfer_one_unit(
                unit.mint_address, listing.seller_wallet_address, buyer
            )
        except Exception as e:
            # Unit is already consumed: park it for the reconciler, never roll back
            await self._inventory.mark_needs_reconciliation(unit.unit_id, None, f"submit failed: {e}")
            logger.error(
                f"FULFILLMENT UNCERTAIN: listing={listing_id} mint={unit.mint_address[:12]}... "
                f"transfer submission failed after consumption: {type(e).__name__}: {e}",
                exc_info=not isinstance(e, LedgerError),
            )
            return PurchaseResult(
                status=PurchaseStatus.FULFILLMENT_UNCERTAIN,
                listing_id=listing_id,
                payment_ref=payment_ref,
                mint_address=unit.mint_address,
                sold_count=unit.sold_count,
                active=unit.still_active,
                error="Token transfer could not be submitted; delivery will be retried",
            )

        if not receipt.confirmed:
            await self._inventory.mark_needs_reconciliation(unit.unit_id, receipt.signature, receipt.error)
            logger.error(
                f"FULFILLMENT UNCERTAIN: listing={listing_id} mint={unit.mint_address[:12]}... "
                f"tx={receipt.signature[:16]}... {receipt.error}"
            )
            return PurchaseResult(
                status=PurchaseStatus.FULFILLMENT_UNCERTAIN,
                listing_id=listing_id,
                payment_ref=payment_ref,
                mint_address=unit.mint_address,
                sold_count=unit.sold_count,
                active=unit.still_active,
                transfer_ref=receipt.signature,
                error="Token transfer not confirmed yet",
            )

        await self._inventory.mark_fulfilled(unit.unit_id, receipt.signature)
        logger.info(
            f"PURCHASE FULFILLED: listing={listing_id} mint={unit.mint_address[:12]}... "
            f"sold={unit.sold_count}/{listing.supply} active={unit.still_active}"
        )
        return PurchaseResult(
            status=PurchaseStatus.FULFILLED,
            listing_id=listing_id,
            payment_ref=payment_ref,
            mint_address=unit.mint_address,
            sold_count=unit.sold_count,
            active=unit.still_active,
            transfer_ref=receipt.signature,
        )

    async def _replay(
        self, listing_id: str, payment_ref: str, buyer: str, unit: UnitRecord
    ) -> PurchaseResult:
        if unit.listing_id != listing_id or unit.buyer_address != buyer:
            logger.warning(
                f"PAYMENT REUSE: {payment_ref[:16]}... already bought a unit of listing "
                f"{unit.listing_id} for another buyer or listing"
            )
            return PurchaseResult(
                status=PurchaseStatus.REJECTED,
                listing_id=listing_id,
                payment_ref=payment_ref,
                error="Payment already used",
            )

        listing = await self._inventory.get_listing(listing_id)
        status = (
            PurchaseStatus.FULFILLED
            if unit.status == UnitStatus.FULFILLED
            else PurchaseStatus.FULFILLMENT_UNCERTAIN
        )
        logger.info(f"PURCHASE REPLAY: {payment_ref[:16]}... → {status.value} (no new unit consumed)")
        return PurchaseResult(
            status=status,
            listing_id=listing_id,
            payment_ref=payment_ref,
            mint_address=unit.mint_address,
            sold_count=listing.sold_count if listing else None,
            active=listing.active if listing else None,
            transfer_ref=unit.transfer_ref or "",
            replayed=True,
        )
