"""
Marketplace Errors

One exception tree for the whole engine. Core components raise these;
the purchase orchestrator turns them into a PurchaseResult and the API
layer maps them onto HTTP status codes.
"""


class MarketplaceError(Exception):
    """Base class for every error raised by the marketplace core."""
    pass


# ============================================================
# SERVER-SIDE FAULTS
# ============================================================

class ConfigurationError(MarketplaceError):
    """Required server configuration is missing or malformed. Never retried."""
    pass


class LedgerError(MarketplaceError):
    """RPC / transport failure talking to the settlement network."""
    pass


class InvalidReference(MarketplaceError):
    """A ledger reference that can never resolve (malformed). Not transient."""
    pass


class CatalogError(MarketplaceError):
    """The song ownership record could not be read."""
    pass


class InventoryError(MarketplaceError):
    """Inventory rows disagree with the listing counters."""
    pass


# ============================================================
# CLIENT-VISIBLE OUTCOMES
# ============================================================

class ListingNotFound(MarketplaceError):
    def __init__(self, listing_id: str):
        super().__init__(f"listing {listing_id} not found")
        self.listing_id = listing_id


class OutOfStock(MarketplaceError):
    def __init__(self, listing_id: str, reason: str = "sold out"):
        super().__init__(f"listing {listing_id}: {reason}")
        self.listing_id = listing_id
        self.reason = reason


class ListingForbidden(MarketplaceError):
    """Caller is not allowed to act on this listing / song."""
    pass


class ListingValidationError(MarketplaceError):
    """Malformed listing input (price, supply, addresses, inventory)."""
    pass


class ListingSoldOut(MarketplaceError):
    """A sold-out listing cannot be re-activated."""
    pass


class PaymentAlreadyUsed(MarketplaceError):
    """The ledger reference is already bound to an inventory unit."""

    def __init__(self, payment_ref: str):
        super().__init__(f"payment {payment_ref[:16]}... already used")
        self.payment_ref = payment_ref
