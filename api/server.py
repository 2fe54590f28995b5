"""
Marketplace API Server - FastAPI Backend

Endpoints:
- GET   /marketplace/listings            Active listings (newest first)
- POST  /marketplace/listings            Create a listing (seller, bearer auth)
- PATCH /marketplace/listings/{id}       Activate / deactivate (seller, bearer auth)
- POST  /marketplace/listings/{id}/buy   Verify payment → consume unit → deliver token
- GET   /health                          Heartbeat

Buying needs no auth: the on-chain payment is the credential.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictBool
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.auth import AuthSession, verify_token
from marketplace.config import MARKET_RULES
from marketplace.errors import (
    ListingForbidden,
    ListingNotFound,
    ListingSoldOut,
    ListingValidationError,
)
from marketplace.inventory import InventoryLedger
from marketplace.listings import ListingDraft, ListingService
from marketplace.purchasing import PurchaseOrchestrator, PurchaseStatus
from marketplace.reconciler import FulfillmentReconciler

logger = logging.getLogger("market.api")


# ============================================================
# MODELS
# ============================================================

class CreateListingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    song_id: Optional[str] = Field(None, alias="songId", max_length=64)
    title: Optional[str] = Field(None, max_length=200)
    artist: Optional[str] = Field(None, max_length=200)
    price_sol: Optional[Decimal] = Field(None, alias="priceSol")
    supply: Optional[int] = None
    seller_wallet_address: Optional[str] = Field(None, alias="sellerWalletAddress", max_length=64)
    inventory_mint_addresses: list[str] = Field(default_factory=list, alias="inventoryMintAddresses")
    metadata_uri: Optional[str] = Field(None, alias="metadataUri", max_length=2000)
    collection_mint_address: Optional[str] = Field(None, alias="collectionMintAddress", max_length=64)


class CreateListingResponse(BaseModel):
    id: str


class UpdateListingRequest(BaseModel):
    active: Optional[StrictBool] = None


class BuyRequest(BaseModel):
    signature: Optional[str] = Field(None, max_length=128)
    buyer_wallet_address: Optional[str] = Field(None, max_length=64)


# Purchase outcome → HTTP status
PURCHASE_HTTP_STATUS = {
    PurchaseStatus.FULFILLED: 200,
    PurchaseStatus.PENDING: 202,
    PurchaseStatus.FULFILLMENT_UNCERTAIN: 202,
    PurchaseStatus.REJECTED: 400,
    PurchaseStatus.INVALID_REQUEST: 400,
    PurchaseStatus.NOT_FOUND: 404,
    PurchaseStatus.OUT_OF_STOCK: 409,
    PurchaseStatus.MISCONFIGURED: 500,
}

# Request field → client-facing error (everything else is "Invalid <field>")
_FIELD_ERRORS = {
    "active": "Invalid active flag",
}


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    listing_service: ListingService,
    orchestrator: PurchaseOrchestrator,
    auth_secret: str,
    cors_origins: tuple = ("*",),
    inventory: Optional[InventoryLedger] = None,
    reconciler: Optional[FulfillmentReconciler] = None,
    reconcile_interval: float = MARKET_RULES.RECONCILE_INTERVAL_SECONDS,
    cluster: str = "",
) -> FastAPI:
    """
    Create FastAPI app wired to the marketplace core.

    inventory: when given, the schema is created on startup
    reconciler: when given, runs as a background task for the app's lifetime
    """
    app = FastAPI(
        title="Song Token Marketplace",
        description="Fixed-supply song tokens, paid and delivered on Solana.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    background: list[asyncio.Task] = []

    # ============================================================
    # ERROR MAPPING
    # ============================================================

    @app.exception_handler(ListingValidationError)
    async def _invalid(request: Request, exc: ListingValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(ListingForbidden)
    async def _forbidden(request: Request, exc: ListingForbidden):
        return JSONResponse(status_code=403, content={"error": str(exc)})

    @app.exception_handler(ListingNotFound)
    async def _not_found(request: Request, exc: ListingNotFound):
        return JSONResponse(status_code=404, content={"error": "Not found"})

    @app.exception_handler(ListingSoldOut)
    async def _sold_out(request: Request, exc: ListingSoldOut):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        names = [part for part in (errors[0].get("loc", ()) if errors else ()) if isinstance(part, str)]
        field = names[-1] if names and names[-1] != "body" else ""
        message = _FIELD_ERRORS.get(field, f"Invalid {field}" if field else "Invalid request body")
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # ============================================================
    # AUTH
    # ============================================================

    async def require_seller(authorization: Optional[str] = Header(None)) -> AuthSession:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise HTTPException(401, "Unauthorized")
        session = verify_token(authorization[7:].strip(), auth_secret)
        if session is None:
            raise HTTPException(401, "Unauthorized")
        return session

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/marketplace/listings")
    async def list_listings():
        """Public browse page."""
        page = await listing_service.list_active()
        body = {"listings": [view.to_dict() for view in page.listings]}
        if page.warning:
            body["warning"] = page.warning
        return body

    @app.post("/marketplace/listings", response_model=CreateListingResponse)
    async def create_listing(req: CreateListingRequest, session: AuthSession = Depends(require_seller)):
        draft = ListingDraft(
            song_id=(req.song_id or "").strip(),
            title=(req.title or "").strip(),
            artist=(req.artist or "").strip(),
            price_sol=req.price_sol if req.price_sol is not None else Decimal(0),
            supply=req.supply if req.supply is not None else 0,
            seller_wallet_address=(req.seller_wallet_address or "").strip(),
            inventory_mints=req.inventory_mint_addresses,
            metadata_uri=req.metadata_uri,
            collection_mint_address=req.collection_mint_address,
        )
        listing_id = await listing_service.create_listing(session.user_id, draft)
        return CreateListingResponse(id=listing_id)

    @app.patch("/marketplace/listings/{listing_id}")
    async def update_listing(
        listing_id: str,
        req: UpdateListingRequest,
        session: AuthSession = Depends(require_seller),
    ):
        if req.active is None:
            raise HTTPException(400, "Invalid active flag")
        view = await listing_service.set_active(listing_id, session.user_id, req.active)
        return {"listing": view.to_dict()}

    @app.post("/marketplace/listings/{listing_id}/buy")
    async def buy(listing_id: str, req: BuyRequest):
        """
        Verify the buyer's payment and hand over one unit.

        202 means "not settled yet": either the payment isn't observable
        (retry with the same signature) or the token transfer is still
        being confirmed (delivery will complete in the background).
        """
        result = await orchestrator.purchase(listing_id, req.signature, req.buyer_wallet_address)
        status_code = PURCHASE_HTTP_STATUS[result.status]
        body = result.to_dict()
        if result.status == PurchaseStatus.MISCONFIGURED:
            body["error"] = "server misconfigured"
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "alive": True,
            "cluster": cluster,
            "delegate_configured": orchestrator.configured,
            "reconciler_running": any(not t.done() for t in background),
        }

    # ============================================================
    # LIFECYCLE
    # ============================================================

    @app.on_event("startup")
    async def _startup():
        logger.info("Marketplace API server starting up")
        if inventory is not None:
            await inventory.create_schema()
        if reconciler is not None:
            background.append(asyncio.create_task(reconciler.run_forever(reconcile_interval)))

    @app.on_event("shutdown")
    async def _shutdown():
        for task in background:
            task.cancel()
        logger.info("Marketplace API server shut down")

    return app
