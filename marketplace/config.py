"""
Marketplace Configuration

Three layers, from most to least static:

1. MARKET_RULES      — frozen dataclass of engine constants (polling budget,
                       funding thresholds, page size). Not configurable at runtime.
2. CLUSTER_DEFAULTS  — per-network RPC endpoints and whether the network
                       hands out free test funds.
3. Settings          — deployment values read once from the environment
                       (after load_dotenv() in main.py).

The delegate credential and the schema capabilities descriptor are both
resolved once at startup and injected; nothing here is read per request.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Final, Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from marketplace.errors import ConfigurationError


# ============================================================
# ENGINE RULES
# ============================================================

@dataclass(frozen=True)
class MarketRules:
    """Frozen dataclass = immutable at runtime."""

    # --- CURRENCY ---
    LAMPORTS_PER_SOL: Final[int] = 1_000_000_000

    # --- PAYMENT VERIFICATION ---
    PAYMENT_LOOKUP_ATTEMPTS: Final[int] = 12          # parsed tx can lag a few seconds behind submission
    PAYMENT_LOOKUP_DELAY_SECONDS: Final[float] = 1.0

    # --- FULFILLMENT ---
    CONFIRM_COMMITMENT: Final[str] = "confirmed"
    CONFIRM_TIMEOUT_SECONDS: Final[float] = 30.0
    CONFIRM_POLL_SECONDS: Final[float] = 0.5

    # --- DELEGATE FUNDING (test networks only) ---
    DELEGATE_MIN_BALANCE_LAMPORTS: Final[int] = 200_000_000    # 0.2 SOL
    DELEGATE_AIRDROP_LAMPORTS: Final[int] = 2_000_000_000      # 2 SOL
    FUNDING_WAIT_SECONDS: Final[float] = 10.0
    FUNDING_POLL_SECONDS: Final[float] = 1.0

    # --- RECONCILIATION ---
    RECONCILE_INTERVAL_SECONDS: Final[int] = 60
    RECONCILE_RETRY_AFTER_SECONDS: Final[int] = 120
    RECONCILE_BATCH_SIZE: Final[int] = 50

    # --- BROWSING ---
    LISTINGS_PAGE_LIMIT: Final[int] = 60


MARKET_RULES = MarketRules()


# ============================================================
# NETWORK DEFAULTS
# ============================================================

CLUSTER_DEFAULTS = {
    "mainnet-beta": {
        "rpc": "https://api.mainnet-beta.solana.com",
        "allows_airdrop": False,
    },
    "devnet": {
        "rpc": "https://api.devnet.solana.com",
        "allows_airdrop": True,
    },
    "testnet": {
        "rpc": "https://api.testnet.solana.com",
        "allows_airdrop": True,
    },
    "localnet": {
        "rpc": "http://127.0.0.1:8899",
        "allows_airdrop": True,
    },
}

DEFAULT_CLUSTER = "devnet"


# ============================================================
# SCHEMA CAPABILITIES
# ============================================================

@dataclass(frozen=True)
class SchemaCapabilities:
    """
    What the deployed listings schema supports.

    Chosen once at startup from MARKET_SCHEMA_VERSION instead of probing
    columns on every request.
    """
    version: int
    collection_mint: bool

    @classmethod
    def for_version(cls, version: int) -> "SchemaCapabilities":
        if version not in _SCHEMA_VERSIONS:
            raise ConfigurationError(
                f"Unknown MARKET_SCHEMA_VERSION {version} "
                f"(supported: {sorted(_SCHEMA_VERSIONS)})"
            )
        return _SCHEMA_VERSIONS[version]


_SCHEMA_VERSIONS = {
    1: SchemaCapabilities(version=1, collection_mint=False),
    2: SchemaCapabilities(version=2, collection_mint=True),
}

LATEST_SCHEMA_VERSION = max(_SCHEMA_VERSIONS)


# ============================================================
# DELEGATE CREDENTIAL
# ============================================================

SECRET_KEY_LENGTH = 64


@dataclass(frozen=True)
class DelegateCredential:
    """
    Custodial keypair allowed to move tokens out of sellers' pools and pay
    network fees for buyers. Loaded once, never mutated, never serialized.
    """
    keypair: Keypair = field(repr=False)

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def __repr__(self) -> str:
        return f"DelegateCredential(public_key={self.public_key})"


def load_delegate_credential(raw: Optional[str]) -> DelegateCredential:
    """
    Parse MARKETPLACE_DELEGATE_SECRET_KEY.

    Accepts either a JSON array of 64 ints (solana-keygen id.json style)
    or a base58-encoded 64-byte secret key.
    """
    if not raw or not raw.strip():
        raise ConfigurationError("Server missing MARKETPLACE_DELEGATE_SECRET_KEY")
    raw = raw.strip()

    secret: Optional[bytes] = None
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
            secret = bytes(parsed)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid MARKETPLACE_DELEGATE_SECRET_KEY: bad JSON byte array ({e})"
            )
    else:
        try:
            secret = base58.b58decode(raw)
        except ValueError:
            raise ConfigurationError(
                "Invalid MARKETPLACE_DELEGATE_SECRET_KEY: must be JSON array or base58 string"
            )

    if len(secret) != SECRET_KEY_LENGTH:
        raise ConfigurationError(
            f"Invalid delegate secret length {len(secret)}; "
            f"expected {SECRET_KEY_LENGTH}-byte secret key"
        )

    try:
        keypair = Keypair.from_bytes(secret)
    except ValueError as e:
        raise ConfigurationError(f"Failed to initialize marketplace delegate wallet: {e}")

    return DelegateCredential(keypair=keypair)


# ============================================================
# DEPLOYMENT SETTINGS
# ============================================================

@dataclass(frozen=True)
class Settings:
    cluster: str
    rpc_url: str
    database_url: str
    schema_version: int
    delegate_secret: str = field(default="", repr=False)
    song_catalog_url: str = ""
    song_catalog_api_key: str = field(default="", repr=False)
    auth_secret: str = field(default="", repr=False)
    cors_origins: tuple = ("*",)

    @property
    def allows_airdrop(self) -> bool:
        return CLUSTER_DEFAULTS.get(self.cluster, {}).get("allows_airdrop", False)

    @property
    def schema(self) -> SchemaCapabilities:
        return SchemaCapabilities.for_version(self.schema_version)

    @classmethod
    def from_env(cls) -> "Settings":
        cluster = os.getenv("SOLANA_CLUSTER", DEFAULT_CLUSTER).strip().lower()
        if cluster not in CLUSTER_DEFAULTS:
            raise ConfigurationError(
                f"Unknown SOLANA_CLUSTER '{cluster}' (expected one of {list(CLUSTER_DEFAULTS)})"
            )

        try:
            schema_version = int(os.getenv("MARKET_SCHEMA_VERSION", str(LATEST_SCHEMA_VERSION)))
        except ValueError:
            raise ConfigurationError("MARKET_SCHEMA_VERSION must be an integer")

        origins = tuple(
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        )

        return cls(
            cluster=cluster,
            rpc_url=os.getenv("SOLANA_RPC_URL", CLUSTER_DEFAULTS[cluster]["rpc"]),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///data/marketplace.db"),
            schema_version=schema_version,
            delegate_secret=os.getenv("MARKETPLACE_DELEGATE_SECRET_KEY", ""),
            song_catalog_url=os.getenv("SONG_CATALOG_URL", ""),
            song_catalog_api_key=os.getenv("SONG_CATALOG_API_KEY", ""),
            auth_secret=os.getenv("MARKETPLACE_AUTH_SECRET", ""),
            cors_origins=origins or ("*",),
        )
