"""
Ledger Client — Solana RPC Layer

Thin async wrapper over solana-py's AsyncClient. Everything the engine
needs from the settlement network goes through here:

- read:  transaction lookup (jsonParsed), balances, account existence,
         token balances, latest blockhash
- write: submit a batched transaction, poll for confirmation, airdrop

Design:
- Transport / RPC failures surface as LedgerError, never raw client exceptions
- A missing transaction is None, not an error: very recent signatures are
  routinely not yet observable
- RPC payloads are reduced to small dataclasses by pure functions
  (parse_transaction) so verification logic never touches wire formats
- Confirmation is an explicit bounded poll with injectable sleep/clock
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, Union

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from marketplace.config import MARKET_RULES
from marketplace.errors import InvalidReference, LedgerError

logger = logging.getLogger("market.ledger")

Address = Union[str, Pubkey]

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class TransferInstruction:
    """A native-currency transfer observed inside a ledger transaction."""
    source: str
    destination: str
    amount: int          # lamports


@dataclass
class LedgerTransaction:
    """What the engine needs to know about an observed transaction."""
    ref: str
    transfers: list[TransferInstruction] = field(default_factory=list)
    failed: bool = False
    slot: int = 0


# ============================================================
# PARSING
# ============================================================

def parse_transaction(ref: str, payload: dict) -> LedgerTransaction:
    """
    Reduce a jsonParsed getTransaction result to a LedgerTransaction.

    Accepts both the RPC shape ({"transaction": {...}, "meta": {...}}) and the
    nested shape some client versions produce ({"transaction": {"transaction": ..., "meta": ...}}).
    Only top-level System Program `transfer` instructions are collected.
    """
    tx = payload.get("transaction") or {}
    meta = payload.get("meta")
    if meta is None and isinstance(tx, dict) and "meta" in tx:
        meta = tx.get("meta")
        tx = tx.get("transaction") or {}

    message = tx.get("message") or {}
    transfers = []
    for ix in message.get("instructions") or []:
        if not isinstance(ix, dict):
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        program = ix.get("program")
        if program is not None and program != "system":
            continue
        info = parsed.get("info") or {}
        if not info.get("source") or not info.get("destination") or info.get("lamports") is None:
            continue
        try:
            amount = int(info["lamports"])
        except (TypeError, ValueError):
            continue
        transfers.append(TransferInstruction(
            source=str(info["source"]),
            destination=str(info["destination"]),
            amount=amount,
        ))

    failed = bool(meta and meta.get("err") is not None)
    return LedgerTransaction(
        ref=ref,
        transfers=transfers,
        failed=failed,
        slot=int(payload.get("slot") or 0),
    )


def _pubkey(address: Address) -> Pubkey:
    if isinstance(address, Pubkey):
        return address
    return Pubkey.from_string(address)


def _commitment_name(status) -> str:
    # solders enum prints as "TransactionConfirmationStatus.Confirmed"
    return str(status).rsplit(".", 1)[-1].lower()


# ============================================================
# CLIENT
# ============================================================

class SolanaLedgerClient:
    """
    Async access to a Solana cluster.

    Usage:
        ledger = SolanaLedgerClient("https://api.devnet.solana.com")
        tx = await ledger.get_transaction(signature)
        await ledger.close()
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        client: Optional[AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc_url = rpc_url
        self._client = client or AsyncClient(rpc_url, timeout=timeout)
        self._sleep = sleep
        self._clock = clock

    async def close(self) -> None:
        await self._client.close()

    # ----------------------------------------------------------
    # READS
    # ----------------------------------------------------------

    async def get_transaction(self, ref: str) -> Optional[LedgerTransaction]:
        try:
            signature = Signature.from_string(ref)
        except ValueError as e:
            raise InvalidReference(f"malformed transaction signature: {e}")

        try:
            resp = await self._client.get_transaction(
                signature,
                encoding="jsonParsed",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        except Exception as e:
            raise LedgerError(f"getTransaction failed: {type(e).__name__}: {e}") from e

        if resp.value is None:
            return None
        result = json.loads(resp.to_json()).get("result") or {}
        return parse_transaction(ref, result)

    async def get_balance(self, address: Address) -> int:
        try:
            resp = await self._client.get_balance(_pubkey(address), commitment=Confirmed)
        except Exception as e:
            raise LedgerError(f"getBalance failed: {type(e).__name__}: {e}") from e
        return int(resp.value)

    async def get_latest_blockhash(self) -> Hash:
        try:
            resp = await self._client.get_latest_blockhash(commitment=Confirmed)
        except Exception as e:
            raise LedgerError(f"getLatestBlockhash failed: {type(e).__name__}: {e}") from e
        return resp.value.blockhash

    async def account_exists(self, address: Address) -> bool:
        try:
            resp = await self._client.get_account_info(_pubkey(address), commitment=Confirmed)
        except Exception as e:
            raise LedgerError(f"getAccountInfo failed: {type(e).__name__}: {e}") from e
        return resp.value is not None

    async def get_token_balance(self, token_account: Address) -> int:
        """Raw token amount held by a token account; 0 if it does not exist."""
        if not await self.account_exists(token_account):
            return 0
        try:
            resp = await self._client.get_token_account_balance(
                _pubkey(token_account), commitment=Confirmed
            )
        except Exception as e:
            raise LedgerError(f"getTokenAccountBalance failed: {type(e).__name__}: {e}") from e
        return int(resp.value.amount)

    # ----------------------------------------------------------
    # WRITES
    # ----------------------------------------------------------

    async def submit(
        self,
        instructions: Sequence[Instruction],
        fee_payer: Keypair,
        signers: Sequence[Keypair] = (),
    ) -> str:
        """Sign and send all instructions as one transaction. Returns the signature."""
        blockhash = await self.get_latest_blockhash()
        keypairs = [fee_payer] + [s for s in signers if s.pubkey() != fee_payer.pubkey()]
        tx = Transaction.new_signed_with_payer(
            list(instructions), fee_payer.pubkey(), keypairs, blockhash
        )
        try:
            resp = await self._client.send_raw_transaction(
                bytes(tx), opts=TxOpts(preflight_commitment=Confirmed)
            )
        except Exception as e:
            raise LedgerError(f"sendTransaction failed: {type(e).__name__}: {e}") from e

        signature = str(resp.value)
        logger.info(f"TX SUBMITTED: {signature[:16]}... ({len(instructions)} instructions)")
        return signature

    async def confirm(
        self,
        ref: str,
        commitment: str = MARKET_RULES.CONFIRM_COMMITMENT,
        timeout: float = MARKET_RULES.CONFIRM_TIMEOUT_SECONDS,
        poll_interval: float = MARKET_RULES.CONFIRM_POLL_SECONDS,
    ) -> bool:
        """
        Poll signature status until it reaches `commitment`.

        Returns False on timeout (the transaction may still land later).
        Raises LedgerError if the transaction executed with an error.
        """
        required = _COMMITMENT_RANK[commitment]
        signature = Signature.from_string(ref)
        deadline = self._clock() + timeout

        while True:
            try:
                resp = await self._client.get_signature_statuses([signature])
                status = resp.value[0] if resp.value else None
            except Exception as e:
                logger.warning(f"Signature status lookup failed for {ref[:16]}...: {e}")
                status = None

            if status is not None:
                if status.err is not None:
                    raise LedgerError(f"transaction {ref[:16]}... failed: {status.err}")
                level = status.confirmation_status
                if level is not None and _COMMITMENT_RANK.get(_commitment_name(level), -1) >= required:
                    return True

            if self._clock() >= deadline:
                logger.warning(f"Confirmation timeout ({timeout:.0f}s) for {ref[:16]}...")
                return False
            await self._sleep(poll_interval)

    async def request_airdrop(self, address: Address, lamports: int) -> str:
        try:
            resp = await self._client.request_airdrop(_pubkey(address), lamports, commitment=Confirmed)
        except Exception as e:
            raise LedgerError(f"requestAirdrop failed: {type(e).__name__}: {e}") from e
        return str(resp.value)
