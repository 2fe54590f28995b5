"""
Token Fulfillment Executor — move one unit to the buyer

Moves one pre-minted token from the seller's custodial pool to the
buyer's associated token account (ATA), signed by the marketplace
delegate. The delegate was approved by the seller at listing time and
also pays fees and ATA rent for buyers who don't have one yet.

Design:
- ATA creation + transfer go out as ONE transaction (both land or neither)
- Confirmation is requested at "confirmed" but a timeout is not fatal:
  the transaction may still land, and the authoritative record is the
  inventory unit status, not this call
- On test networks the delegate tops itself up by airdrop when low
  (best-effort, never blocks a sale)
- The credential is injected once; nothing here reads env or globals
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer,
)

from marketplace.config import MARKET_RULES, DelegateCredential
from marketplace.errors import LedgerError

logger = logging.getLogger("market.fulfillment")


@dataclass
class TransferReceipt:
    signature: str
    confirmed: bool
    created_account: bool = False
    error: str = ""


class TokenFulfillmentExecutor:
    """
    Usage:
        executor = TokenFulfillmentExecutor(ledger, credential, allows_airdrop=True)
        receipt = await executor.transfer_one_unit(mint, seller, buyer)
    """

    def __init__(
        self,
        ledger,
        credential: DelegateCredential,
        allows_airdrop: bool = False,
        confirm_timeout: float = MARKET_RULES.CONFIRM_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ledger = ledger
        self._credential = credential
        self._allows_airdrop = allows_airdrop
        self._confirm_timeout = confirm_timeout
        self._sleep = sleep
        self._clock = clock

    @property
    def delegate(self) -> Pubkey:
        return self._credential.public_key

    # ============================================================
    # FEE FUNDING
    # ============================================================

    async def ensure_fee_funds(self) -> None:
        """Airdrop to the delegate on test networks when its balance runs low."""
        if not self._allows_airdrop:
            return

        try:
            balance = await self._ledger.get_balance(self.delegate)
            if balance >= MARKET_RULES.DELEGATE_MIN_BALANCE_LAMPORTS:
                return

            logger.info(
                f"Delegate balance low ({balance} lamports) — requesting "
                f"{MARKET_RULES.DELEGATE_AIRDROP_LAMPORTS} lamports airdrop"
            )
            await self._ledger.request_airdrop(self.delegate, MARKET_RULES.DELEGATE_AIRDROP_LAMPORTS)

            deadline = self._clock() + MARKET_RULES.FUNDING_WAIT_SECONDS
            while self._clock() < deadline:
                await self._sleep(MARKET_RULES.FUNDING_POLL_SECONDS)
                current = await self._ledger.get_balance(self.delegate)
                if current > balance:
                    logger.info(f"Delegate funded: {balance} → {current} lamports")
                    return

            logger.warning("Delegate airdrop not observed before timeout — continuing anyway")
        except Exception as e:
            logger.warning(f"Delegate top-up failed (non-fatal): {e}")

    # ============================================================
    # TRANSFER
    # ============================================================

    async def build_instructions(self, mint: str, seller: str, buyer: str) -> tuple[list[Instruction], bool]:
        """Return (instructions, creates_buyer_account)."""
        mint_pk = Pubkey.from_string(mint)
        seller_pk = Pubkey.from_string(seller)
        buyer_pk = Pubkey.from_string(buyer)

        seller_ata = get_associated_token_address(seller_pk, mint_pk)
        buyer_ata = get_associated_token_address(buyer_pk, mint_pk)

        instructions: list[Instruction] = []
        creates_account = not await self._ledger.account_exists(buyer_ata)
        if creates_account:
            instructions.append(
                create_associated_token_account(payer=self.delegate, owner=buyer_pk, mint=mint_pk)
            )

        instructions.append(transfer(TransferParams(
            program_id=TOKEN_PROGRAM_ID,
            source=seller_ata,
            dest=buyer_ata,
            owner=self.delegate,
            amount=1,
        )))
        return instructions, creates_account

    async def transfer_one_unit(self, mint: str, seller: str, buyer: str) -> TransferReceipt:
        """
        Submit the transfer and wait (bounded) for confirmation.

        Raises LedgerError only if submission itself fails; a confirmation
        timeout or on-chain error comes back as confirmed=False.
        """
        await self.ensure_fee_funds()

        instructions, created = await self.build_instructions(mint, seller, buyer)
        signature = await self._ledger.submit(
            instructions, self._credential.keypair, [self._credential.keypair]
        )

        error = ""
        try:
            confirmed = await self._ledger.confirm(
                signature,
                commitment=MARKET_RULES.CONFIRM_COMMITMENT,
                timeout=self._confirm_timeout,
            )
        except LedgerError as e:
            confirmed = False
            error = str(e)

        if confirmed:
            logger.info(
                f"TOKEN DELIVERED: mint={mint[:12]}... → {buyer[:12]}... "
                f"tx={signature[:16]}... (new account: {created})"
            )
        else:
            logger.warning(
                f"TOKEN TRANSFER UNCONFIRMED: mint={mint[:12]}... tx={signature[:16]}... "
                f"{error or 'confirmation timeout'}"
            )
            if not error:
                error = "confirmation timeout"

        return TransferReceipt(
            signature=signature,
            confirmed=confirmed,
            created_account=created,
            error=error,
        )

    # ============================================================
    # RECONCILIATION CHECKS
    # ============================================================

    async def delivered(self, mint: str, buyer: str) -> bool:
        """Buyer's ATA holds the token."""
        ata = get_associated_token_address(Pubkey.from_string(buyer), Pubkey.from_string(mint))
        return await self._ledger.get_token_balance(ata) >= 1

    async def seller_holds(self, mint: str, seller: str) -> bool:
        ata = get_associated_token_address(Pubkey.from_string(seller), Pubkey.from_string(mint))
        return await self._ledger.get_token_balance(ata) >= 1
