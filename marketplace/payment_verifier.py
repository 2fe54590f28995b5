"""
Payment Verifier — did the buyer actually pay the seller?

Given a ledger transaction reference claimed by a buyer, poll the ledger
until the transaction is observable, then look for a native transfer
from the buyer to the seller of at least the listing price.

Outcomes:
  VERIFIED  — at least one qualifying transfer instruction
  PENDING   — not observable within the attempt budget (client re-polls
              with the same reference; never a hard failure)
  REJECTED  — observed, but no qualifying transfer (or failed on-chain)

A malformed reference is not retried: InvalidReference propagates on the
first lookup.

Amounts are compared in lamports (int). Price → lamports conversion is
ROUND_HALF_UP and lives in one function so the expected amount is always
computed the same way.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from marketplace.config import MARKET_RULES
from marketplace.errors import LedgerError
from marketplace.ledger import LedgerTransaction

logger = logging.getLogger("market.payment_verifier")


def to_smallest_unit(price: Union[Decimal, str, int], factor: int = MARKET_RULES.LAMPORTS_PER_SOL) -> int:
    """0.1 SOL → 100_000_000 lamports. Half-up rounding on the last unit."""
    amount = Decimal(str(price)) * factor
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class VerificationStatus(Enum):
    VERIFIED = "verified"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass
class PaymentVerification:
    status: VerificationStatus
    reason: str = ""
    transaction: Optional[LedgerTransaction] = None
    attempts: int = 0

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED


class PaymentVerifier:
    """
    Usage:
        verifier = PaymentVerifier(ledger)
        result = await verifier.verify_payment(sig, buyer, seller, to_smallest_unit(price))
    """

    def __init__(
        self,
        ledger,
        attempts: int = MARKET_RULES.PAYMENT_LOOKUP_ATTEMPTS,
        delay: float = MARKET_RULES.PAYMENT_LOOKUP_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self._ledger = ledger
        self._attempts = attempts
        self._delay = delay
        self._sleep = sleep

    async def _lookup(self, ref: str) -> tuple[Optional[LedgerTransaction], int]:
        for attempt in range(1, self._attempts + 1):
            try:
                tx = await self._ledger.get_transaction(ref)
            except LedgerError as e:
                logger.warning(f"Payment lookup {attempt}/{self._attempts} for {ref[:16]}... failed: {e}")
                tx = None
            if tx is not None:
                return tx, attempt
            if attempt < self._attempts:
                await self._sleep(self._delay)
        return None, self._attempts

    async def verify_payment(
        self,
        ref: str,
        expected_source: str,
        expected_destination: str,
        expected_min_amount: int,
    ) -> PaymentVerification:
        """
        Raises InvalidReference (from the ledger) for a malformed reference;
        that is a client input error and is never polled again.
        """
        tx, attempts = await self._lookup(ref)

        if tx is None:
            logger.info(f"PAYMENT PENDING: {ref[:16]}... not observable after {attempts} lookups")
            return PaymentVerification(
                status=VerificationStatus.PENDING,
                reason="Transaction not yet available",
                attempts=attempts,
            )

        if tx.failed:
            logger.info(f"PAYMENT REJECTED: {ref[:16]}... failed on-chain")
            return PaymentVerification(
                status=VerificationStatus.REJECTED,
                reason="Transaction failed on-chain",
                transaction=tx,
                attempts=attempts,
            )

        matches = [
            t for t in tx.transfers
            if t.source == expected_source
            and t.destination == expected_destination
            and t.amount >= expected_min_amount
        ]

        if not matches:
            paid = sum(
                t.amount for t in tx.transfers
                if t.source == expected_source and t.destination == expected_destination
            )
            logger.info(
                f"PAYMENT REJECTED: {ref[:16]}... | buyer→seller total {paid} "
                f"< required {expected_min_amount} (or no matching transfer)"
            )
            return PaymentVerification(
                status=VerificationStatus.REJECTED,
                reason="Payment verification failed",
                transaction=tx,
                attempts=attempts,
            )

        logger.info(
            f"PAYMENT VERIFIED: {ref[:16]}... | {matches[0].amount} lamports "
            f"(required {expected_min_amount}) after {attempts} lookup(s)"
        )
        return PaymentVerification(
            status=VerificationStatus.VERIFIED,
            transaction=tx,
            attempts=attempts,
        )
