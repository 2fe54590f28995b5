"""End-to-end purchase flow tests: verify → consume → deliver."""

import asyncio

import pytest

from marketplace.errors import LedgerError
from marketplace.inventory import UnitStatus
from marketplace.purchasing import PurchaseOrchestrator, PurchaseStatus
from tests.fakes import new_address


@pytest.fixture
def buyer():
    return new_address()


def pay(ledger, ref, buyer, seller, sol):
    ledger.add_payment(ref, buyer, seller, int(sol * 1_000_000_000))


class TestScenarios:

    async def test_a_valid_payment_is_fulfilled(self, orchestrator, fake_ledger, make_listing, seller_address, buyer):
        listing_id, mints = await make_listing(supply=1, price="0.5")
        pay(fake_ledger, "sig-a", buyer, seller_address, 0.5)

        result = await orchestrator.purchase(listing_id, "sig-a", buyer)

        assert result.status == PurchaseStatus.FULFILLED
        assert result.sold_count == 1
        assert result.active is False
        assert result.mint_address == mints[0]
        assert result.transfer_ref.startswith("transfer-sig-")

    async def test_b_second_purchase_is_out_of_stock(
        self, orchestrator, fake_ledger, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=1, price="0.5")
        pay(fake_ledger, "sig-a", buyer, seller_address, 0.5)
        await orchestrator.purchase(listing_id, "sig-a", buyer)

        other = new_address()
        pay(fake_ledger, "sig-b", other, seller_address, 0.5)
        result = await orchestrator.purchase(listing_id, "sig-b", other)

        assert result.status == PurchaseStatus.OUT_OF_STOCK
        # sold-out listings are refused before any ledger lookup
        assert "sig-b" not in fake_ledger.lookup_calls

    async def test_c_underpayment_is_rejected(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=1, price="0.5")
        pay(fake_ledger, "sig-c", buyer, seller_address, 0.4)

        result = await orchestrator.purchase(listing_id, "sig-c", buyer)

        assert result.status == PurchaseStatus.REJECTED
        assert result.error == "Payment verification failed"
        listing = await inventory.get_listing(listing_id)
        assert listing.sold_count == 0
        assert fake_ledger.submitted == []


class TestRequestValidation:

    async def test_missing_signature(self, orchestrator, make_listing, buyer):
        listing_id, _ = await make_listing()
        result = await orchestrator.purchase(listing_id, "", buyer)
        assert result.status == PurchaseStatus.INVALID_REQUEST

    async def test_missing_buyer(self, orchestrator, make_listing):
        listing_id, _ = await make_listing()
        result = await orchestrator.purchase(listing_id, "sig-x", None)
        assert result.status == PurchaseStatus.INVALID_REQUEST

    async def test_malformed_buyer(self, orchestrator, make_listing):
        listing_id, _ = await make_listing()
        result = await orchestrator.purchase(listing_id, "sig-x", "not-a-wallet")
        assert result.status == PurchaseStatus.INVALID_REQUEST
        assert result.error == "Invalid buyer_wallet_address"

    async def test_malformed_signature_is_answered_immediately(
        self, orchestrator, fake_ledger, inventory, make_listing, buyer
    ):
        listing_id, _ = await make_listing(supply=1)
        fake_ledger.malformed_refs.add("not-a-signature")

        result = await orchestrator.purchase(listing_id, "not-a-signature", buyer)

        assert result.status == PurchaseStatus.INVALID_REQUEST
        assert result.error == "Invalid signature"
        assert fake_ledger.lookup_calls["not-a-signature"] == 1
        assert (await inventory.get_listing(listing_id)).sold_count == 0

    async def test_unknown_listing(self, orchestrator, buyer):
        result = await orchestrator.purchase("missing-listing", "sig-x", buyer)
        assert result.status == PurchaseStatus.NOT_FOUND

    async def test_inactive_listing(self, orchestrator, listing_service, make_listing, buyer):
        listing_id, _ = await make_listing(supply=2)
        await listing_service.set_active(listing_id, "user-seller", False)

        result = await orchestrator.purchase(listing_id, "sig-x", buyer)

        assert result.status == PurchaseStatus.OUT_OF_STOCK
        assert result.error == "Listing inactive"


class TestPendingAndMisconfiguration:

    async def test_unobservable_payment_is_pending(self, orchestrator, fake_ledger, inventory, make_listing, buyer):
        listing_id, _ = await make_listing(supply=1)

        result = await orchestrator.purchase(listing_id, "sig-not-yet", buyer)

        assert result.status == PurchaseStatus.PENDING
        assert result.to_dict()["pending"] is True
        assert fake_ledger.lookup_calls["sig-not-yet"] == 3
        assert (await inventory.get_listing(listing_id)).sold_count == 0

    async def test_pending_then_retry_with_same_signature(
        self, orchestrator, fake_ledger, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=1)
        pay(fake_ledger, "sig-slow", buyer, seller_address, 0.5)
        fake_ledger.visible_after["sig-slow"] = 3

        first = await orchestrator.purchase(listing_id, "sig-slow", buyer)
        second = await orchestrator.purchase(listing_id, "sig-slow", buyer)

        assert first.status == PurchaseStatus.PENDING
        assert second.status == PurchaseStatus.FULFILLED

    async def test_missing_credential_is_misconfigured(self, inventory, verifier, fake_ledger, make_listing, buyer):
        orchestrator = PurchaseOrchestrator(inventory, verifier, None, misconfiguration="no key")
        listing_id, _ = await make_listing(supply=1)

        result = await orchestrator.purchase(listing_id, "sig-x", buyer)

        assert result.status == PurchaseStatus.MISCONFIGURED
        assert not orchestrator.configured
        assert fake_ledger.lookup_calls == {}


class TestFulfilmentUncertain:

    async def test_unconfirmed_transfer_keeps_unit_consumed(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=2)
        pay(fake_ledger, "sig-u", buyer, seller_address, 0.5)
        fake_ledger.confirm_result = False

        result = await orchestrator.purchase(listing_id, "sig-u", buyer)

        assert result.status == PurchaseStatus.FULFILLMENT_UNCERTAIN
        assert result.sold_count == 1
        unit = await inventory.find_by_payment_ref("sig-u")
        assert unit.status == UnitStatus.NEEDS_RECONCILIATION
        assert unit.transfer_ref == result.transfer_ref
        assert (await inventory.get_listing(listing_id)).sold_count == 1

    async def test_submission_failure_parks_unit(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=1)
        pay(fake_ledger, "sig-f", buyer, seller_address, 0.5)
        fake_ledger.submit_error = LedgerError("blockhash not found")

        result = await orchestrator.purchase(listing_id, "sig-f", buyer)

        assert result.status == PurchaseStatus.FULFILLMENT_UNCERTAIN
        unit = await inventory.find_by_payment_ref("sig-f")
        assert unit.status == UnitStatus.NEEDS_RECONCILIATION
        assert "blockhash not found" in unit.last_error

    async def test_on_chain_transfer_error_is_uncertain(
        self, orchestrator, fake_ledger, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=1)
        pay(fake_ledger, "sig-e", buyer, seller_address, 0.5)
        fake_ledger.confirm_error = LedgerError("InstructionError")

        result = await orchestrator.purchase(listing_id, "sig-e", buyer)

        assert result.status == PurchaseStatus.FULFILLMENT_UNCERTAIN


class TestIdempotency:

    async def test_replaying_fulfilled_signature_consumes_nothing(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, mints = await make_listing(supply=3)
        pay(fake_ledger, "sig-once", buyer, seller_address, 0.5)

        first = await orchestrator.purchase(listing_id, "sig-once", buyer)
        replay = await orchestrator.purchase(listing_id, "sig-once", buyer)

        assert first.status == PurchaseStatus.FULFILLED
        assert replay.status == PurchaseStatus.FULFILLED
        assert replay.replayed is True
        assert replay.mint_address == mints[0]
        assert (await inventory.get_listing(listing_id)).sold_count == 1
        assert len(fake_ledger.submitted) == 1

    async def test_signature_reused_on_other_listing_is_rejected(
        self, orchestrator, fake_ledger, make_listing, seller_address, buyer
    ):
        first_id, _ = await make_listing(supply=1)
        second_id, _ = await make_listing(supply=1, song_id="song-2")
        pay(fake_ledger, "sig-shared", buyer, seller_address, 0.5)
        await orchestrator.purchase(first_id, "sig-shared", buyer)

        result = await orchestrator.purchase(second_id, "sig-shared", buyer)

        assert result.status == PurchaseStatus.REJECTED
        assert result.error == "Payment already used"

    async def test_signature_replayed_by_other_buyer_is_rejected(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=2)
        pay(fake_ledger, "sig-mine", buyer, seller_address, 0.5)
        await orchestrator.purchase(listing_id, "sig-mine", buyer)

        result = await orchestrator.purchase(listing_id, "sig-mine", new_address())

        assert result.status == PurchaseStatus.REJECTED
        assert result.error == "Payment already used"
        assert result.mint_address == ""
        assert result.transfer_ref == ""
        assert (await inventory.get_listing(listing_id)).sold_count == 1

    async def test_concurrent_duplicates_consume_once(
        self, orchestrator, fake_ledger, inventory, make_listing, seller_address, buyer
    ):
        listing_id, _ = await make_listing(supply=3)
        pay(fake_ledger, "sig-twice", buyer, seller_address, 0.5)

        results = await asyncio.gather(
            orchestrator.purchase(listing_id, "sig-twice", buyer),
            orchestrator.purchase(listing_id, "sig-twice", buyer),
        )

        assert {r.status for r in results} <= {
            PurchaseStatus.FULFILLED,
            PurchaseStatus.FULFILLMENT_UNCERTAIN,
        }
        assert (await inventory.get_listing(listing_id)).sold_count == 1


class TestConcurrentPurchases:

    async def test_more_buyers_than_supply(self, orchestrator, fake_ledger, inventory, make_listing, seller_address):
        supply, buyers = 2, 6
        listing_id, _ = await make_listing(supply=supply)
        wallets = [new_address() for _ in range(buyers)]
        for i, wallet in enumerate(wallets):
            pay(fake_ledger, f"sig-{i}", wallet, seller_address, 0.5)

        results = await asyncio.gather(
            *(orchestrator.purchase(listing_id, f"sig-{i}", w) for i, w in enumerate(wallets))
        )

        statuses = [r.status for r in results]
        assert statuses.count(PurchaseStatus.FULFILLED) == supply
        assert statuses.count(PurchaseStatus.OUT_OF_STOCK) == buyers - supply
        delivered = [r.mint_address for r in results if r.status == PurchaseStatus.FULFILLED]
        assert len(set(delivered)) == supply
        listing = await inventory.get_listing(listing_id)
        assert listing.sold_count == supply
        assert listing.active is False
