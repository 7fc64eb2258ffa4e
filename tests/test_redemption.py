import asyncio

import pytest
from sqlalchemy.exc import SQLAlchemyError

from wakatv.infra import timings
from wakatv.model.ledger import Ledger
from wakatv.redemption import Outcome, RedemptionRequest


async def ledger_entries(harness):
    async with harness.ledger() as ledger:
        return await ledger.list_recent()


async def test_complete_redemption(harness, notifier):
    await harness.upload(["A", "B", "C"])

    res = await harness.redeem("U1@Example.com ", quantity=2, reference="r1")

    assert res.outcome == Outcome.COMPLETE
    assert res.delivered == 2
    assert res.delivered_ok
    assert res.referral_code and len(res.referral_code) == 6

    assert len(notifier.sent) == 1
    to, codes = notifier.sent[0]
    assert to == "u1@example.com"
    assert len(codes) == 2

    entries = await ledger_entries(harness)
    assert len(entries) == 1
    assert entries[0]["email"] == "u1@example.com"
    assert entries[0]["quantity"] == 2
    assert entries[0]["reference"] == "r1"
    assert sorted(entries[0]["codes"]) == sorted(codes)

    remaining = await harness.unused()
    assert len(remaining) == 1
    assert remaining[0] not in codes


async def test_insufficient_inventory_changes_nothing(harness, notifier):
    await harness.upload(["A", "B", "C"])
    assert (await harness.redeem("u1@example.com", 2)).outcome == \
        Outcome.COMPLETE
    before = await harness.unused()

    res = await harness.redeem("u2@example.com", 2, reference="r2")

    assert res.outcome == Outcome.REJECTED_INSUFFICIENT_INVENTORY
    assert res.delivered == 0
    assert not res.delivered_ok
    assert await harness.unused() == before
    assert len(notifier.sent) == 1
    assert len(await ledger_entries(harness)) == 1

    # the reference is free again once stock arrives
    await harness.upload(["D", "E"])
    retry = await harness.redeem("u2@example.com", 2, reference="r2")
    assert retry.outcome == Outcome.COMPLETE
    assert not retry.idempotent


@pytest.mark.parametrize("email,quantity,reference", [
    ("", 1, "r"),
    (12345, 1, "r"),
    (None, 1, "r"),
    ("not-an-email", 1, "r"),
    ("u@example.com", 0, "r"),
    ("u@example.com", -3, "r"),
    ("u@example.com", True, "r"),
    ("u@example.com", "2", "r"),
    ("u@example.com", None, "r"),
    ("u@example.com", 21, "r"),
    ("u@example.com", 1, ""),
    ("u@example.com", 1, "   "),
    ("u@example.com", 1, None),
])
async def test_invalid_requests_touch_nothing(
    harness, notifier, email, quantity, reference
):
    await harness.upload(["A", "B"])
    async with harness.workflow() as wf:
        res = await wf.redeem(RedemptionRequest(
            email=email, quantity=quantity, reference=reference
        ))

    assert res.outcome == Outcome.INVALID_REQUEST
    assert res.detail
    assert notifier.sent == []
    assert await harness.unused() == ["A", "B"]
    assert await ledger_entries(harness) == []


async def test_max_quantity_is_configurable(harness):
    await harness.upload(["A", "B", "C"])
    res = await harness.redeem("u@example.com", 3, max_quantity=2)
    assert res.outcome == Outcome.INVALID_REQUEST
    assert "2" in res.detail


async def test_delivery_failure_releases_claimed_codes(harness, notifier):
    await harness.upload(["A", "B", "C"])
    notifier.fail = True

    res = await harness.redeem("u@example.com", 2, reference="r-fail")

    assert res.outcome == Outcome.FAILED_DELIVERY
    assert res.delivered == 0
    assert await harness.unused() == ["A", "B", "C"]
    assert await ledger_entries(harness) == []

    # nothing was logged, so the same reference can be tried again
    notifier.fail = False
    retry = await harness.redeem("u@example.com", 2, reference="r-fail")
    assert retry.outcome == Outcome.COMPLETE


async def test_notifier_exception_counts_as_delivery_failure(
    harness, notifier
):
    await harness.upload(["A", "B"])
    notifier.raise_error = ConnectionRefusedError("smtp down")

    res = await harness.redeem("u@example.com", 1)

    assert res.outcome == Outcome.FAILED_DELIVERY
    assert "smtp down" in res.detail
    assert await harness.unused() == ["A", "B"]


async def test_notifier_timeout_releases_codes(harness, notifier):
    await harness.upload(["A", "B"])
    notifier.delay = 1.0

    res = await harness.redeem("u@example.com", 2, notify_timeout=0.05)

    assert res.outcome == Outcome.FAILED_DELIVERY
    assert "timed out" in res.detail
    assert await harness.unused() == ["A", "B"]
    assert await ledger_entries(harness) == []


async def test_ledger_failure_keeps_codes_delivered(
    harness, notifier, monkeypatch
):
    await harness.upload(["A", "B", "C"])

    async def broken_append(self, *args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(Ledger, "append", broken_append)

    res = await harness.redeem("u@example.com", 2, referral_code="NOPE99")

    assert res.outcome == Outcome.FAILED_PERSISTENCE
    assert res.delivered == 2
    assert res.delivered_ok
    assert len(notifier.delivered_codes()) == 2
    # delivered codes are never put back
    assert len(await harness.unused()) == 1


async def test_repeated_reference_is_not_redeemed_twice(harness, notifier):
    await harness.upload(["A", "B", "C", "D"])

    first = await harness.redeem("u@example.com", 2, reference="order-7")
    again = await harness.redeem("u@example.com", 2, reference="order-7")

    assert first.outcome == Outcome.COMPLETE
    assert again.outcome == Outcome.COMPLETE
    assert again.idempotent
    assert again.delivered == 2
    assert again.referral_code == first.referral_code
    assert len(notifier.sent) == 1
    assert len(await harness.unused()) == 2
    assert len(await ledger_entries(harness)) == 1


async def test_duplicate_during_redemption_is_not_success(harness, notifier):
    await harness.upload(["A", "B"])
    notifier.delay = 0.2
    notifier.fail = True

    first = asyncio.create_task(
        harness.redeem("u@example.com", 1, reference="order-9")
    )
    await notifier.delivering.wait()
    dup = await harness.redeem("u@example.com", 1, reference="order-9")
    first = await first

    assert first.outcome == Outcome.FAILED_DELIVERY
    assert dup.outcome == Outcome.IN_PROGRESS
    assert dup.idempotent
    assert dup.delivered == 0
    assert not dup.delivered_ok
    assert dup.detail == "redemption in progress"
    assert await harness.unused() == ["A", "B"]


async def test_concurrent_redemptions_share_no_code(harness, notifier):
    n = 8
    await harness.upload([f"CODE{i}" for i in range(n)])

    results = await asyncio.gather(*(
        harness.redeem(f"user{i}@example.com", 1, reference=f"c{i}")
        for i in range(n)
    ))

    assert all(r.outcome == Outcome.COMPLETE for r in results)
    delivered = notifier.delivered_codes()
    assert len(delivered) == n
    assert len(set(delivered)) == n
    assert await harness.unused() == []

    late = await harness.redeem("late@example.com", 1)
    assert late.outcome == Outcome.REJECTED_INSUFFICIENT_INVENTORY


async def test_quantity_above_stock_is_rejected_whole(harness, notifier):
    await harness.upload(["A", "B", "C"])
    res = await harness.redeem("u@example.com", 4)
    assert res.outcome == Outcome.REJECTED_INSUFFICIENT_INVENTORY
    assert notifier.sent == []
    assert await harness.unused() == ["A", "B", "C"]


async def test_steps_are_timed(harness):
    timings.reset()
    await harness.upload(["A"])
    await harness.redeem("u@example.com", 1)
    kinds = {t["kind"] for t in timings.snapshot()}
    assert {"inventory.claim", "notifier.deliver", "ledger.append"} <= kinds
    timings.reset()


def test_request_from_payload_amount_means_one_code():
    # `amount` is the price paid by older clients, never a code count
    req = RedemptionRequest.from_payload({
        "email": "a@b.co", "amount": 5, "reference": 42,
        "referral_code": "abc123",
    })
    assert req.quantity == 1
    assert req.reference == "42"
    assert req.referral_code == "abc123"

    req = RedemptionRequest.from_payload({"quantity": " 2 ", "amount": 9})
    assert req.quantity == 2
    assert req.email == ""
    assert req.reference == ""
    assert req.referral_code is None

    assert RedemptionRequest.from_payload({}).quantity is None


def test_request_from_payload_drops_non_string_fields():
    req = RedemptionRequest.from_payload({
        "email": 12345, "quantity": 1, "reference": "r",
        "referralCode": 234567,
    })
    assert req.email == ""
    assert req.referral_code is None


async def test_non_string_email_in_payload_is_invalid(harness, notifier):
    await harness.upload(["A"])
    async with harness.workflow() as wf:
        res = await wf.redeem(RedemptionRequest.from_payload(
            {"email": 12345, "quantity": 1, "reference": "r"}
        ))
    assert res.outcome == Outcome.INVALID_REQUEST
    assert notifier.sent == []
    assert await harness.unused() == ["A"]


def test_request_from_payload_keeps_bad_quantity_for_validation():
    req = RedemptionRequest.from_payload({"quantity": "two"})
    assert req.quantity == "two"
