from decimal import Decimal

import pytest

from escrowguard.common.enums import EscrowStatus
from escrowguard.common.exceptions import BadRequestError, ConflictError, ValidationError
from escrowguard.common.money import split_by_percent, to_cents, to_money
from escrowguard.core.escrow.ledger import assert_balanced
from escrowguard.db.models.escrow import EscrowTransaction


@pytest.mark.asyncio
async def test_create_hold_records_balanced_escrow(db_session, ledger, processor, booking):
    escrow = await ledger.create_hold(db_session, booking, Decimal("200"), Decimal("20"))

    assert escrow.status == EscrowStatus.HELD.value
    assert escrow.original_amount == Decimal("200.00")
    assert escrow.vendor_amount == Decimal("180.00")
    assert escrow.stripe_payment_intent_id == "pi_hold_1"
    assert processor.calls_for("hold_funds")[0][1] == f"escrow-hold:{booking.id}"
    assert_balanced(escrow)


@pytest.mark.asyncio
async def test_create_hold_rejects_fee_above_amount(db_session, ledger, booking):
    with pytest.raises(ValidationError):
        await ledger.create_hold(db_session, booking, Decimal("50"), Decimal("60"))


@pytest.mark.asyncio
async def test_release_pays_vendor_share(db_session, ledger, processor, escrow):
    await ledger.release(db_session, escrow)

    assert escrow.status == EscrowStatus.RELEASED.value
    _, key, customer_share, vendor_share = processor.calls_for("release_funds")[0]
    assert key == f"escrow-release:{escrow.id}"
    assert customer_share == Decimal("0.00")
    assert vendor_share == Decimal("180.00")


@pytest.mark.asyncio
async def test_refund_returns_everything_to_customer(db_session, ledger, escrow):
    await ledger.refund(db_session, escrow, reason="booking cancelled")

    assert escrow.status == EscrowStatus.REFUNDED.value
    assert escrow.refunded_amount == Decimal("200.00")
    assert escrow.amount == Decimal("0.00")
    assert_balanced(escrow)


@pytest.mark.asyncio
async def test_disputed_escrow_refuses_normal_release_and_refund(db_session, ledger, processor, escrow):
    ledger.mark_disputed(escrow)

    with pytest.raises(BadRequestError):
        await ledger.release(db_session, escrow)
    with pytest.raises(BadRequestError):
        await ledger.refund(db_session, escrow)
    assert escrow.status == EscrowStatus.DISPUTED.value
    assert processor.calls_for("release_funds") == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "customer_share, vendor_share, expected",
    [
        ("0.00", "200.00", EscrowStatus.RELEASED),
        ("200.00", "0.00", EscrowStatus.REFUNDED),
        ("150.00", "50.00", EscrowStatus.PARTIALLY_RELEASED),
    ],
)
async def test_dispute_split_final_status(ledger, escrow, customer_share, vendor_share, expected):
    ledger.mark_disputed(escrow)

    assert ledger.apply_dispute_split(escrow, Decimal(customer_share), Decimal(vendor_share)) == expected
    assert escrow.status == expected.value
    assert escrow.platform_fee == Decimal("0.00")
    assert escrow.refunded_amount == Decimal(customer_share)
    assert escrow.vendor_amount == Decimal(vendor_share)
    assert_balanced(escrow)


@pytest.mark.asyncio
async def test_dispute_split_must_cover_original_amount(ledger, escrow):
    ledger.mark_disputed(escrow)
    with pytest.raises(ValidationError):
        ledger.apply_dispute_split(escrow, Decimal("100.00"), Decimal("80.00"))
    assert escrow.status == EscrowStatus.DISPUTED.value


@pytest.mark.asyncio
async def test_dispute_split_requires_disputed_escrow(ledger, escrow):
    with pytest.raises(ConflictError):
        ledger.apply_dispute_split(escrow, Decimal("100.00"), Decimal("100.00"))


def test_assert_balanced_detects_drift():
    escrow = EscrowTransaction(
        original_amount=Decimal("200.00"),
        amount=Decimal("200.00"),
        refunded_amount=Decimal("0.00"),
        platform_fee=Decimal("20.00"),
        vendor_amount=Decimal("170.00"),
    )
    with pytest.raises(ValueError):
        assert_balanced(escrow)


def test_split_by_percent_gives_remainder_to_vendor():
    assert split_by_percent(Decimal("200"), 75) == (Decimal("150.00"), Decimal("50.00"))
    assert split_by_percent(Decimal("200"), 33.33) == (Decimal("66.66"), Decimal("133.34"))
    assert split_by_percent(Decimal("99.99"), 50) == (Decimal("50.00"), Decimal("49.99"))


def test_money_helpers():
    assert to_money("12.345") == Decimal("12.35")
    assert to_cents(Decimal("10.5")) == 1050
    with pytest.raises(ValueError):
        to_money("ten")
