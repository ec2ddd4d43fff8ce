from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from escrowguard.common.dates import ensure_utc, utcnow
from escrowguard.common.enums import DisputePhase, EscrowStatus, FeeChargeStatus, FeeReason, Party, SettlementStatus
from escrowguard.common.exceptions import BadRequestError
from escrowguard.config import settings
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.escrow.fees import next_retry_at
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.settlement import SettlementIntent


@pytest.fixture
async def intent(db_session, negotiation, dispute, customer, vendor, t0):
    offer = await negotiation.propose_offer(
        db_session, dispute.id, vendor, Decimal("180.00"), Decimal("20.00"), SideEffects(), now=t0
    )
    await negotiation.accept_offer(db_session, dispute.id, offer.id, customer, SideEffects(), now=t0)
    return (await db_session.execute(select(SettlementIntent))).scalar_one()


@pytest.fixture
async def opening_fee(db_session, dispute):
    result = await db_session.execute(
        select(DisputeFeeCharge).where(
            DisputeFeeCharge.dispute_id == dispute.id,
            DisputeFeeCharge.reason == FeeReason.DISPUTE_OPENED.value,
        )
    )
    return result.scalar_one()


# ---------- Settlement ----------


@pytest.mark.asyncio
async def test_settlement_moves_funds_once(db_session, executor, processor, intent, dispute, escrow):
    assert escrow.status == EscrowStatus.DISPUTED.value
    done = await executor.execute_settlement(db_session, intent.id)

    assert done.status == SettlementStatus.COMPLETED.value
    assert done.refund_reference == "re_test"
    assert done.transfer_reference == "tr_test"
    assert dispute.settled_at is not None
    assert escrow.status == EscrowStatus.PARTIALLY_RELEASED.value
    assert escrow.refunded_amount == Decimal("180.00")
    assert escrow.vendor_amount == Decimal("20.00")
    assert escrow.platform_fee == Decimal("0.00")

    (_, key, customer_share, vendor_share), = processor.calls_for("release_funds")
    assert key == f"settlement:{dispute.id}"
    assert (customer_share, vendor_share) == (Decimal("180.00"), Decimal("20.00"))

    await executor.execute_settlement(db_session, intent.id)
    assert len(processor.calls_for("release_funds")) == 1


@pytest.mark.asyncio
async def test_processor_failure_is_retried_with_the_same_key(db_session, executor, processor, intent, dispute, escrow):
    processor.fail_release = True
    failed = await executor.execute_settlement(db_session, intent.id)

    assert failed.status == SettlementStatus.PENDING.value
    assert failed.attempts == 1
    assert "processor unavailable" in failed.last_error
    assert dispute.phase == DisputePhase.RESOLVED.value
    assert escrow.status == EscrowStatus.DISPUTED.value

    processor.fail_release = False
    done = await executor.execute_settlement(db_session, intent.id)

    assert done.status == SettlementStatus.COMPLETED.value
    assert done.attempts == 2
    assert done.last_error is None
    keys = {call[1] for call in processor.calls_for("release_funds")}
    assert keys == {f"settlement:{dispute.id}"}


@pytest.mark.asyncio
async def test_settlement_gives_up_after_max_attempts(
    db_session, monkeypatch, executor, processor, intent, dispute, escrow
):
    monkeypatch.setattr(settings, "SETTLEMENT_MAX_ATTEMPTS", 2)
    processor.fail_release = True

    await executor.execute_settlement(db_session, intent.id)
    failed = await executor.execute_settlement(db_session, intent.id)

    assert failed.status == SettlementStatus.FAILED.value
    assert dispute.needs_operator is True
    assert "Settlement failed" in dispute.operator_note
    # The ledger never claims funds that did not move
    assert escrow.status == EscrowStatus.DISPUTED.value
    assert escrow.refunded_amount == Decimal("0.00")
    assert escrow.vendor_amount == Decimal("180.00")
    assert escrow.platform_fee == Decimal("20.00")


@pytest.mark.asyncio
async def test_retry_sweep_leaves_fresh_intents_alone(db_session, executor, intent):
    assert await executor.pending_settlements(db_session, grace_minutes=5) == []

    later = utcnow() + timedelta(minutes=10)
    assert [i.id for i in await executor.pending_settlements(db_session, grace_minutes=5, now=later)] == [intent.id]


# ---------- Fees ----------


def test_fee_retry_schedule():
    now = utcnow()
    assert next_retry_at(1, now) == now + timedelta(hours=1)
    assert next_retry_at(3, now) == now + timedelta(hours=72)
    assert next_retry_at(4, now) is None


@pytest.mark.asyncio
async def test_fee_is_assessed_once_per_reason(db_session, fees, dispute, opening_fee):
    again = await fees.assess(db_session, dispute, Party.VENDOR, FeeReason.DISPUTE_OPENED)
    assert again.id == opening_fee.id
    assert again.party == "customer"


@pytest.mark.asyncio
async def test_fee_collection_succeeds(db_session, fees, processor, opening_fee, t0):
    charge = await fees.collect(db_session, opening_fee.id, now=t0)

    assert charge.status == FeeChargeStatus.CHARGED.value
    assert charge.attempts == 1
    assert charge.stripe_payment_intent_id.startswith("pi_fee_")
    assert processor.calls_for("charge_saved_method")[0][1] == f"dispute-fee:{charge.id}:1"


@pytest.mark.asyncio
async def test_failed_fee_is_scheduled_for_dunning(db_session, fees, processor, dispute, opening_fee, t0):
    processor.fail_charge = True
    charge = await fees.collect(db_session, opening_fee.id, now=t0)

    assert charge.status == FeeChargeStatus.FAILED.value
    assert ensure_utc(charge.next_attempt_at) == t0 + timedelta(hours=1)
    assert "card declined" in charge.last_error
    # The dispute itself is unaffected
    assert dispute.phase == DisputePhase.IN_NEGOTIATION.value

    assert await fees.due_for_retry(db_session, now=t0 + timedelta(minutes=30)) == []
    due = await fees.due_for_retry(db_session, now=t0 + timedelta(hours=2))
    assert [c.id for c in due] == [charge.id]

    processor.fail_charge = False
    charge = await fees.collect(db_session, charge.id, now=t0 + timedelta(hours=2))
    assert charge.status == FeeChargeStatus.CHARGED.value
    assert charge.attempts == 2


@pytest.mark.asyncio
async def test_processing_charge_waits_for_the_webhook(db_session, fees, processor, opening_fee, t0):
    processor.charge_status = "processing"
    charge = await fees.collect(db_session, opening_fee.id, now=t0)
    assert charge.status == FeeChargeStatus.PENDING.value

    await fees.collect(db_session, opening_fee.id, now=t0)
    assert len(processor.calls_for("charge_saved_method")) == 1

    event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": charge.stripe_payment_intent_id, "metadata": {"fee_charge_id": str(charge.id)}}},
    }
    confirmed = await fees.apply_processor_event(db_session, event)
    assert confirmed.status == FeeChargeStatus.CHARGED.value


@pytest.mark.asyncio
async def test_failed_payment_event_marks_fee_failed(db_session, fees, opening_fee):
    event = {
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": "pi_fee_x",
                "metadata": {"fee_charge_id": str(opening_fee.id)},
                "last_payment_error": {"message": "insufficient funds"},
            }
        },
    }
    charge = await fees.apply_processor_event(db_session, event)

    assert charge.status == FeeChargeStatus.FAILED.value
    assert charge.last_error == "insufficient funds"
    assert charge.next_attempt_at is not None


@pytest.mark.asyncio
async def test_events_for_unknown_charges_are_ignored(db_session, fees):
    event = {"type": "payment_intent.succeeded", "data": {"object": {"metadata": {"fee_charge_id": "not-a-uuid"}}}}
    assert await fees.apply_processor_event(db_session, event) is None


@pytest.mark.asyncio
async def test_waive_fee(db_session, fees, opening_fee, t0):
    waived = await fees.waive(db_session, opening_fee.id, "goodwill")
    assert waived.status == FeeChargeStatus.WAIVED.value

    # A waived fee is never collected
    await fees.collect(db_session, opening_fee.id, now=t0)
    assert waived.status == FeeChargeStatus.WAIVED.value


@pytest.mark.asyncio
async def test_collected_fee_cannot_be_waived(db_session, fees, opening_fee, t0):
    await fees.collect(db_session, opening_fee.id, now=t0)
    with pytest.raises(BadRequestError):
        await fees.waive(db_session, opening_fee.id, "too late")
