import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from escrowguard.common.enums import DisputePhase, FeeReason
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.state_machine import transition
from escrowguard.db.models.fee import DisputeFeeCharge


def _task_names(enqueued) -> list[str]:
    return [name for name, _ in enqueued]


# ---------- Dispute lifecycle ----------


@pytest.mark.asyncio
async def test_open_dispute(client, customer_headers, booking, escrow, enqueued):
    resp = await client.post(
        "/api/v1/disputes",
        json={"booking_id": str(booking.id), "reason": "no_show", "evidence": ["chat-log.txt"]},
        headers=customer_headers,
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["phase"] == "in_negotiation"
    assert data["opened_by"] == "customer"
    assert data["version"] == 1
    assert "propose_offer" in data["available_actions"]
    assert [(f["reason"], f["party"]) for f in data["fees"]] == [("dispute_opened", "customer")]
    # Money is serialized as strings
    assert isinstance(data["fees"][0]["amount"], str)
    assert Decimal(data["fees"][0]["amount"]) == Decimal("10.00")

    names = _task_names(enqueued)
    assert "collect_fee" in names
    assert "send_dispute_notification" in names


@pytest.mark.asyncio
async def test_negotiated_settlement_over_http(client, customer_headers, vendor_headers, dispute, enqueued):
    resp = await client.post(
        f"/api/v1/disputes/{dispute.id}/offers",
        json={"customer_amount": "120.00", "vendor_amount": "80.00", "message": "Half the rooms"},
        headers=vendor_headers,
    )
    assert resp.status_code == 201
    offer = resp.json()
    assert offer["proposed_by"] == "vendor"

    detail = (await client.get(f"/api/v1/disputes/{dispute.id}", headers=customer_headers)).json()
    assert "accept_offer" in detail["available_actions"]

    resp = await client.post(
        f"/api/v1/disputes/{dispute.id}/offers/{offer['id']}/accept", headers=customer_headers
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["phase"] == "resolved"
    assert data["resolution_source"] == "negotiation"
    assert Decimal(data["customer_amount"]) == Decimal("120.00")
    assert data["settlement"]["status"] == "pending"
    assert data["available_actions"] == []
    assert "execute_settlement" in _task_names(enqueued)


@pytest.mark.asyncio
async def test_offer_must_cover_the_escrow(client, vendor_headers, dispute):
    resp = await client.post(
        f"/api/v1/disputes/{dispute.id}/offers",
        json={"customer_amount": "150.00", "vendor_amount": "100.00"},
        headers=vendor_headers,
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_accepting_own_offer_is_forbidden(client, vendor_headers, dispute):
    offer = (
        await client.post(
            f"/api/v1/disputes/{dispute.id}/offers",
            json={"customer_amount": "100.00", "vendor_amount": "100.00"},
            headers=vendor_headers,
        )
    ).json()
    resp = await client.post(f"/api/v1/disputes/{dispute.id}/offers/{offer['id']}/accept", headers=vendor_headers)
    assert resp.status_code == 403


# ---------- Access ----------


@pytest.mark.asyncio
async def test_strangers_cannot_see_a_dispute(client, stranger_headers, admin_headers, dispute):
    resp = await client.get(f"/api/v1/disputes/{dispute.id}", headers=stranger_headers)
    assert resp.status_code == 403

    resp = await client.get(f"/api/v1/disputes/{dispute.id}", headers=admin_headers)
    assert resp.status_code == 200
    # Operators observe; they have no party actions
    assert resp.json()["available_actions"] == []


@pytest.mark.asyncio
async def test_list_disputes(client, customer_headers, stranger_headers, dispute):
    resp = await client.get("/api/v1/disputes", params={"status": "active"}, headers=customer_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(dispute.id)

    resp = await client.get("/api/v1/disputes", params={"status": "resolved"}, headers=customer_headers)
    assert resp.json()["total"] == 0

    resp = await client.get("/api/v1/disputes", headers=stranger_headers)
    assert resp.json()["total"] == 0


@pytest.mark.asyncio
async def test_flagged_disputes_are_for_operators(client, db_session, customer_headers, admin_headers, dispute):
    dispute.needs_operator = True
    await db_session.flush()

    resp = await client.get("/api/v1/disputes/flagged", headers=customer_headers)
    assert resp.status_code == 403

    resp = await client.get("/api/v1/disputes/flagged", headers=admin_headers)
    assert resp.status_code == 200
    assert [d["id"] for d in resp.json()] == [str(dispute.id)]


@pytest.mark.asyncio
async def test_missing_token_is_rejected(client, dispute):
    resp = await client.get(f"/api/v1/disputes/{dispute.id}")
    assert resp.status_code == 422

    resp = await client.get(f"/api/v1/disputes/{dispute.id}", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 403


# ---------- Fees ----------


async def _opening_fee(db_session, dispute) -> DisputeFeeCharge:
    result = await db_session.execute(
        select(DisputeFeeCharge).where(
            DisputeFeeCharge.dispute_id == dispute.id,
            DisputeFeeCharge.reason == FeeReason.DISPUTE_OPENED.value,
        )
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_operator_waives_a_fee(client, db_session, admin_headers, customer_headers, dispute):
    charge = await _opening_fee(db_session, dispute)
    url = f"/api/v1/disputes/{dispute.id}/fees/{charge.id}/waive"

    resp = await client.post(url, json={"note": "first dispute"}, headers=customer_headers)
    assert resp.status_code == 403

    resp = await client.post(url, json={"note": "first dispute"}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "waived"


@pytest.mark.asyncio
async def test_stripe_webhook_confirms_fee(client, db_session, dispute, enqueued):
    charge = await _opening_fee(db_session, dispute)
    event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_fee_hook", "metadata": {"fee_charge_id": str(charge.id)}}},
    }
    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps(event))

    assert resp.status_code == 200
    assert resp.json() == {"status": "received", "fee_charge_id": str(charge.id), "fee_status": "charged"}
    assert charge.stripe_payment_intent_id == "pi_fee_hook"
    assert ("send_dispute_notification", (str(dispute.id), "fee_charged", {"amount": "10.00", "currency": "CHF"})) in enqueued


@pytest.mark.asyncio
async def test_stripe_webhook_ignores_other_events(client):
    resp = await client.post("/api/v1/webhooks/stripe", content=json.dumps({"type": "charge.refunded"}))
    assert resp.json() == {"status": "ignored", "type": "charge.refunded"}


# ---------- Escrow and health ----------


@pytest.mark.asyncio
async def test_booking_escrow(client, customer_headers, stranger_headers, booking, dispute):
    resp = await client.get(f"/api/v1/bookings/{booking.id}/escrow", headers=customer_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "disputed"
    assert Decimal(data["original_amount"]) == Decimal("200.00")

    resp = await client.get(f"/api/v1/bookings/{booking.id}/escrow", headers=stranger_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert "X-Request-Duration-Ms" in resp.headers


@pytest.mark.asyncio
async def test_detail_shows_the_case_analysis(client, db_session, mediation, customer_headers, dispute, t0):
    detail = (await client.get(f"/api/v1/disputes/{dispute.id}", headers=customer_headers)).json()
    assert detail["analysis"] is None

    await transition(
        db_session, dispute, DisputePhase.IN_NEGOTIATION, DisputePhase.AI_MEDIATION, action="deadline_expired", now=t0
    )
    await mediation.generate_options(db_session, dispute.id, SideEffects(), now=t0)

    detail = (await client.get(f"/api/v1/disputes/{dispute.id}", headers=customer_headers)).json()
    assert detail["analysis"]["overall_assessment"]["favoredParty"] == "customer"
    assert detail["analysis"]["ai_model"] == "fake-model"
    assert len(detail["options"]) == 3
