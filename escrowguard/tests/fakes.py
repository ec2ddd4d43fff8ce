"""In-memory stand-ins for the payment processor and the AI provider."""

from typing import Any

from escrowguard.common.exceptions import CapabilityUnavailableError, PaymentError
from escrowguard.integrations.ai_client import MediationProvider
from escrowguard.integrations.stripe_client import PaymentProcessor


def make_options(a=(90, 10), b=(75, 25), c=(40, 60)) -> list[dict[str, Any]]:
    return [
        {
            "label": label,
            "title": f"Option {label}",
            "customerRefundPercent": split[0],
            "vendorPaymentPercent": split[1],
            "reasoning": f"Reasoning for option {label}",
            "keyFactors": ["photos", "timeline"],
            "isRecommended": label == "B",
        }
        for label, split in (("A", a), ("B", b), ("C", c))
    ]


class FakeMediationProvider(MediationProvider):
    def __init__(self):
        self.options: list[dict[str, Any]] = make_options()
        self.decision: dict[str, Any] = {
            "customerRefundPercent": 40,
            "vendorPaymentPercent": 60,
            "decisionSummary": "Vendor keeps 60% for the work delivered",
            "fullReasoning": "Most of the booked work was done; two rooms were skipped.",
            "keyFactors": ["completed rooms", "missing balcony"],
        }
        self.analysis: dict[str, Any] = {
            "evidenceAnalysis": {"customerEvidenceStrength": "strong", "keyFindings": ["balcony photo"]},
            "descriptionAnalysis": {"consistency": "consistent"},
            "behaviorAnalysis": {"customerGoodFaith": True, "vendorGoodFaith": True},
            "overallAssessment": {"summary": "Two rooms were skipped", "favoredParty": "customer"},
            "model": "fake-model",
            "usage": {"prompt_tokens": 812, "completion_tokens": 164},
        }
        self.fail_analysis = False
        self.fail_options = False
        self.fail_decision = False
        self.analysis_calls = 0
        self.option_calls = 0
        self.decision_calls = 0
        self.last_evidence: dict[str, Any] | None = None

    async def propose_options(self, evidence):
        self.option_calls += 1
        self.last_evidence = evidence
        if self.fail_options:
            raise CapabilityUnavailableError("mediation", "provider timed out")
        return {"options": self.options}

    async def analyze(self, evidence):
        self.analysis_calls += 1
        if self.fail_analysis:
            raise CapabilityUnavailableError("analysis", "provider timed out")
        return self.analysis

    async def issue_decision(self, evidence):
        self.decision_calls += 1
        self.last_evidence = evidence
        if self.fail_decision:
            raise CapabilityUnavailableError("arbitration", "provider timed out")
        return self.decision


class FakePaymentProcessor(PaymentProcessor):
    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_release = False
        self.fail_charge = False
        self.charge_status = "succeeded"

    async def hold_funds(self, amount, currency, customer_ref, idempotency_key, metadata=None):
        self.calls.append(("hold_funds", idempotency_key, amount))
        return {"id": f"pi_hold_{len(self.calls)}", "status": "succeeded"}

    async def release_funds(self, payment_ref, customer_amount, vendor_amount, currency, vendor_account, idempotency_key):
        self.calls.append(("release_funds", idempotency_key, customer_amount, vendor_amount))
        if self.fail_release:
            raise PaymentError("release_funds", "processor unavailable")
        return {
            "refund_id": "re_test" if customer_amount > 0 else None,
            "transfer_id": "tr_test" if vendor_amount > 0 else None,
        }

    async def refund(self, payment_ref, amount, idempotency_key, reason=""):
        self.calls.append(("refund", idempotency_key, amount))
        return {"id": "re_full", "status": "succeeded"}

    async def charge_saved_method(self, customer_ref, payment_method, amount, currency, idempotency_key, metadata=None):
        self.calls.append(("charge_saved_method", idempotency_key, amount))
        if self.fail_charge:
            raise PaymentError("charge_saved_method", "card declined")
        return {"id": f"pi_fee_{len(self.calls)}", "status": self.charge_status, "metadata": metadata or {}}

    def calls_for(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]
