"""AI mediation / arbitration client.

Uses an OpenAI-compatible API when a real key is configured, otherwise
falls back to deterministic mock proposals for development.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import httpx

from escrowguard.common.exceptions import CapabilityUnavailableError
from escrowguard.config import settings
from escrowguard.integrations.base import BaseIntegration


def _is_mock() -> bool:
    return settings.AI_API_KEY.startswith("mock_")


class MediationProvider(ABC):
    """Evidence in, structured proposal out.

    Implementations return the raw payload; callers validate it. Any failure
    to produce a payload is reported as ``CapabilityUnavailableError``.
    """

    @abstractmethod
    async def propose_options(self, evidence: dict[str, Any]) -> dict[str, Any]:
        """Return ``{"options": [...]}`` with three labelled proposals."""
        ...

    @abstractmethod
    async def analyze(self, evidence: dict[str, Any]) -> dict[str, Any]:
        """Return the four analysis sections plus ``model`` and ``usage`` metadata."""
        ...

    @abstractmethod
    async def issue_decision(self, evidence: dict[str, Any]) -> dict[str, Any]:
        """Return a single binding split with its reasoning."""
        ...


MEDIATION_SYSTEM_PROMPT = (
    "You are an impartial dispute resolution specialist for a services marketplace. "
    "Generate fair resolution options that both the customer and the vendor might accept. "
    "Always provide exactly 3 options with different approaches. Respond in valid JSON."
)

ANALYSIS_SYSTEM_PROMPT = (
    "You are an impartial dispute analyst for a services marketplace. "
    "Assess the written accounts against the evidence and how each party has behaved so far. "
    "Do not propose a resolution. Respond in valid JSON."
)

ARBITRATION_SYSTEM_PROMPT = (
    "You are rendering a binding decision as an impartial dispute resolution specialist. "
    "Both parties agreed to binding AI arbitration when using the platform. "
    "Be fair, thorough, and explain your reasoning clearly. Respond in valid JSON."
)


def build_options_prompt(evidence: dict[str, Any]) -> str:
    return (
        "Generate 3 fair resolution options for this dispute.\n\n"
        f"## Dispute\n{json.dumps(evidence, default=str, indent=2)}\n\n"
        "## Requirements\n"
        "1. Option A: Evidence-based (favor the party with stronger evidence)\n"
        "2. Option B: Compromise (balanced split considering both perspectives)\n"
        "3. Option C: Platform policy-based\n\n"
        "customerRefundPercent + vendorPaymentPercent must equal 100 for every option.\n\n"
        "## Response Format\n"
        '{"options": [{"label": "A", "title": str, "customerRefundPercent": number, '
        '"vendorPaymentPercent": number, "reasoning": str, "keyFactors": [str], '
        '"isRecommended": bool}, ...]}\n'
        "Mark exactly ONE option as isRecommended."
    )


def build_analysis_prompt(evidence: dict[str, Any]) -> str:
    return (
        "Analyze this dispute before resolution options are drafted.\n\n"
        f"## Dispute\n{json.dumps(evidence, default=str, indent=2)}\n\n"
        "## Response Format\n"
        '{"evidenceAnalysis": {"customerEvidenceStrength": "weak|moderate|strong", '
        '"vendorEvidenceStrength": "weak|moderate|strong", "keyFindings": [str]}, '
        '"descriptionAnalysis": {"consistency": str, "credibilityNotes": [str]}, '
        '"behaviorAnalysis": {"customerGoodFaith": bool, "vendorGoodFaith": bool, "notes": [str]}, '
        '"overallAssessment": {"summary": str, "favoredParty": "customer|vendor|neither", '
        '"confidence": number}}'
    )


def build_decision_prompt(evidence: dict[str, Any]) -> str:
    return (
        "Render a FINAL BINDING DECISION for this dispute.\n\n"
        f"## Dispute, negotiation and mediation history\n"
        f"{json.dumps(evidence, default=str, indent=2)}\n\n"
        "Decide how to split the escrowed amount. The percentages MUST sum to 100.\n\n"
        "## Response Format\n"
        '{"customerRefundPercent": number, "vendorPaymentPercent": number, '
        '"decisionSummary": str, "fullReasoning": str, "keyFactors": [str]}'
    )


class AIClient(BaseIntegration, MediationProvider):
    """Mediation provider backed by an OpenAI-compatible API, with mock fallback."""

    def __init__(self) -> None:
        super().__init__("ai")
        self._base_url = settings.AI_BASE_URL
        self._model = settings.AI_MODEL
        self._timeout = settings.AI_REQUEST_TIMEOUT_SECONDS

    async def health_check(self) -> bool:
        if _is_mock():
            self.logger.info("AI client health check: OK (mock)")
            return True
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(
                    f"{self._base_url}/models",
                    headers={"Authorization": f"Bearer {settings.AI_API_KEY}"},
                )
                return resp.status_code == 200
        except Exception as e:
            self.logger.error("AI health check failed: %s", e)
            return False

    async def _chat_json(self, system: str, user: str, temperature: float) -> dict[str, Any]:
        result, _ = await self._chat_json_with_usage(system, user, temperature)
        return result

    async def _chat_json_with_usage(
        self, system: str, user: str, temperature: float
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {settings.AI_API_KEY}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self._model,
                        "messages": [
                            {"role": "system", "content": system},
                            {"role": "user", "content": user},
                        ],
                        "response_format": {"type": "json_object"},
                        "temperature": temperature,
                    },
                )
                resp.raise_for_status()
                body = resp.json()
                raw = body["choices"][0]["message"]["content"] or ""
                usage = body.get("usage") or {}
        except (httpx.HTTPError, KeyError, IndexError) as e:
            raise CapabilityUnavailableError("ai", str(e)) from e

        text = raw.strip()
        if text.startswith("```"):
            lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
            text = "\n".join(lines)
        try:
            return json.loads(text), usage
        except json.JSONDecodeError as e:
            raise CapabilityUnavailableError("ai", f"invalid JSON from model: {e}") from e

    # ------------------------------------------------------------------
    # Mediation (phase 2)
    # ------------------------------------------------------------------

    async def propose_options(self, evidence: dict[str, Any]) -> dict[str, Any]:
        dispute_id = evidence.get("dispute_id")
        self.logger.info("Requesting mediation options for dispute %s", dispute_id)

        if not _is_mock():
            result = await self._chat_json(
                MEDIATION_SYSTEM_PROMPT, build_options_prompt(evidence), temperature=0.5
            )
            self.logger.info(
                "Mediation options received via LLM for dispute %s (%d options)",
                dispute_id,
                len(result.get("options") or []),
            )
            return result

        favored = 70 if evidence.get("opened_by") == "customer" else 30
        options = [
            {
                "label": "A",
                "title": "Evidence-Based Resolution",
                "customerRefundPercent": favored,
                "vendorPaymentPercent": 100 - favored,
                "reasoning": "Weighs the submitted evidence in favour of the party who raised the dispute.",
                "keyFactors": ["evidence submitted", "booking description"],
                "isRecommended": False,
            },
            {
                "label": "B",
                "title": "Compromise",
                "customerRefundPercent": 50,
                "vendorPaymentPercent": 50,
                "reasoning": "Splits the escrow evenly, acknowledging both accounts.",
                "keyFactors": ["conflicting accounts", "partial service delivered"],
                "isRecommended": True,
            },
            {
                "label": "C",
                "title": "Platform Policy",
                "customerRefundPercent": 25,
                "vendorPaymentPercent": 75,
                "reasoning": "Service was scheduled and started; policy favours paying for work performed.",
                "keyFactors": ["booking status", "terms of service"],
                "isRecommended": False,
            },
        ]
        self.logger.info("Mediation options generated with mock for dispute %s", dispute_id)
        return {"options": options}

    # ------------------------------------------------------------------
    # Case analysis (ahead of mediation)
    # ------------------------------------------------------------------

    async def analyze(self, evidence: dict[str, Any]) -> dict[str, Any]:
        dispute_id = evidence.get("dispute_id")
        self.logger.info("Requesting case analysis for dispute %s", dispute_id)

        if not _is_mock():
            result, usage = await self._chat_json_with_usage(
                ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt(evidence), temperature=0.3
            )
            self.logger.info(
                "Case analysis received via LLM for dispute %s (%s prompt / %s completion tokens)",
                dispute_id,
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
            )
            return {**result, "model": self._model, "usage": usage}

        has_evidence = bool(evidence.get("evidence"))
        analysis = {
            "evidenceAnalysis": {
                "customerEvidenceStrength": "moderate" if has_evidence else "weak",
                "vendorEvidenceStrength": "weak",
                "keyFindings": ["Booking was marked completed", "Evidence attached by the opener"],
            },
            "descriptionAnalysis": {
                "consistency": "The complaint matches the booked scope of work.",
                "credibilityNotes": ["No contradictions in the written account"],
            },
            "behaviorAnalysis": {
                "customerGoodFaith": True,
                "vendorGoodFaith": True,
                "notes": [f"{len(evidence.get('negotiation') or [])} offers exchanged during negotiation"],
            },
            "overallAssessment": {
                "summary": "Partial delivery is likely; a split in the opener's favour is reasonable.",
                "favoredParty": evidence.get("opened_by") or "neither",
                "confidence": 0.6,
            },
            "model": "mock",
            "usage": {},
        }
        self.logger.info("Case analysis generated with mock for dispute %s", dispute_id)
        return analysis

    # ------------------------------------------------------------------
    # Binding decision (phase 3)
    # ------------------------------------------------------------------

    async def issue_decision(self, evidence: dict[str, Any]) -> dict[str, Any]:
        dispute_id = evidence.get("dispute_id")
        self.logger.info("Requesting binding decision for dispute %s", dispute_id)

        if not _is_mock():
            result = await self._chat_json(
                ARBITRATION_SYSTEM_PROMPT, build_decision_prompt(evidence), temperature=0.2
            )
            self.logger.info(
                "Binding decision received via LLM for dispute %s: customer %s%% / vendor %s%%",
                dispute_id,
                result.get("customerRefundPercent"),
                result.get("vendorPaymentPercent"),
            )
            return result

        decision = {
            "customerRefundPercent": 40,
            "vendorPaymentPercent": 60,
            "decisionSummary": "The vendor performed most of the booked service; the customer is refunded for the shortfall.",
            "fullReasoning": (
                "Neither negotiation nor mediation produced agreement. The booking record shows the "
                "service took place, while the customer's evidence supports a partial shortfall."
            ),
            "keyFactors": ["service delivered", "documented shortfall", "negotiation history"],
        }
        self.logger.info("Binding decision generated with mock for dispute %s", dispute_id)
        return decision
