from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from escrowguard.common.enums import OptionLabel
from escrowguard.common.exceptions import CapabilityUnavailableError
from escrowguard.common.logging import get_logger

logger = get_logger("disputes.schemas")


class _PercentSplit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_percent: float = Field(alias="customerRefundPercent", ge=0, le=100)
    vendor_percent: float = Field(alias="vendorPaymentPercent", ge=0, le=100)

    @model_validator(mode="after")
    def _sums_to_hundred(self):
        if abs(self.customer_percent + self.vendor_percent - 100) > 0.01:
            raise ValueError("customer and vendor percentages must sum to 100")
        return self


class ProposedOption(_PercentSplit):
    label: OptionLabel
    title: str = Field(min_length=1, max_length=255)
    reasoning: str = Field(min_length=1)
    key_factors: list[str] = Field(default_factory=list, alias="keyFactors")
    is_recommended: bool = Field(default=False, alias="isRecommended")


class ProposedDecision(_PercentSplit):
    summary: str = Field(alias="decisionSummary", min_length=1)
    reasoning: str = Field(alias="fullReasoning", min_length=1)
    key_factors: list[str] = Field(default_factory=list, alias="keyFactors")


def parse_options(payload: dict) -> list[ProposedOption]:
    """Validate a mediation payload: exactly one valid option per label A, B, C."""
    raw = payload.get("options") if isinstance(payload, dict) else None
    if not isinstance(raw, list):
        raise CapabilityUnavailableError("mediation", "response has no options list")

    valid: list[ProposedOption] = []
    for item in raw:
        try:
            valid.append(ProposedOption.model_validate(item))
        except ValidationError as e:
            logger.warning("Discarding malformed mediation option: %s", e.errors()[:1])

    labels = {o.label for o in valid}
    if len(valid) != 3 or labels != set(OptionLabel):
        raise CapabilityUnavailableError(
            "mediation", f"expected options A, B and C, got {sorted(l.value for l in labels)}"
        )
    return sorted(valid, key=lambda o: o.label.value)


def parse_decision(payload: dict) -> ProposedDecision:
    try:
        return ProposedDecision.model_validate(payload)
    except ValidationError as e:
        raise CapabilityUnavailableError("arbitration", f"malformed decision: {e.errors()[:1]}") from e


class ProposedAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    evidence_analysis: dict[str, Any] = Field(alias="evidenceAnalysis")
    description_analysis: dict[str, Any] = Field(alias="descriptionAnalysis")
    behavior_analysis: dict[str, Any] = Field(alias="behaviorAnalysis")
    overall_assessment: dict[str, Any] = Field(alias="overallAssessment")
    model: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)


def parse_analysis(payload: dict) -> ProposedAnalysis:
    try:
        return ProposedAnalysis.model_validate(payload)
    except ValidationError as e:
        raise CapabilityUnavailableError("analysis", f"malformed analysis: {e.errors()[:1]}") from e
