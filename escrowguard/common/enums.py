import enum


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class Party(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"

    @property
    def other(self) -> "Party":
        return Party.VENDOR if self is Party.CUSTOMER else Party.CUSTOMER


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


DISPUTABLE_BOOKING_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
)


class EscrowStatus(str, enum.Enum):
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    PARTIALLY_RELEASED = "partially_released"


class DisputePhase(str, enum.Enum):
    OPEN = "open"
    IN_NEGOTIATION = "in_negotiation"
    AI_MEDIATION = "ai_mediation"
    AI_REVIEW = "ai_review"
    RESOLVED = "resolved"
    EXTERNAL = "external"

    @property
    def is_terminal(self) -> bool:
        return self in (DisputePhase.RESOLVED, DisputePhase.EXTERNAL)


ACTIVE_DISPUTE_PHASES = (
    DisputePhase.OPEN,
    DisputePhase.IN_NEGOTIATION,
    DisputePhase.AI_MEDIATION,
    DisputePhase.AI_REVIEW,
)


class DisputeStatusFilter(str, enum.Enum):
    ALL = "all"
    ACTIVE = "active"
    RESOLVED = "resolved"


class OptionLabel(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"


class OptionResponse(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DecisionResponse(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class DecisionStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    OVERRIDDEN_EXTERNAL = "overridden_external"


class FeeReason(str, enum.Enum):
    DISPUTE_OPENED = "dispute_opened"
    ESCALATION = "escalation"


class FeeChargeStatus(str, enum.Enum):
    PENDING = "pending"
    CHARGED = "charged"
    WAIVED = "waived"
    FAILED = "failed"


class SettlementKind(str, enum.Enum):
    SPLIT = "split"
    EXTERNAL = "external"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ResolutionSource(str, enum.Enum):
    NEGOTIATION = "negotiation"
    MEDIATION = "mediation"
    BINDING_DECISION = "binding_decision"
    ESCALATION = "escalation"


class NotificationType(str, enum.Enum):
    DISPUTE_OPENED = "dispute_opened"
    PHASE_CHANGED = "phase_changed"
    OFFER_PROPOSED = "offer_proposed"
    OPTIONS_READY = "options_ready"
    DECISION_ISSUED = "decision_issued"
    DEADLINE_APPROACHING = "deadline_approaching"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_ESCALATED = "dispute_escalated"
    FEE_CHARGED = "fee_charged"
