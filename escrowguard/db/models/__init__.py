from escrowguard.db.models.booking import Booking
from escrowguard.db.models.dispute import (
    BindingDecision,
    DisputeAnalysis,
    DisputeCase,
    MediationOption,
    NegotiationOffer,
)
from escrowguard.db.models.escrow import EscrowTransaction
from escrowguard.db.models.fee import DisputeFeeCharge
from escrowguard.db.models.notification import Notification
from escrowguard.db.models.settlement import SettlementIntent
from escrowguard.db.models.user import User

__all__ = [
    "BindingDecision",
    "Booking",
    "DisputeAnalysis",
    "DisputeCase",
    "DisputeFeeCharge",
    "EscrowTransaction",
    "MediationOption",
    "NegotiationOffer",
    "Notification",
    "SettlementIntent",
    "User",
]
