"""External collaborator clients.

Each client implements ``BaseIntegration`` and falls back to deterministic
mock responses when its API key starts with ``mock_``.
"""

from escrowguard.integrations.ai_client import AIClient, MediationProvider
from escrowguard.integrations.base import BaseIntegration
from escrowguard.integrations.sendgrid import EmailClient
from escrowguard.integrations.stripe_client import PaymentProcessor, StripeClient

__all__ = [
    "AIClient",
    "BaseIntegration",
    "EmailClient",
    "MediationProvider",
    "PaymentProcessor",
    "StripeClient",
]
