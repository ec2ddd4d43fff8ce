from abc import ABC, abstractmethod

from escrowguard.common.logging import get_logger


class BaseIntegration(ABC):
    """Base class for the external collaborators: payments, AI and e-mail.

    Each client gets a logger under ``escrowguard.integrations.<name>`` and
    must report reachability through ``health_check`` (served on
    ``/health/integrations``).
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = get_logger(f"integrations.{name}")

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the service answers; always True in mock mode."""
        ...
