from abc import ABC, abstractmethod

from app.helpers.monitoring import start_as_current_span
from app.models.readiness import ReadinessEnum


class IEmail(ABC):
    name: str

    @abstractmethod
    @start_as_current_span("email_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("email_send")
    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        """
        Send an email.

        Raises `ProviderFailure` with a reason if the provider did not accept the email.
        """
