from abc import ABC, abstractmethod

from app.helpers.monitoring import start_as_current_span
from app.models.readiness import ReadinessEnum


class IIdentity(ABC):
    @abstractmethod
    @start_as_current_span("identity_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("identity_email_for_owner")
    async def email_for_owner(self, owner_id: str) -> str | None:
        """
        Resolve the contact address of a user.

        Returns `None` if the user does not exist or has no email. Raises `IdentityError` if the identity service cannot be reached.
        """

    @abstractmethod
    @start_as_current_span("identity_authenticate")
    async def authenticate(self, token: str) -> str | None:
        """
        Resolve the user identifier of a bearer access token.

        Returns `None` if the token is not valid.
        """


class IdentityError(Exception):
    """
    Identity service returned an unexpected error.
    """
