from azure.communication.email.aio import EmailClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError

from app.helpers.cache import lru_acache
from app.helpers.config_models.email import CommunicationServicesModel, SenderModel
from app.helpers.http import azure_transport
from app.helpers.identity import credential
from app.helpers.logging import logger
from app.models.error import ProviderFailure
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail


class CommunicationServicesEmail(IEmail):
    """
    Send emails with Azure Communication Services.

    Sender address must belong to a domain connected to the resource.
    """

    _config: CommunicationServicesModel
    _sender: SenderModel
    name = "communication_services"

    def __init__(self, config: CommunicationServicesModel, sender: SenderModel):
        logger.info("Using Communication Services email from %s", sender.address)
        self._config = config
        self._sender = sender

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Communication Services email service.
        """
        # TODO: Check the domain is verified with the management API, sending a test email for each check is not an option
        return ReadinessEnum.OK

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.debug("Sending email to %s with Communication Services", to)
        try:
            async with await self._use_client() as client:
                poller = await client.begin_send(
                    {
                        "content": {
                            "html": html,
                            "plainText": text,
                            "subject": subject,
                        },
                        "recipients": {
                            "to": [{"address": to}],
                        },
                        "senderAddress": self._sender.address,
                    }
                )
                result = await poller.result()
        except ClientAuthenticationError as e:
            raise ProviderFailure(
                provider=self.name, reason="Authentication failed"
            ) from e
        except AzureError as e:  # Network errors included
            raise ProviderFailure(provider=self.name, reason=str(e)) from e
        status = result.get("status")
        if status != "Succeeded":
            raise ProviderFailure(
                provider=self.name,
                reason=f"Status {status}: {result.get('error')}",
            )
        logger.debug("Email sent with Communication Services, id %s", result.get("id"))

    @lru_acache()
    async def _use_client(self) -> EmailClient:
        logger.debug("Using email client for %s", self._config.endpoint)

        return EmailClient(
            # Deployment
            endpoint=self._config.endpoint,
            # Performance
            transport=await azure_transport(),
            # Authentication
            credential=(
                AzureKeyCredential(self._config.access_key.get_secret_value())
                if self._config.access_key
                else await credential()
            ),
        )
