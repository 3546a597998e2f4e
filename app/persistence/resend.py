from aiohttp import ClientError

from app.helpers.config_models.email import ResendModel, SenderModel
from app.helpers.http import aiohttp_session
from app.helpers.logging import logger
from app.helpers.monitoring import suppress
from app.models.error import ProviderFailure
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail


class ResendEmail(IEmail):
    """
    Send emails with the Resend API.

    See: https://resend.com/docs/api-reference/emails/send-email
    """

    _config: ResendModel
    _sender: SenderModel
    name = "resend"

    def __init__(self, config: ResendModel, sender: SenderModel):
        logger.info("Using Resend from %s", sender.address)
        self._config = config
        self._sender = sender

    async def readiness(self) -> ReadinessEnum:
        """
        Check the API key is accepted by listing the domains.
        """
        try:
            session = await aiohttp_session()
            async with session.get(
                headers=self._headers(),
                url=f"{self._config.endpoint}/domains",
            ) as res:
                if res.ok:
                    return ReadinessEnum.OK
                logger.error("Resend readiness failed with status %s", res.status)
        except ClientError:
            logger.exception("Error requesting Resend")
        return ReadinessEnum.FAIL

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.debug("Sending email to %s with Resend", to)
        try:
            session = await aiohttp_session()
            async with session.post(
                headers=self._headers(),
                json={
                    "from": self._sender.formatted(),
                    "html": html,
                    "subject": subject,
                    "text": text,
                    "to": [to],
                },
                url=f"{self._config.endpoint}/emails",
            ) as res:
                if not res.ok:
                    raise ProviderFailure(
                        provider=self.name,
                        reason=f"HTTP {res.status}: {await res.text()}",
                    )
                # Email is accepted, the body is only read for logging
                with suppress(AttributeError, ClientError, ValueError):
                    data = await res.json(content_type=None)
                    logger.debug("Email sent with Resend, id %s", data.get("id"))
        except ClientError as e:
            raise ProviderFailure(provider=self.name, reason=str(e)) from e

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key.get_secret_value()}",
        }
