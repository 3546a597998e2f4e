from aiohttp import ClientError

from app.helpers.config_models.email import BrevoModel, SenderModel
from app.helpers.http import aiohttp_session
from app.helpers.logging import logger
from app.helpers.monitoring import suppress
from app.models.error import ProviderFailure
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail


class BrevoEmail(IEmail):
    """
    Send emails with the Brevo transactional API.

    See: https://developers.brevo.com/reference/sendtransacemail
    """

    _config: BrevoModel
    _sender: SenderModel
    name = "brevo"

    def __init__(self, config: BrevoModel, sender: SenderModel):
        logger.info("Using Brevo from %s", sender.address)
        self._config = config
        self._sender = sender

    async def readiness(self) -> ReadinessEnum:
        try:
            session = await aiohttp_session()
            async with session.get(
                headers=self._headers(),
                url=f"{self._config.endpoint}/v3/account",
            ) as res:
                if res.ok:
                    return ReadinessEnum.OK
                logger.error("Brevo readiness failed with status %s", res.status)
        except ClientError:
            logger.exception("Error requesting Brevo")
        return ReadinessEnum.FAIL

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.debug("Sending email to %s with Brevo", to)
        try:
            session = await aiohttp_session()
            async with session.post(
                headers=self._headers(),
                json={
                    "htmlContent": html,
                    "sender": {
                        "email": self._sender.address,
                        "name": self._sender.name,
                    },
                    "subject": subject,
                    "textContent": text,
                    "to": [{"email": to}],
                },
                url=f"{self._config.endpoint}/v3/smtp/email",
            ) as res:
                if not res.ok:
                    raise ProviderFailure(
                        provider=self.name,
                        reason=f"HTTP {res.status}: {await res.text()}",
                    )
                # Email is accepted, the body is only read for logging
                with suppress(AttributeError, ClientError, ValueError):
                    data = await res.json(content_type=None)
                    logger.debug("Email sent with Brevo, id %s", data.get("messageId"))
        except ClientError as e:
            raise ProviderFailure(provider=self.name, reason=str(e)) from e

    def _headers(self) -> dict[str, str]:
        return {
            "accept": "application/json",
            "api-key": self._config.api_key.get_secret_value(),
        }
