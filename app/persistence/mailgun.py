from aiohttp import BasicAuth, ClientError

from app.helpers.config_models.email import MailgunModel, SenderModel
from app.helpers.http import aiohttp_session
from app.helpers.logging import logger
from app.helpers.monitoring import suppress
from app.models.error import ProviderFailure
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail


class MailgunEmail(IEmail):
    """
    Send emails with the Mailgun messages API.

    Mailgun expects a form payload, not JSON. Use `https://api.eu.mailgun.net` as endpoint for EU domains.

    See: https://documentation.mailgun.com/docs/mailgun/api-reference/openapi-final/tag/Messages/
    """

    _config: MailgunModel
    _sender: SenderModel
    name = "mailgun"

    def __init__(self, config: MailgunModel, sender: SenderModel):
        logger.info("Using Mailgun domain %s", config.domain)
        self._config = config
        self._sender = sender

    async def readiness(self) -> ReadinessEnum:
        try:
            session = await aiohttp_session()
            async with session.get(
                auth=self._auth(),
                url=f"{self._config.endpoint}/v4/domains/{self._config.domain}",
            ) as res:
                if res.ok:
                    return ReadinessEnum.OK
                logger.error("Mailgun readiness failed with status %s", res.status)
        except ClientError:
            logger.exception("Error requesting Mailgun")
        return ReadinessEnum.FAIL

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.debug("Sending email to %s with Mailgun", to)
        try:
            session = await aiohttp_session()
            async with session.post(
                auth=self._auth(),
                data={
                    "from": self._sender.formatted(),
                    "html": html,
                    "subject": subject,
                    "text": text,
                    "to": to,
                },
                url=f"{self._config.endpoint}/v3/{self._config.domain}/messages",
            ) as res:
                if not res.ok:
                    raise ProviderFailure(
                        provider=self.name,
                        reason=f"HTTP {res.status}: {await res.text()}",
                    )
                # Email is accepted, the body is only read for logging
                with suppress(AttributeError, ClientError, ValueError):
                    data = await res.json(content_type=None)
                    logger.debug("Email sent with Mailgun, id %s", data.get("id"))
        except ClientError as e:
            raise ProviderFailure(provider=self.name, reason=str(e)) from e

    def _auth(self) -> BasicAuth:
        return BasicAuth(
            login="api",
            password=self._config.api_key.get_secret_value(),
        )
