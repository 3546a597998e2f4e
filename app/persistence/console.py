from app.helpers.config_models.email import SenderModel
from app.helpers.logging import logger
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail


class ConsoleEmail(IEmail):
    """
    Log the emails instead of sending them.

    Useful for development, a reminder is always considered delivered.
    """

    _sender: SenderModel
    name = "console"

    def __init__(self, sender: SenderModel):
        logger.info("Using console email, nothing will be sent")
        self._sender = sender

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def send(
        self,
        html: str,  # noqa: ARG002
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.info(
            "Email from %s to %s, subject %s:\n%s",
            self._sender.formatted(),
            to,
            subject,
            text,
        )
