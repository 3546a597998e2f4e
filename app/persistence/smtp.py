import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from time import monotonic

from app.helpers.config_models.email import SenderModel, SmtpModel
from app.helpers.logging import logger
from app.models.error import ProviderFailure
from app.models.readiness import ReadinessEnum
from app.persistence.iemail import IEmail

# Share of the attempt timeout the relay conversation can use
_BUDGET_RATIO = 0.8


class SmtpEmail(IEmail):
    """
    Send emails through a SMTP relay.

    `smtplib` is blocking, each connection runs in a worker thread. A worker thread cannot be cancelled, so the conversation carries its own deadline, shorter than the attempt timeout: every socket operation is bounded by the remaining time, and the message is never submitted once the deadline passed. An abandoned attempt cannot deliver after the next provider was tried.
    """

    _config: SmtpModel
    _sender: SenderModel
    _timeout_sec: float
    name = "smtp"

    def __init__(
        self,
        config: SmtpModel,
        sender: SenderModel,
        timeout_sec: float = 10,
    ):
        logger.info("Using SMTP server %s:%s", config.host, config.port)
        self._config = config
        self._sender = sender
        self._timeout_sec = timeout_sec

    async def readiness(self) -> ReadinessEnum:
        """
        Check the server accepts the credentials, without sending anything.
        """
        try:
            await asyncio.to_thread(self._login_and_run, self._deadline(), None)
            return ReadinessEnum.OK
        except (OSError, smtplib.SMTPException):
            logger.exception("Error connecting to SMTP server")
        return ReadinessEnum.FAIL

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        logger.debug("Sending email to %s with SMTP", to)
        deadline = self._deadline()
        msg = MIMEMultipart("alternative")
        msg["From"] = self._sender.formatted()
        msg["Subject"] = subject
        msg["To"] = to
        # Clients display the last part they support, HTML is preferred
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        try:
            await asyncio.to_thread(self._login_and_run, deadline, msg)
        except smtplib.SMTPAuthenticationError as e:
            raise ProviderFailure(
                provider=self.name, reason="Authentication failed"
            ) from e
        except (OSError, smtplib.SMTPException) as e:  # TimeoutError included
            raise ProviderFailure(provider=self.name, reason=str(e)) from e

    def _deadline(self) -> float:
        return monotonic() + self._timeout_sec * _BUDGET_RATIO

    def _login_and_run(self, deadline: float, msg: MIMEMultipart | None) -> None:
        """
        Connect, authenticate and send the message if any, before the deadline.

        Raises `TimeoutError` if the deadline is reached.
        """
        context = ssl.create_default_context()
        if self._config.ssl:
            server = smtplib.SMTP_SSL(
                context=context,
                host=self._config.host,
                port=self._config.port,
                timeout=self._remaining(deadline),
            )
        else:
            server = smtplib.SMTP(
                host=self._config.host,
                port=self._config.port,
                timeout=self._remaining(deadline),
            )
        with server:
            if not self._config.ssl:
                self._bound(server, deadline)
                server.starttls(context=context)
            self._bound(server, deadline)
            server.login(
                password=self._config.password.get_secret_value(),
                user=self._config.username,
            )
            if msg:
                self._bound(server, deadline)
                server.send_message(msg)

    @classmethod
    def _bound(cls, server: smtplib.SMTP, deadline: float) -> None:
        """
        Limit the next socket operations to the time left.
        """
        remaining = cls._remaining(deadline)
        if server.sock:
            server.sock.settimeout(remaining)

    @staticmethod
    def _remaining(deadline: float) -> float:
        remaining = deadline - monotonic()
        if remaining <= 0:
            raise TimeoutError("SMTP deadline reached")
        return remaining
