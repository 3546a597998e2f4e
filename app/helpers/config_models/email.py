from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator

from app.persistence.iemail import IEmail


class ProviderEnum(str, Enum):
    BREVO = "brevo"
    """Use Brevo (formerly Sendinblue) transactional API."""
    COMMUNICATION_SERVICES = "communication_services"
    """Use Azure Communication Services Email."""
    CONSOLE = "console"
    """Log emails, nothing is sent."""
    MAILGUN = "mailgun"
    """Use Mailgun messages API."""
    RESEND = "resend"
    """Use Resend API."""
    SMTP = "smtp"
    """Use a SMTP relay, like Gmail with an app password."""


class BrevoModel(BaseModel, frozen=True):
    api_key: SecretStr
    endpoint: str = "https://api.brevo.com"

    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.brevo import (
            BrevoEmail,
        )

        return BrevoEmail(config=self, sender=CONFIG.email.sender_model())


class CommunicationServicesModel(BaseModel, frozen=True):
    access_key: SecretStr | None = None
    """If not set, authenticate with the managed identity."""
    endpoint: str

    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.communication_services import (
            CommunicationServicesEmail,
        )

        return CommunicationServicesEmail(
            config=self, sender=CONFIG.email.sender_model()
        )


class ConsoleModel(BaseModel, frozen=True):
    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.console import (
            ConsoleEmail,
        )

        return ConsoleEmail(sender=CONFIG.email.sender_model())


class MailgunModel(BaseModel, frozen=True):
    api_key: SecretStr
    domain: str
    endpoint: str = "https://api.mailgun.net"

    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.mailgun import (
            MailgunEmail,
        )

        return MailgunEmail(config=self, sender=CONFIG.email.sender_model())


class ResendModel(BaseModel, frozen=True):
    api_key: SecretStr
    endpoint: str = "https://api.resend.com"

    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.resend import (
            ResendEmail,
        )

        return ResendEmail(config=self, sender=CONFIG.email.sender_model())


class SmtpModel(BaseModel, frozen=True):
    host: str = "smtp.gmail.com"
    password: SecretStr
    port: int = 587
    ssl: bool = False
    """Use implicit TLS (usually port 465). Otherwise, STARTTLS is negotiated."""
    username: str

    @cached_property
    def instance(self) -> IEmail:
        from app.helpers.config import CONFIG
        from app.persistence.smtp import (
            SmtpEmail,
        )

        return SmtpEmail(
            config=self,
            sender=CONFIG.email.sender_model(),
            timeout_sec=CONFIG.email.timeout_sec,
        )


class SenderModel(BaseModel, frozen=True):
    address: str
    name: str

    def formatted(self) -> str:
        """
        Returns the sender as a RFC 5322 mailbox, like `Name <address>`.
        """
        return f"{self.name} <{self.address}>"


class EmailModel(BaseModel):
    # Providers first, dependent sections are validated against it
    providers: list[ProviderEnum] = Field(
        default=[ProviderEnum.CONSOLE],
        min_length=1,
    )
    """Providers, tried in this order until one succeeds."""
    brevo: BrevoModel | None = Field(default=None, validate_default=True)
    communication_services: CommunicationServicesModel | None = Field(
        default=None, validate_default=True
    )
    console: ConsoleModel | None = Field(
        default=ConsoleModel(),  # Object is fully defined by default
        validate_default=True,
    )
    mailgun: MailgunModel | None = Field(default=None, validate_default=True)
    resend: ResendModel | None = Field(default=None, validate_default=True)
    sender: str = "noreply@localhost"
    sender_name: str = "Quiet Hours Scheduler"
    smtp: SmtpModel | None = Field(default=None, validate_default=True)
    timeout_sec: float = Field(default=10, gt=0)
    """Maximum time for a single provider attempt."""

    @field_validator(
        "brevo",
        "communication_services",
        "console",
        "mailgun",
        "resend",
        "smtp",
    )
    @classmethod
    def _validate_provider(
        cls,
        provider: BaseModel | None,
        info: ValidationInfo,
    ) -> BaseModel | None:
        assert info.field_name
        if not provider and ProviderEnum(info.field_name) in info.data.get(
            "providers", []
        ):
            raise ValueError(f"{info.field_name} config required")
        return provider

    @field_validator("providers")
    @classmethod
    def _validate_providers(cls, providers: list[ProviderEnum]) -> list[ProviderEnum]:
        if len(set(providers)) != len(providers):
            raise ValueError("Providers must be unique")
        return providers

    def sender_model(self) -> SenderModel:
        return SenderModel(address=self.sender, name=self.sender_name)

    @cached_property
    def instances(self) -> list[IEmail]:
        """
        Email providers, in order of preference.
        """
        res: list[IEmail] = []
        for provider in self.providers:
            config = getattr(self, provider.value)
            assert config
            res.append(config.instance)
        return res
