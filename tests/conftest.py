import asyncio
import json
import random
import string
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from os import environ
from tempfile import mkdtemp

# Configuration is loaded on first import of the application, it must be set before
environ["CONFIG_JSON"] = json.dumps(
    {
        "database": {
            "mode": "sqlite",
            "sqlite": {
                "path": f"{mkdtemp(prefix='quiet-hours-')}/api",
            },
        },
        "email": {
            "providers": ["console"],
        },
        "identity": {
            "mode": "local",
            "local": {
                "users": {
                    "user-1": {
                        "email": "ada@example.com",
                        "token": "token-1",
                    },
                    "user-2": {
                        "email": "grace@example.com",
                        "token": "token-2",
                    },
                },
            },
        },
        "notification": {
            "scheduler_enabled": False,
        },
    }
)

import pytest  # noqa: E402
import pytz  # noqa: E402

from app.helpers.config_models.database import SqliteModel  # noqa: E402
from app.helpers.config_models.identity import LocalModel, LocalUserModel  # noqa: E402
from app.helpers.dispatcher import Dispatcher  # noqa: E402
from app.models.block import QuietBlockStateModel  # noqa: E402
from app.models.error import ProviderFailure  # noqa: E402
from app.models.readiness import ReadinessEnum  # noqa: E402
from app.persistence.iemail import IEmail  # noqa: E402
from app.persistence.iidentity import IdentityError, IIdentity  # noqa: E402
from app.persistence.local_identity import LocalIdentity  # noqa: E402
from app.persistence.sqlite import SqliteStore  # noqa: E402

NOW = datetime(2024, 1, 16, 9, 50, tzinfo=UTC)


class EmailMock(IEmail):
    """
    Email provider recording the sent emails, optionally failing or hanging.
    """

    delay_sec: float
    fail: bool
    sent: list[dict[str, str]]

    def __init__(
        self,
        name: str = "mock",
        delay_sec: float = 0,
        fail: bool = False,
    ) -> None:
        self.delay_sec = delay_sec
        self.fail = fail
        self.name = name
        self.sent = []

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def send(
        self,
        html: str,
        subject: str,
        text: str,
        to: str,
    ) -> None:
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.fail:
            raise ProviderFailure(provider=self.name, reason="HTTP 500: Mocked error")
        self.sent.append(
            {
                "html": html,
                "subject": subject,
                "text": text,
                "to": to,
            }
        )


class IdentityDownMock(IIdentity):
    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.FAIL

    async def email_for_owner(self, owner_id: str) -> str | None:
        raise IdentityError(f"Cannot reach the identity service for {owner_id}")

    async def authenticate(self, token: str) -> str | None:  # noqa: ARG002
        raise IdentityError("Cannot reach the identity service")


@pytest.fixture
def random_text() -> str:
    """
    Generate a random text, usable as a block description.
    """
    return "".join(random.choice(string.ascii_letters) for _ in range(20))


@pytest.fixture
def store(tmp_path) -> SqliteStore:
    """
    Empty SQLite store, dedicated to the test.
    """
    return SqliteStore(SqliteModel(path=str(tmp_path / "db")))


@pytest.fixture
def identity() -> LocalIdentity:
    return LocalIdentity(
        LocalModel(
            users={
                "user-1": LocalUserModel(email="ada@example.com", token="token-1"),
                "user-2": LocalUserModel(email="grace@example.com", token="token-2"),
            }
        )
    )


@pytest.fixture
def make_block(random_text: str) -> Callable[..., QuietBlockStateModel]:
    """
    Factory of blocks, starting at a given instant and lasting one hour by default.
    """

    def _make(
        start: datetime,
        duration: timedelta = timedelta(hours=1),
        notified: bool = False,
        owner_id: str = "user-1",
    ) -> QuietBlockStateModel:
        return QuietBlockStateModel(
            description=random_text,
            end=start + duration,
            notified=notified,
            owner_id=owner_id,
            start=start,
        )

    return _make


@pytest.fixture
def make_dispatcher(
    identity: IIdentity,
    store: SqliteStore,
) -> Callable[..., Dispatcher]:
    """
    Factory of dispatchers, sharing the test store.
    """

    def _make(
        providers: list[IEmail],
        identity_override: IIdentity | None = None,
        **kwargs,
    ) -> Dispatcher:
        return Dispatcher(
            display_tz=pytz.timezone("Asia/Kolkata"),
            identity=identity_override or identity,
            providers=providers,
            sender_name="Quiet Hours Scheduler",
            store=store,
            **kwargs,
        )

    return _make


@pytest.fixture
def now() -> datetime:
    """
    Instant of the reference scenario, 2024-01-16 09:50 UTC.
    """
    return NOW


@pytest.fixture
def email_mock() -> type[EmailMock]:
    return EmailMock


@pytest.fixture
def identity_down() -> IdentityDownMock:
    return IdentityDownMock()
