import asyncio
import time
from datetime import datetime, timedelta
from email.message import Message

import pytest
from aiohttp import test_utils, web
from azure.core.exceptions import ServiceRequestError
from pytest_assume.plugin import assume

from app.helpers.config_models.email import (
    CommunicationServicesModel,
    ResendModel,
    SenderModel,
    SmtpModel,
)
from app.models.error import ProviderFailure
from app.persistence import smtp as smtp_module
from app.persistence.communication_services import CommunicationServicesEmail
from app.persistence.resend import ResendEmail
from app.persistence.smtp import SmtpEmail

SENDER = SenderModel(address="noreply@example.com", name="Quiet Hours Scheduler")


def _relay_mock(delay_sec: float, delivered: list[str]) -> type:
    """
    SMTP connection accepting everything, after a delay on the handshake.
    """

    class _RelayMock:
        sock = None

        def __init__(self, host: str, port: int, timeout: float) -> None:
            self.timeout = timeout

        def __enter__(self) -> "_RelayMock":
            return self

        def __exit__(self, *args) -> None:
            pass

        def starttls(self, context) -> None:
            time.sleep(delay_sec)

        def login(self, password: str, user: str) -> None:
            pass

        def send_message(self, msg: Message) -> None:
            delivered.append(msg["To"])

    return _RelayMock


@pytest.mark.asyncio
async def test_communication_services_unreachable(
    email_mock,
    make_block,
    make_dispatcher,
    monkeypatch,
    now: datetime,
    store,
) -> None:
    """
    A network error on Communication Services falls through to the next provider.
    """
    unreachable = CommunicationServicesEmail(
        config=CommunicationServicesModel(
            access_key="key",  # pyright: ignore
            endpoint="https://quiet-hours.communication.azure.com",
        ),
        sender=SENDER,
    )

    async def _use_client():
        raise ServiceRequestError("Connection refused")

    monkeypatch.setattr(unreachable, "_use_client", _use_client)

    with pytest.raises(ProviderFailure):
        await unreachable.send(html="<p>Hi</p>", subject="Hi", text="Hi", to="ada@example.com")

    block = await store.block_create(make_block(now + timedelta(minutes=5)))
    working = email_mock(name="working")

    report = await make_dispatcher(providers=[unreachable, working]).dispatch(now)

    assume(report.sent == 1)
    assume(not report.failures)
    assume(len(working.sent) == 1)
    stored = await store.block_get(block.block_id)
    assume(stored and stored.notified)


@pytest.mark.asyncio
async def test_smtp_sent(email_mock, make_block, make_dispatcher, monkeypatch, now: datetime, store) -> None:
    delivered: list[str] = []
    monkeypatch.setattr(smtp_module.smtplib, "SMTP", _relay_mock(0, delivered))
    relay = SmtpEmail(
        config=SmtpModel(password="secret", username="ada"),  # pyright: ignore
        sender=SENDER,
        timeout_sec=5,
    )
    await store.block_create(make_block(now + timedelta(minutes=5)))
    fallback = email_mock(name="fallback")

    report = await make_dispatcher(providers=[relay, fallback], timeout_sec=5).dispatch(now)

    assume(report.sent == 1)
    assume(delivered == ["ada@example.com"])
    assume(not fallback.sent)


@pytest.mark.asyncio
async def test_smtp_slow_relay(email_mock, make_block, make_dispatcher, monkeypatch, now: datetime, store) -> None:
    """
    A relay answering after the attempt timeout never gets the message, only the fallback delivers.
    """
    delivered: list[str] = []
    monkeypatch.setattr(smtp_module.smtplib, "SMTP", _relay_mock(0.5, delivered))
    relay = SmtpEmail(
        config=SmtpModel(password="secret", username="ada"),  # pyright: ignore
        sender=SENDER,
        timeout_sec=0.1,
    )
    await store.block_create(make_block(now + timedelta(minutes=5)))
    fallback = email_mock(name="fallback")

    report = await make_dispatcher(providers=[relay, fallback], timeout_sec=0.1).dispatch(now)
    # Let the abandoned worker thread finish
    await asyncio.sleep(1)

    assume(report.sent == 1)
    assume(len(fallback.sent) == 1)
    assume(delivered == [])


@pytest.mark.asyncio
async def test_resend_accepted_without_json() -> None:
    """
    A 2xx answer is a success, whatever its body.
    """
    requests: list[dict] = []

    async def _emails(request: web.Request) -> web.Response:
        requests.append(await request.json())
        return web.Response(text="Queued", content_type="text/plain")

    app = web.Application()
    app.router.add_post("/emails", _emails)
    async with test_utils.TestServer(app) as server:
        provider = ResendEmail(
            config=ResendModel(
                api_key="key",  # pyright: ignore
                endpoint=f"http://{server.host}:{server.port}",
            ),
            sender=SENDER,
        )
        await provider.send(html="<p>Hi</p>", subject="Hi", text="Hi", to="ada@example.com")

    assume(len(requests) == 1)
    assume(requests[0]["to"] == ["ada@example.com"])
    assume(requests[0]["from"] == "Quiet Hours Scheduler <noreply@example.com>")


@pytest.mark.asyncio
async def test_resend_rejected() -> None:
    async def _emails(request: web.Request) -> web.Response:  # noqa: ARG001
        return web.json_response({"message": "Invalid API key"}, status=401)

    app = web.Application()
    app.router.add_post("/emails", _emails)
    async with test_utils.TestServer(app) as server:
        provider = ResendEmail(
            config=ResendModel(
                api_key="key",  # pyright: ignore
                endpoint=f"http://{server.host}:{server.port}",
            ),
            sender=SENDER,
        )
        with pytest.raises(ProviderFailure) as exc_info:
            await provider.send(html="<p>Hi</p>", subject="Hi", text="Hi", to="ada@example.com")

    assume(exc_info.value.provider == "resend")
    assume("HTTP 401" in exc_info.value.reason)
