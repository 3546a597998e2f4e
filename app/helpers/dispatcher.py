import asyncio
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from uuid import UUID, uuid4

from app.helpers.cache import get_scheduler
from app.helpers.email_templates import render_reminder
from app.helpers.instants import ensure_aware, utc_now
from app.helpers.logging import logger
from app.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    notification_failed,
    notification_sent,
    notification_skipped,
    start_as_current_span,
)
from app.helpers.selector import select_due, select_overdue
from app.models.block import QuietBlockStateModel
from app.models.error import DispatchFailure, ProviderFailure
from app.models.report import DispatchFailureModel, DispatchReportModel
from app.persistence.iemail import IEmail
from app.persistence.iidentity import IdentityError, IIdentity
from app.persistence.istore import IStore


class OutcomeEnum(str, Enum):
    FAILED = "failed"
    SENT = "sent"
    SKIPPED = "skipped"


class Dispatcher:
    """
    Send the reminders of the blocks starting soon.

    Each block is protected by a delivery lease taken with a conditional write, then flipped to notified with a second conditional write. Concurrent runs, on this process or on other replicas, never send the same reminder twice.
    """

    _claim_ttl: timedelta
    _concurrency: int
    _display_tz: tzinfo
    _grace_min: int
    _identity: IIdentity
    _lookahead_min: int
    _providers: list[IEmail]
    _sender_name: str
    _store: IStore
    _timeout_sec: float

    def __init__(  # noqa: PLR0913
        self,
        display_tz: tzinfo,
        identity: IIdentity,
        providers: list[IEmail],
        sender_name: str,
        store: IStore,
        claim_ttl_sec: int = 300,
        concurrency: int = 4,
        grace_min: int = 30,
        lookahead_min: int = 10,
        timeout_sec: float = 10,
    ):
        if not providers:
            raise ValueError("At least one email provider is required")
        self._claim_ttl = timedelta(seconds=claim_ttl_sec)
        self._concurrency = concurrency
        self._display_tz = display_tz
        self._grace_min = grace_min
        self._identity = identity
        self._lookahead_min = lookahead_min
        self._providers = providers
        self._sender_name = sender_name
        self._store = store
        self._timeout_sec = timeout_sec

    @start_as_current_span("dispatch")
    async def dispatch(self, now: datetime | None = None) -> DispatchReportModel:
        """
        Run a dispatch: select the due and late blocks, then deliver their reminders.

        A block failing never stops the others, it is reported in the failures and retried on the next run. Raises `StoreUnavailableError` if the blocks cannot be listed.
        """
        now = ensure_aware(now) if now else utc_now()
        report = DispatchReportModel(now=now)

        blocks = await self._store.block_list_not_notified()
        due = select_due(now=now, lookahead_min=self._lookahead_min, blocks=blocks)
        overdue = select_overdue(now=now, grace_min=self._grace_min, blocks=blocks)
        missed = sum(
            1
            for block in blocks
            if block.start < now - timedelta(minutes=self._grace_min)
        )
        if missed:
            logger.warning(
                "%s blocks missed their reminder window, they won't be notified",
                missed,
            )

        selected = [(block, False) for block in due] + [
            (block, True) for block in overdue
        ]
        report.attempted = len(selected)
        if not selected:
            logger.debug("No block to notify")
            return report

        logger.info("%s blocks to notify (%s late)", len(selected), len(overdue))
        async with get_scheduler(limit=self._concurrency) as scheduler:
            jobs = [
                await scheduler.spawn(self._process(block=block, late=late, now=now))
                for block, late in selected
            ]
            outcomes = await asyncio.gather(*(job.wait() for job in jobs))

        for (block, late), (outcome, reason) in zip(selected, outcomes, strict=True):
            if outcome == OutcomeEnum.SENT:
                report.sent += 1
                if late:
                    report.late += 1
            elif outcome == OutcomeEnum.SKIPPED:
                report.skipped.append(block.block_id)
            else:
                report.failures.append(
                    DispatchFailureModel(
                        block_id=block.block_id,
                        reason=reason or "Unknown error",
                    )
                )

        logger.info(
            "Dispatch done, %s sent, %s skipped, %s failed",
            report.sent,
            len(report.skipped),
            len(report.failures),
        )
        return report

    async def _process(
        self,
        block: QuietBlockStateModel,
        late: bool,
        now: datetime,
    ) -> tuple[OutcomeEnum, str | None]:
        """
        Deliver the reminder of a single block.

        Returns the outcome, and the reason of the failure if any. Never raises, except on cancellation.
        """
        try:
            return await self._process_claimed(block=block, late=late, now=now)
        except Exception as e:
            logger.exception("Unexpected error while processing the block")
            counter_add(notification_failed, 1)
            return OutcomeEnum.FAILED, f"Unexpected error: {e}"

    async def _process_claimed(
        self,
        block: QuietBlockStateModel,
        late: bool,
        now: datetime,
    ) -> tuple[OutcomeEnum, str | None]:
        SpanAttributeEnum.BLOCK_ID.attribute(str(block.block_id))
        SpanAttributeEnum.OWNER_ID.attribute(block.owner_id)
        SpanAttributeEnum.REMINDER_KIND.attribute("late" if late else "upcoming")

        # Take the lease
        claim_id = uuid4()
        if not await self._store.block_try_claim(
            block=block,
            claim_id=claim_id,
            expires_at=now + self._claim_ttl,
            now=now,
        ):
            logger.info("Block already handled by another run, skipping")
            counter_add(notification_skipped, 1)
            return OutcomeEnum.SKIPPED, None

        try:
            await self._deliver(block=block, late=late)
        except DispatchFailure as e:
            logger.error("Reminder not delivered: %s", e)
            counter_add(notification_failed, 1)
            await self._release(block=block, claim_id=claim_id)
            return OutcomeEnum.FAILED, str(e)
        except Exception as e:
            logger.exception("Unexpected error while delivering the reminder")
            counter_add(notification_failed, 1)
            await self._release(block=block, claim_id=claim_id)
            return OutcomeEnum.FAILED, f"Unexpected error: {e}"

        # Record the delivery
        if not await self._store.block_try_mark_notified(
            block=block,
            claim_id=claim_id,
        ):
            # Lease expired and another run took over
            logger.warning("Reminder sent, but the block was recorded by another run")
            counter_add(notification_skipped, 1)
            return OutcomeEnum.SKIPPED, None

        logger.info("Reminder sent")
        counter_add(notification_sent, 1)
        return OutcomeEnum.SENT, None

    async def _deliver(
        self,
        block: QuietBlockStateModel,
        late: bool,
    ) -> None:
        """
        Resolve the recipient, render the email and send it with the first working provider.

        Raises `DispatchFailure` if the recipient cannot be resolved or if all providers failed.
        """
        try:
            to = await self._identity.email_for_owner(block.owner_id)
        except IdentityError as e:
            raise DispatchFailure(f"Identity lookup failed: {e}") from e
        if not to:
            raise DispatchFailure("Owner has no email address")

        email = await render_reminder(
            block=block,
            late=late,
            lookahead_min=self._lookahead_min,
            sender_name=self._sender_name,
            tz=self._display_tz,
        )

        reasons: list[str] = []
        for provider in self._providers:
            SpanAttributeEnum.EMAIL_PROVIDER.attribute(provider.name)
            try:
                async with asyncio.timeout(self._timeout_sec):
                    await provider.send(
                        html=email.html,
                        subject=email.subject,
                        text=email.text,
                        to=to,
                    )
                return
            except ProviderFailure as e:
                logger.warning("Provider %s failed: %s", provider.name, e.reason)
                reasons.append(f"{provider.name}: {e.reason}")
            except TimeoutError:
                logger.warning(
                    "Provider %s timed out after %ss", provider.name, self._timeout_sec
                )
                reasons.append(f"{provider.name}: timeout after {self._timeout_sec}s")
            except Exception as e:
                logger.exception("Unexpected error from provider %s", provider.name)
                reasons.append(f"{provider.name}: unexpected error: {e}")

        raise DispatchFailure(f"All providers failed ({'; '.join(reasons)})")

    async def _release(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> None:
        """
        Release the lease so the next run can retry immediately.
        """
        try:
            if not await self._store.block_release_claim(
                block=block,
                claim_id=claim_id,
            ):
                logger.warning("Lease already lost, nothing to release")
        except Exception:
            logger.exception("Error releasing the lease, it will expire by itself")
