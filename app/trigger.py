import asyncio

from app.helpers.config import CONFIG
from app.helpers.dispatcher import Dispatcher
from app.helpers.http import aiohttp_session
from app.helpers.logging import logger
from app.models.error import StoreUnavailableError


def build_dispatcher() -> Dispatcher:
    """
    Build the dispatcher from the configuration.
    """
    return Dispatcher(
        claim_ttl_sec=CONFIG.notification.claim_ttl_sec,
        concurrency=CONFIG.notification.concurrency,
        display_tz=CONFIG.notification.tz(),
        grace_min=CONFIG.notification.grace_min,
        identity=CONFIG.identity.instance,
        lookahead_min=CONFIG.notification.lookahead_min,
        providers=CONFIG.email.instances,
        sender_name=CONFIG.email.sender_name,
        store=CONFIG.database.instance,
        timeout_sec=CONFIG.email.timeout_sec,
    )


async def run_periodic(
    dispatcher: Dispatcher,
    interval_sec: float,
) -> None:
    """
    Run a dispatch every `interval_sec`, forever.

    A failed run is logged and the loop continues with the next tick. Stops silently when cancelled.
    """
    logger.info("Dispatching reminders every %ss", interval_sec)
    try:
        while True:
            try:
                await dispatcher.dispatch()
            except StoreUnavailableError:
                logger.exception("Dispatch run failed, store is unavailable")
            except Exception:
                logger.exception("Dispatch run failed")
            await asyncio.sleep(interval_sec)
    except asyncio.CancelledError:
        logger.debug("Periodic dispatch cancelled")


async def _run_once() -> int:
    try:
        report = await build_dispatcher().dispatch()
    except StoreUnavailableError:
        logger.exception("Dispatch run failed, store is unavailable")
        return 1
    finally:
        await (await aiohttp_session()).close()
    print(report.model_dump_json(indent=2))  # noqa: T201
    return 0 if not report.failures else 2


def main() -> int:
    """
    Run a single dispatch, for an external scheduler like cron.

    Exit code is 0 if all reminders were handled, 2 if some failed and will be retried, 1 if the store is unavailable.
    """
    return asyncio.run(_run_once())


if __name__ == "__main__":
    raise SystemExit(main())
