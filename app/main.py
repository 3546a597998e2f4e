import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from http import HTTPStatus
from secrets import compare_digest
from typing import Annotated
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError, ValidationException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.helpers.blocks import create_block, delete_block, get_block, update_block
from app.helpers.config import CONFIG
from app.helpers.http import aiohttp_session
from app.helpers.instants import utc_now
from app.helpers.logging import logger
from app.helpers.monitoring import SpanAttributeEnum, start_as_current_span
from app.helpers.selector import select_due, select_overdue
from app.models.block import QuietBlockGetModel, QuietBlockInitiateModel
from app.models.error import (
    BlockConflictError,
    BlockNotFoundError,
    BlockValidationError,
    ErrorInnerModel,
    ErrorModel,
    StoreUnavailableError,
)
from app.models.readiness import ReadinessCheckModel, ReadinessEnum, ReadinessModel
from app.models.report import DispatchReportModel, NotificationPreviewModel
from app.persistence.iidentity import IdentityError
from app.trigger import build_dispatcher, run_periodic

# First log
logger.info(
    "quiet-hours-scheduler v%s",
    CONFIG.version,
)

# Persistences
_db = CONFIG.database.instance
_identity = CONFIG.identity.instance
_dispatcher = build_dispatcher()

# Authentication
_bearer = HTTPBearer(auto_error=False)

PREVIEW_HORIZON = timedelta(hours=2)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    dispatch_task = None

    try:
        if CONFIG.notification.scheduler_enabled:
            dispatch_task = asyncio.create_task(
                run_periodic(
                    dispatcher=_dispatcher,
                    interval_sec=CONFIG.notification.interval_sec,
                )
            )
        yield

    # Cancel tasks
    finally:
        if dispatch_task:
            dispatch_task.cancel()

    # Close HTTP session
    await (await aiohttp_session()).close()


# FastAPI
api = FastAPI(
    description="Plan quiet study sessions, and get an email reminder before each of them starts.",
    lifespan=lifespan,
    title="quiet-hours-scheduler",
    version=CONFIG.version,
)


async def _owner_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
) -> str:
    """
    Resolve the caller from the bearer access token.

    Raises a 401 if the token is missing or not valid.
    """
    if not credentials or not credentials.credentials:
        raise HTTPException(
            detail="Missing bearer token",
            status_code=HTTPStatus.UNAUTHORIZED,
        )
    try:
        owner_id = await _identity.authenticate(credentials.credentials)
    except IdentityError as e:
        logger.exception("Error authenticating the caller")
        raise HTTPException(
            detail="Identity service unavailable",
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        ) from e
    if not owner_id:
        raise HTTPException(
            detail="Invalid bearer token",
            status_code=HTTPStatus.UNAUTHORIZED,
        )
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    return owner_id


OwnerId = Annotated[str, Depends(_owner_id)]


@api.get("/health/liveness")
@start_as_current_span("health_liveness_get")
async def health_liveness_get() -> None:
    """
    Check if the service is running.

    No parameters are expected.

    Returns a 200 OK if the service is technically running.
    """
    return


@api.get(
    "/health/readiness",
    status_code=HTTPStatus.OK,
)
@start_as_current_span("health_readiness_get")
async def health_readiness_get() -> JSONResponse:
    """
    Check if the service is ready to serve requests.

    No parameters are expected. Services tested are: store, identity, and each email provider.

    Returns a 200 OK if the service is ready to serve requests. If the service is not ready, it should return a 503 Service Unavailable.
    """
    providers = CONFIG.email.instances
    # Check all components in parallel
    store_check, identity_check, *provider_checks = await asyncio.gather(
        _db.readiness(),
        _identity.readiness(),
        *(provider.readiness() for provider in providers),
    )
    readiness = ReadinessModel.from_checks(
        [
            ReadinessCheckModel(id="store", status=store_check),
            ReadinessCheckModel(id="identity", status=identity_check),
            *(
                ReadinessCheckModel(id=f"email.{provider.name}", status=check)
                for provider, check in zip(providers, provider_checks, strict=True)
            ),
        ]
    )
    return JSONResponse(
        content=readiness.model_dump(mode="json"),
        status_code=(
            HTTPStatus.OK
            if readiness.status == ReadinessEnum.OK
            else HTTPStatus.SERVICE_UNAVAILABLE
        ),
    )


@api.get("/quiet-blocks")
@start_as_current_span("block_list_get")
async def block_list_get(owner_id: OwnerId) -> list[QuietBlockGetModel]:
    """
    List the blocks of the caller.

    Returns the blocks, sorted by start.
    """
    return await _db.block_search_all(owner_id)  # pyright: ignore


@api.post(
    "/quiet-blocks",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("block_post")
async def block_post(
    initiate: QuietBlockInitiateModel,
    owner_id: OwnerId,
) -> QuietBlockGetModel:
    """
    Create a block for the caller.

    Body must contain the start and end instants, and a description. The instants can be local date-times, along with `timezone_offset`.

    Returns a 201 Created with the block. A 422 is returned if a rule is not met, a 409 if the slot overlaps another block.
    """
    return await create_block(
        initiate=initiate,
        owner_id=owner_id,
        store=_db,
    )


@api.get("/quiet-blocks/{block_id}")
@start_as_current_span("block_get")
async def block_get(
    block_id: UUID,
    owner_id: OwnerId,
) -> QuietBlockGetModel:
    """
    Get a block of the caller.

    Returns a 404 if the block does not exist or belongs to someone else.
    """
    return await get_block(
        block_id=block_id,
        owner_id=owner_id,
        store=_db,
    )


@api.put("/quiet-blocks/{block_id}")
@start_as_current_span("block_put")
async def block_put(
    block_id: UUID,
    initiate: QuietBlockInitiateModel,
    owner_id: OwnerId,
) -> QuietBlockGetModel:
    """
    Update the description and the slot of a block.

    Returns the updated block. Same errors as the creation apply, plus a 404 if the block does not exist.
    """
    return await update_block(
        block_id=block_id,
        initiate=initiate,
        owner_id=owner_id,
        store=_db,
    )


@api.delete(
    "/quiet-blocks/{block_id}",
    status_code=HTTPStatus.NO_CONTENT,
)
@start_as_current_span("block_delete")
async def block_delete(
    block_id: UUID,
    owner_id: OwnerId,
) -> Response:
    """
    Delete a block of the caller.

    Returns a 204 No Content, or a 404 if the block does not exist.
    """
    await delete_block(
        block_id=block_id,
        owner_id=owner_id,
        store=_db,
    )
    return Response(status_code=HTTPStatus.NO_CONTENT)


@api.get("/notifications/preview")
@start_as_current_span("notification_preview_get")
async def notification_preview_get(owner_id: OwnerId) -> NotificationPreviewModel:
    """
    Show which reminders of the caller a run would send now, late ones included, and the ones coming next.

    Nothing is sent. Useful to diagnose a missing reminder.
    """
    now = utc_now()
    blocks = await _db.block_search_all(owner_id)
    grace_min = CONFIG.notification.grace_min
    lookahead_min = CONFIG.notification.lookahead_min
    return NotificationPreviewModel(
        due=select_due(blocks=blocks, lookahead_min=lookahead_min, now=now),  # pyright: ignore
        grace_min=grace_min,
        late=select_overdue(blocks=blocks, grace_min=grace_min, now=now),  # pyright: ignore
        lookahead_min=lookahead_min,
        now=now,
        upcoming=select_due(  # pyright: ignore
            blocks=blocks,
            lookahead_min=PREVIEW_HORIZON.total_seconds() / 60,
            now=now,
        ),
    )


@api.post("/notifications/trigger")
@start_as_current_span("notification_trigger_post")
async def notification_trigger_post(
    x_trigger_secret: Annotated[str | None, Header()] = None,
) -> DispatchReportModel:
    """
    Run a dispatch now, for an external scheduler.

    If a trigger secret is configured, it must be sent in the `X-Trigger-Secret` header.

    Returns the dispatch report. A 503 is returned if the store is unavailable.
    """
    secret = CONFIG.notification.trigger_secret
    if secret and not compare_digest(
        secret.get_secret_value(), x_trigger_secret or ""
    ):
        raise HTTPException(
            detail="Invalid trigger secret",
            status_code=HTTPStatus.UNAUTHORIZED,
        )
    return await _dispatcher.dispatch()


@api.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions and return the error in a standard format.
    """
    return _standard_error(
        message=exc.detail,
        status_code=HTTPStatus(exc.status_code),
    )


@api.exception_handler(RequestValidationError)
@api.exception_handler(ValueError)
async def validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation exceptions and return the error in a standard format.
    """
    return _validation_error(exc)


@api.exception_handler(BlockValidationError)
async def block_validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: BlockValidationError,
) -> JSONResponse:
    return _standard_error(
        details=[str(exc)],
        message="Validation error",
        status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
    )


@api.exception_handler(BlockConflictError)
async def block_conflict_exception_handler(
    request: Request,  # noqa: ARG001
    exc: BlockConflictError,
) -> JSONResponse:
    return _standard_error(
        details=[f"Conflicts with block {exc.conflict_id}"],
        message=str(exc),
        status_code=HTTPStatus.CONFLICT,
    )


@api.exception_handler(BlockNotFoundError)
async def block_not_found_exception_handler(
    request: Request,  # noqa: ARG001
    exc: BlockNotFoundError,
) -> JSONResponse:
    return _standard_error(
        message=str(exc),
        status_code=HTTPStatus.NOT_FOUND,
    )


@api.exception_handler(StoreUnavailableError)
async def store_unavailable_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StoreUnavailableError,
) -> JSONResponse:
    logger.error("Store unavailable: %s", exc)
    return _standard_error(
        message="Store unavailable, retry later",
        status_code=HTTPStatus.SERVICE_UNAVAILABLE,
    )


def _validation_error(e: ValidationError | Exception) -> JSONResponse:
    """
    Generate a standard validation error response.
    """
    messages = []
    if isinstance(e, ValidationError) or isinstance(e, ValidationException):
        messages = [
            str(x) for x in e.errors()
        ]  # Pydantic returns well formatted errors, use them
    elif isinstance(e, ValueError):
        messages = [str(e)]
    return _standard_error(
        details=messages,
        message="Validation error",
        status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
    )


def _standard_error(
    message: str,
    status_code: HTTPStatus,
    details: list[str] | None = None,
) -> JSONResponse:
    """
    Generate a standard error response.
    """
    model = ErrorModel(
        error=ErrorInnerModel(
            details=details or [],
            message=message,
        )
    )
    return JSONResponse(
        content=model.model_dump(mode="json"),
        status_code=status_code,
    )
