from datetime import datetime, timedelta
from uuid import UUID

from app.helpers.instants import utc_now
from app.helpers.logging import logger
from app.helpers.monitoring import SpanAttributeEnum, start_as_current_span
from app.models.block import QuietBlockInitiateModel, QuietBlockStateModel
from app.models.error import (
    BlockConflictError,
    BlockNotFoundError,
    BlockValidationError,
)
from app.persistence.istore import IStore

MAX_DURATION = timedelta(hours=8)
MIN_DURATION = timedelta(minutes=15)
START_BUFFER = timedelta(seconds=30)
"""Margin given to the request processing, a block must start after it."""


@start_as_current_span("block_create")
async def create_block(
    initiate: QuietBlockInitiateModel,
    owner_id: str,
    store: IStore,
    now: datetime | None = None,
) -> QuietBlockStateModel:
    """
    Create a quiet block for a user.

    Raises `BlockValidationError` if a rule is not met, `BlockConflictError` if the slot overlaps another block of the user.
    """
    now = now or utc_now()
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)

    block = QuietBlockStateModel(
        created_at=now,
        description=initiate.description,
        end=initiate.end,
        owner_id=owner_id,
        start=initiate.start,
        updated_at=now,
    )
    if block.start <= now + START_BUFFER:
        raise BlockValidationError("Start time must be in the future")
    _validate_interval(block)
    await _validate_no_overlap(block=block, store=store)

    SpanAttributeEnum.BLOCK_ID.attribute(str(block.block_id))
    logger.info("Creating block from %s to %s", block.start, block.end)
    return await store.block_create(block)


@start_as_current_span("block_update")
async def update_block(
    block_id: UUID,
    initiate: QuietBlockInitiateModel,
    owner_id: str,
    store: IStore,
    now: datetime | None = None,
) -> QuietBlockStateModel:
    """
    Update the description and the slot of a quiet block.

    A start left untouched can be in the past, for a block already running. The reminder state is kept as is.

    Raises `BlockNotFoundError` if the block does not exist or is owned by someone else, `BlockValidationError` if a rule is not met, `BlockConflictError` if the new slot overlaps another block of the user.
    """
    now = now or utc_now()
    SpanAttributeEnum.BLOCK_ID.attribute(str(block_id))
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)

    existing = await get_block(block_id=block_id, owner_id=owner_id, store=store)
    block = QuietBlockStateModel.model_validate(
        {
            **existing.model_dump(),
            "description": initiate.description,
            "end": initiate.end,
            "start": initiate.start,
            "updated_at": now,
        }
    )
    if block.start != existing.start and block.start <= now + START_BUFFER:
        raise BlockValidationError(
            "Start time must be in the future when changing to a new time"
        )
    _validate_interval(block)
    await _validate_no_overlap(block=block, store=store, exclude_id=block_id)

    logger.info("Updating block to %s - %s", block.start, block.end)
    updated = await store.block_update(block)
    if not updated:
        # Deleted in the meantime
        raise BlockNotFoundError(block_id)
    return updated


async def get_block(
    block_id: UUID,
    owner_id: str,
    store: IStore,
) -> QuietBlockStateModel:
    """
    Get a block of a user.

    Raises `BlockNotFoundError` if the block does not exist or is owned by someone else.
    """
    block = await store.block_get(block_id)
    if not block or block.owner_id != owner_id:
        raise BlockNotFoundError(block_id)
    return block


async def delete_block(
    block_id: UUID,
    owner_id: str,
    store: IStore,
) -> None:
    """
    Delete a block of a user.

    Raises `BlockNotFoundError` if the block does not exist or is owned by someone else.
    """
    SpanAttributeEnum.BLOCK_ID.attribute(str(block_id))
    if not await store.block_delete(block_id=block_id, owner_id=owner_id):
        raise BlockNotFoundError(block_id)
    logger.info("Deleted block")


def _validate_interval(block: QuietBlockStateModel) -> None:
    if block.end <= block.start:
        raise BlockValidationError("End time must be after start time")
    duration = block.end - block.start
    if duration < MIN_DURATION:
        raise BlockValidationError(
            f"Quiet block must last at least {int(MIN_DURATION.total_seconds() // 60)} minutes"
        )
    if duration > MAX_DURATION:
        raise BlockValidationError(
            f"Quiet block must last at most {int(MAX_DURATION.total_seconds() // 3600)} hours"
        )


async def _validate_no_overlap(
    block: QuietBlockStateModel,
    store: IStore,
    exclude_id: UUID | None = None,
) -> None:
    conflict = await store.block_search_overlap(
        end=block.end,
        exclude_id=exclude_id,
        owner_id=block.owner_id,
        start=block.start,
    )
    if conflict:
        logger.info("Block overlaps %s", conflict.block_id)
        raise BlockConflictError(conflict.block_id)
