from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from app.helpers.monitoring import start_as_current_span
from app.models.block import QuietBlockStateModel
from app.models.readiness import ReadinessEnum


class IStore(ABC):
    @abstractmethod
    @start_as_current_span("store_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("store_block_get")
    async def block_get(
        self,
        block_id: UUID,
    ) -> QuietBlockStateModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_block_create")
    async def block_create(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel:
        pass

    @abstractmethod
    @start_as_current_span("store_block_update")
    async def block_update(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel | None:
        """
        Update the user editable fields (description, start, end) of a block.

        Delivery fields (notified, claim) are never overwritten by this method. Returns the stored block, or `None` if it does not exist anymore.
        """

    @abstractmethod
    @start_as_current_span("store_block_delete")
    async def block_delete(
        self,
        block_id: UUID,
        owner_id: str,
    ) -> bool:
        pass

    @abstractmethod
    @start_as_current_span("store_block_search_all")
    async def block_search_all(
        self,
        owner_id: str,
    ) -> list[QuietBlockStateModel]:
        """
        List all the blocks of an owner, ascending by start.
        """

    @abstractmethod
    @start_as_current_span("store_block_search_overlap")
    async def block_search_overlap(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_id: UUID | None = None,
    ) -> QuietBlockStateModel | None:
        """
        Find a block of the owner intersecting `[start, end)`.
        """

    @abstractmethod
    @start_as_current_span("store_block_list_not_notified")
    async def block_list_not_notified(self) -> list[QuietBlockStateModel]:
        """
        List all the blocks without a delivered reminder.

        Raises `StoreUnavailableError` if the store cannot be queried.
        """

    @abstractmethod
    @start_as_current_span("store_block_try_claim")
    async def block_try_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Take the delivery lease of a block.

        Conditional update, only succeeds if the block is not notified and no other lease is valid at `now`. Returns whether this call took the lease.
        """

    @abstractmethod
    @start_as_current_span("store_block_release_claim")
    async def block_release_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        """
        Release a lease taken with `block_try_claim`, if still held by `claim_id`.
        """

    @abstractmethod
    @start_as_current_span("store_block_try_mark_notified")
    async def block_try_mark_notified(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        """
        Flip `notified` from false to true.

        Conditional update, only succeeds if the block is still not notified and the lease is still held by `claim_id`. Returns whether this call performed the flip.
        """
