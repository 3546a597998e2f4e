from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from azure.core.exceptions import ServiceRequestError
from azure.cosmos import ConsistencyLevel
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)
from pydantic import TypeAdapter, ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.helpers.cache import lru_acache
from app.helpers.config_models.database import CosmosDbModel
from app.helpers.http import azure_transport
from app.helpers.identity import credential
from app.helpers.instants import utc_now
from app.helpers.logging import logger
from app.helpers.monitoring import suppress
from app.models.block import QuietBlockStateModel
from app.models.error import StoreUnavailableError
from app.models.readiness import ReadinessEnum
from app.persistence.istore import IStore

_datetime_adapter = TypeAdapter(datetime)


class CosmosDbStore(IStore):
    """
    Store the blocks as documents in a Cosmos DB container, partitioned by owner.

    The container partition key must be `/owner_id`. Conditional updates use the partial document update with a filter predicate, the server rejects the patch with a 412 if the predicate does not match anymore.

    See: https://learn.microsoft.com/en-us/azure/cosmos-db/partial-document-update#conditional-patch
    """

    _config: CosmosDbModel

    def __init__(self, config: CosmosDbModel):
        logger.info("Using Cosmos DB %s/%s", config.database, config.container)
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Cosmos DB service.

        This will validate the ACID properties of the database: Create, Read, Update, Delete.
        """
        test_id = str(uuid4())
        test_partition = "readiness"
        test_dict = {
            "id": test_id,  # unique id
            "owner_id": test_partition,  # partition key
            "test": "test",
        }
        try:
            # Test the item does not exist
            if await self._item_exists(test_id, test_partition):
                return ReadinessEnum.FAIL
            async with self._use_client() as db:
                # Create a new item
                await db.upsert_item(body=test_dict)
                # Test the item is the same
                read_item = await db.read_item(
                    item=test_id, partition_key=test_partition
                )
                assert (
                    {k: v for k, v in read_item.items() if k in test_dict} == test_dict
                )  # Check only the relevant fields, Cosmos DB adds metadata
                # Delete the item
                await db.delete_item(item=test_id, partition_key=test_partition)
            # Test the item does not exist
            if await self._item_exists(test_id, test_partition):
                return ReadinessEnum.FAIL
            return ReadinessEnum.OK
        except AssertionError:
            logger.exception("Readiness test failed")
        except CosmosHttpResponseError:
            logger.exception("Error requesting CosmosDB")
        except Exception:
            logger.exception("Unknown error while checking Cosmos DB readiness")
        return ReadinessEnum.FAIL

    async def _item_exists(self, test_id: str, partition_key: str) -> bool:
        exist = False
        async with self._use_client() as db:
            with suppress(CosmosResourceNotFoundError):
                await db.read_item(item=test_id, partition_key=partition_key)
                exist = True
        return exist

    async def block_get(
        self,
        block_id: UUID,
    ) -> QuietBlockStateModel | None:
        logger.debug("Loading block %s", block_id)
        blocks = await self._query(
            query="SELECT * FROM c WHERE STRINGEQUALS(c.id, @id)",
            parameters=[{"name": "@id", "value": str(block_id)}],
        )
        return blocks[0] if blocks else None

    async def block_create(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel:
        logger.debug("Creating new block %s", block.block_id)

        # Serialize
        data = block.model_dump(mode="json")
        data["id"] = str(block.block_id)

        # Persist
        async with self._use_client() as db:
            await db.create_item(body=data)

        return block

    async def block_update(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel | None:
        logger.debug("Updating block %s", block.block_id)
        data = block.model_dump(mode="json")
        return await self._patch(
            block=block,
            filter_predicate=None,
            values={
                field: data[field]
                for field in ("description", "end", "start", "updated_at")
            },
        )

    async def block_delete(
        self,
        block_id: UUID,
        owner_id: str,
    ) -> bool:
        logger.debug("Deleting block %s", block_id)
        try:
            async with self._use_client() as db:
                await db.delete_item(item=str(block_id), partition_key=owner_id)
        except CosmosResourceNotFoundError:
            return False
        return True

    async def block_search_all(
        self,
        owner_id: str,
    ) -> list[QuietBlockStateModel]:
        logger.debug("Searching blocks for %s", owner_id)
        return await self._query(
            partition_key=owner_id,
            query="SELECT * FROM c WHERE c.owner_id = @owner_id ORDER BY c.start ASC",
            parameters=[{"name": "@owner_id", "value": owner_id}],
        )

    async def block_search_overlap(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_id: UUID | None = None,
    ) -> QuietBlockStateModel | None:
        blocks = await self._query(
            partition_key=owner_id,
            query='SELECT * FROM c WHERE c.owner_id = @owner_id AND c.id != @exclude_id AND c.start < @end AND c["end"] > @start',
            parameters=[
                {"name": "@end", "value": self._dump_datetime(end)},
                {"name": "@exclude_id", "value": str(exclude_id or "")},
                {"name": "@owner_id", "value": owner_id},
                {"name": "@start", "value": self._dump_datetime(start)},
            ],
        )
        return blocks[0] if blocks else None

    async def block_list_not_notified(self) -> list[QuietBlockStateModel]:
        try:
            return await self._query_with_retry(
                query="SELECT * FROM c WHERE c.notified = false",
            )
        except (CosmosHttpResponseError, ServiceRequestError) as e:
            raise StoreUnavailableError("Cosmos DB cannot be queried") from e

    async def block_try_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        now_str = self._dump_datetime(now)
        res = await self._patch(
            block=block,
            filter_predicate=f"FROM c WHERE c.notified = false AND (NOT IS_DEFINED(c.claim_expires_at) OR IS_NULL(c.claim_expires_at) OR c.claim_expires_at <= '{now_str}')",
            values={
                "claim_expires_at": self._dump_datetime(expires_at),
                "claim_id": str(claim_id),
            },
        )
        return res is not None

    async def block_release_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        res = await self._patch(
            block=block,
            filter_predicate=f"FROM c WHERE c.claim_id = '{claim_id}'",
            values={
                "claim_expires_at": None,
                "claim_id": None,
            },
        )
        return res is not None

    async def block_try_mark_notified(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        res = await self._patch(
            block=block,
            filter_predicate=f"FROM c WHERE c.notified = false AND c.claim_id = '{claim_id}'",
            values={
                "claim_expires_at": None,
                "claim_id": None,
                "notified": True,
                "updated_at": self._dump_datetime(utc_now()),
            },
        )
        return res is not None

    async def _patch(
        self,
        block: QuietBlockStateModel,
        filter_predicate: str | None,
        values: dict[str, Any],
    ) -> QuietBlockStateModel | None:
        """
        Apply a partial update, optionally conditional.

        Returns the updated block, or `None` if the block does not exist or the predicate did not match.
        """
        kwargs: dict[str, Any] = {}
        if filter_predicate:
            kwargs["filter_predicate"] = filter_predicate
        try:
            async with self._use_client() as db:
                # See: https://learn.microsoft.com/en-us/azure/cosmos-db/partial-document-update#supported-operations
                remote_raw = await db.patch_item(
                    item=str(block.block_id),
                    partition_key=block.owner_id,
                    patch_operations=[
                        {
                            "op": "set",
                            "path": f"/{field}",
                            "value": value,
                        }
                        for field, value in values.items()
                    ],
                    **kwargs,
                )
        except CosmosAccessConditionFailedError:
            logger.debug("Condition not met for block %s", block.block_id)
            return None
        except CosmosResourceNotFoundError:
            logger.debug("Block %s not found", block.block_id)
            return None

        # Parse remote object
        try:
            return QuietBlockStateModel.model_validate(remote_raw)
        except ValidationError:
            logger.debug("Parsing error", exc_info=True)
            return None

    @retry(
        reraise=True,
        retry=retry_if_exception_type(ServiceRequestError),  # Catch for network errors
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.8, max=8),
    )
    async def _query_with_retry(
        self,
        query: str,
    ) -> list[QuietBlockStateModel]:
        return await self._query(query=query)

    async def _query(
        self,
        query: str,
        parameters: list[dict[str, Any]] | None = None,
        partition_key: str | None = None,
    ) -> list[QuietBlockStateModel]:
        kwargs: dict[str, Any] = {}
        if partition_key:
            kwargs["partition_key"] = partition_key
        blocks: list[QuietBlockStateModel] = []
        async with self._use_client() as db:
            items = db.query_items(
                query=query,
                parameters=parameters or [],
                **kwargs,
            )
            async for raw in items:
                if not raw:
                    continue
                try:
                    blocks.append(QuietBlockStateModel.model_validate(raw))
                except ValidationError:
                    logger.debug("Parsing error", exc_info=True)
        return blocks

    @staticmethod
    def _dump_datetime(value: datetime) -> str:
        """
        Serialize a datetime the same way the stored documents are, truncated to the second.
        """
        return _datetime_adapter.dump_python(value.replace(microsecond=0), mode="json")

    @lru_acache()
    async def _use_service_client(self) -> CosmosClient:
        """
        Generate the Cosmos DB client.
        """
        logger.debug("Using Cosmos DB service client for %s", self._config.endpoint)

        return CosmosClient(
            # Usage
            consistency_level=ConsistencyLevel.Strong,
            # Reliability
            connection_timeout=10,  # 10 secs
            retry_backoff_factor=0.8,
            retry_backoff_max=8,
            retry_total=3,
            # Performance
            transport=await azure_transport(),
            # Deployment
            url=self._config.endpoint,
            # Authentication
            credential=await credential(),
        )

    @asynccontextmanager
    async def _use_client(self) -> AsyncGenerator[ContainerProxy, None]:
        """
        Generate the container client.
        """
        async with await self._use_service_client() as client:
            database = client.get_database_client(self._config.database)
            yield database.get_container_client(self._config.container)
