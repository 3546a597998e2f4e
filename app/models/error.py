from uuid import UUID

from pydantic import BaseModel


class ErrorInnerModel(BaseModel):
    message: str
    details: list[str]


class ErrorModel(BaseModel):
    error: ErrorInnerModel


class BlockValidationError(Exception):
    """
    Block violates a creation or update rule, the caller must change its request.
    """


class BlockConflictError(Exception):
    """
    Block overlaps another block of the same owner.
    """

    conflict_id: UUID

    def __init__(self, conflict_id: UUID):
        super().__init__("This time slot overlaps with an existing quiet block")
        self.conflict_id = conflict_id


class BlockNotFoundError(Exception):
    """
    Block does not exist, or is not owned by the caller.
    """

    block_id: UUID

    def __init__(self, block_id: UUID):
        super().__init__(f"Quiet block {block_id} not found")
        self.block_id = block_id


class ProviderFailure(Exception):
    """
    A single email provider attempt failed, the next provider can be tried.
    """

    provider: str
    reason: str

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


class DispatchFailure(Exception):
    """
    Reminder could not be delivered for a block during this run.
    """


class StoreUnavailableError(Exception):
    """
    Store cannot be reached, the whole dispatch run fails.
    """
