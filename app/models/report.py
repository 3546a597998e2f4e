from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from app.models.block import QuietBlockGetModel


class DispatchFailureModel(BaseModel):
    block_id: UUID
    reason: str


class DispatchReportModel(BaseModel):
    attempted: int = 0
    """Blocks selected by the run, upcoming and late."""
    failures: list[DispatchFailureModel] = []
    late: int = 0
    """Reminders sent after the block started, within the grace period."""
    now: datetime
    sent: int = 0
    """Reminders delivered and recorded, late ones included."""
    skipped: list[UUID] = []
    """Blocks already handled by a concurrent run."""


class NotificationPreviewModel(BaseModel):
    due: list[QuietBlockGetModel]
    """Blocks which would be notified by a run now."""
    grace_min: int
    late: list[QuietBlockGetModel]
    """Blocks already started, which would get a late reminder by a run now."""
    lookahead_min: int
    now: datetime
    upcoming: list[QuietBlockGetModel]
    """Blocks not notified yet, starting in the next hours."""
