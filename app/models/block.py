from datetime import UTC, datetime
from uuid import UUID, uuid4

from pydantic import (
    AwareDatetime,
    BaseModel,
    Field,
    field_validator,
    model_validator,
)

from app.helpers.instants import to_instant


class QuietBlockInitiateModel(BaseModel):
    """
    Payload to create or update a quiet block.

    Instants can be sent either with an offset (ISO 8601), or as a local date-time along with `timezone_offset`, the value returned by JavaScript `Date.getTimezoneOffset()` (minutes to add to the local time to get UTC).
    """

    description: str = Field(max_length=100, min_length=1)
    end: datetime
    start: datetime
    timezone_offset: int | None = Field(default=None, ge=-14 * 60, le=14 * 60)

    @field_validator("description", mode="before")
    @classmethod
    def _validate_description(cls, description: str) -> str:
        return description.strip() if isinstance(description, str) else description

    @model_validator(mode="after")
    def _validate_instants(self) -> "QuietBlockInitiateModel":
        """
        Convert both instants to UTC.
        """
        self.start = to_instant(self.start, self.timezone_offset)
        self.end = to_instant(self.end, self.timezone_offset)
        return self


class QuietBlockGetModel(BaseModel):
    # Immutable fields
    block_id: UUID = Field(default_factory=uuid4, frozen=True)
    created_at: AwareDatetime = Field(
        default_factory=lambda: datetime.now(UTC), frozen=True
    )
    owner_id: str = Field(frozen=True, min_length=1)
    # Editable fields
    description: str = Field(max_length=100, min_length=1)
    end: AwareDatetime
    notified: bool = False
    start: AwareDatetime
    updated_at: AwareDatetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("created_at", "end", "start", "updated_at")
    @classmethod
    def _validate_utc(cls, value: datetime) -> datetime:
        """
        Store every instant in UTC, truncated to the second.

        Serialized instants then share the same ISO 8601 length, and can be compared as strings by the stores. Local time is only a presentation concern.
        """
        return value.astimezone(UTC).replace(microsecond=0)


class QuietBlockStateModel(QuietBlockGetModel, extra="ignore"):
    # Editable fields
    claim_expires_at: AwareDatetime | None = None
    claim_id: UUID | None = None

    @field_validator("claim_expires_at")
    @classmethod
    def _validate_claim_expires_at(cls, value: datetime | None) -> datetime | None:
        return value.astimezone(UTC).replace(microsecond=0) if value else None

    def is_claimed(self, now: datetime) -> bool:
        """
        Whether a dispatcher holds a valid delivery lease on the block.
        """
        return bool(self.claim_expires_at and self.claim_expires_at > now)
