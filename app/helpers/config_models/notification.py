from datetime import tzinfo

from pydantic import BaseModel, Field, SecretStr, field_validator
from pytz import UnknownTimeZoneError, timezone


class NotificationModel(BaseModel):
    claim_ttl_sec: int = Field(default=300, ge=30)
    """Lease held by a dispatcher on a block while delivering its reminder."""
    concurrency: int = Field(default=4, ge=1)
    """Blocks processed in parallel during a single run."""
    display_timezone: str = "UTC"
    """Timezone used to format instants in reminder emails."""
    grace_min: int = Field(default=30, ge=0)
    """Late reminders are still sent this long after a missed start. Set 0 to disable."""
    interval_sec: int = Field(default=60, ge=5)
    lookahead_min: int = Field(default=10, ge=0)
    """Reminders are sent this long before the start."""
    scheduler_enabled: bool = True
    """Run the periodic dispatch loop alongside the API."""
    trigger_secret: SecretStr | None = None
    """If set, required in the "X-Trigger-Secret" header of the trigger endpoint."""

    @field_validator("display_timezone")
    @classmethod
    def _validate_display_timezone(cls, display_timezone: str) -> str:
        try:
            timezone(display_timezone)
        except UnknownTimeZoneError as e:
            raise ValueError(f"Unknown timezone {display_timezone}") from e
        return display_timezone

    def tz(self) -> tzinfo:
        return timezone(self.display_timezone)
