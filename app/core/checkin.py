from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckinRecord(BaseModel):
    """One morning self-report.

    Numeric fields stay ``None`` when the user did not report them; a reported
    zero and a missing value are different things.
    """

    model_config = ConfigDict(frozen=True)

    sleep_hours: Optional[float] = Field(default=None, ge=0)
    mood: Optional[int] = Field(default=None, ge=1, le=10)
    energy: Optional[int] = Field(default=None, ge=1, le=10)
    notes: str = ""

    def has_numeric(self) -> bool:
        return any(value is not None for value in (self.sleep_hours, self.mood, self.energy))

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()
