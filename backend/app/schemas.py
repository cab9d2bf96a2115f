from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Action = Literal["send_options", "preview", "confirm", "mark_paid"]


class TripDateSelectionRequest(BaseModel):
    """Body of `POST /v1/trip-date-selection`; which fields matter depends on `action`."""

    model_config = ConfigDict(extra="ignore")

    action: Action
    fulfillment_id: str | None = Field(default=None, max_length=64)
    booking_id: str | None = Field(default=None, max_length=64)
    proposed_dates: list[Any] | None = None
    token: str | None = Field(default=None, max_length=256)
    selected_date: str | None = Field(default=None, max_length=40)
    lang: str | None = Field(default=None, max_length=8)
    checkout_session_id: str | None = Field(default=None, max_length=255)
    payment_intent_id: str | None = Field(default=None, max_length=255)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

