"""Event schema for the analytics collector.

Every event carries the visitor's experiment assignments at the time it
was emitted, which is what lets the warehouse attribute users and
conversions to variants.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    CLICK = "click"
    EXPERIMENT_ASSIGNMENT = "experiment_assignment"
    SIGNUP = "signup"
    PURCHASE = "purchase"
    EXPERIMENT_GOAL = "experiment_goal"
    CUSTOM = "custom"


class Event(BaseModel):
    event_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    event_type: EventType
    timestamp: datetime
    properties: dict[str, Any] = Field(default_factory=dict)
    # experiment_id -> variant_id
    experiments: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value
