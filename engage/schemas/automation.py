"""Trigger configuration for automation rules, one variant per trigger kind."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class TriggerKind(str, Enum):
    NEW_CONTACT = "new_contact"
    FIRST_MESSAGE = "first_message"
    KEYWORD = "keyword"
    SCHEDULED = "scheduled"
    TICKET_STATUS_CHANGE = "ticket_status_change"
    ANNIVERSARY = "anniversary"


class _Trigger(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class NewContactTrigger(_Trigger):
    type: Literal["new_contact"] = "new_contact"


class FirstMessageTrigger(_Trigger):
    type: Literal["first_message"] = "first_message"


class KeywordTrigger(_Trigger):
    type: Literal["keyword"] = "keyword"
    keywords: List[str] = Field(default_factory=list)

    @field_validator("keywords")
    @classmethod
    def _drop_blank_keywords(cls, value: List[str]) -> List[str]:
        return [keyword.strip() for keyword in value if keyword and keyword.strip()]


class ScheduledTrigger(_Trigger):
    type: Literal["scheduled"] = "scheduled"
    send_at: Optional[datetime] = None
    cron: Optional[str] = None


class TicketStatusTrigger(_Trigger):
    type: Literal["ticket_status_change"] = "ticket_status_change"
    statuses: List[str] = Field(default_factory=list)


class AnniversaryTrigger(_Trigger):
    type: Literal["anniversary"] = "anniversary"
    send_hour: int = 9


TriggerConfig = Annotated[
    Union[
        NewContactTrigger,
        FirstMessageTrigger,
        KeywordTrigger,
        ScheduledTrigger,
        TicketStatusTrigger,
        AnniversaryTrigger,
    ],
    Field(discriminator="type"),
]

_trigger_adapter = TypeAdapter(TriggerConfig)


def parse_trigger(raw: Optional[dict]) -> TriggerConfig:
    """Validate a stored trigger_config. Raises pydantic.ValidationError on unknown kinds."""
    return _trigger_adapter.validate_python(raw or {})
