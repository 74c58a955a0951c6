"""AdSync — Webhook Notification Payloads."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


class ObjectType(str, Enum):
    AD_ACCOUNT = "ad_account"
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"
    PAGE = "page"


class WebhookChange(BaseModel):
    field: str
    value: Any = None


class WebhookEntry(BaseModel):
    id: str
    time: Optional[int] = None
    changes: List[WebhookChange] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        # Graph ids sometimes arrive as JSON numbers
        return str(value) if isinstance(value, int) else value


class WebhookPayload(BaseModel):
    """`{object, entry: [{id, time, changes: [{field, value}]}]}`.

    `object` stays a plain string so unknown types are logged and skipped
    rather than rejected.
    """

    object: str
    entry: List[WebhookEntry] = Field(default_factory=list)

    @property
    def object_type(self) -> Optional[ObjectType]:
        try:
            return ObjectType(self.object)
        except ValueError:
            return None
