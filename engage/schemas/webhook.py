"""WhatsApp Cloud API webhook envelope."""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class WhatsAppProfile(_Payload):
    name: Optional[str] = None


class WhatsAppContact(_Payload):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppText(_Payload):
    body: str = ""


class WhatsAppMedia(_Payload):
    id: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class WhatsAppMessage(_Payload):
    from_: str = Field(alias="from")
    id: Optional[str] = None
    timestamp: Optional[str] = None
    type: Optional[str] = None
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppMedia] = None
    audio: Optional[WhatsAppMedia] = None
    video: Optional[WhatsAppMedia] = None
    document: Optional[WhatsAppMedia] = None


class WhatsAppStatus(_Payload):
    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    biz_opaque_callback_data: Optional[str] = None


class WhatsAppMetadata(_Payload):
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class WhatsAppValue(_Payload):
    messaging_product: Optional[str] = None
    metadata: Optional[WhatsAppMetadata] = None
    contacts: List[WhatsAppContact] = Field(default_factory=list)
    messages: List[WhatsAppMessage] = Field(default_factory=list)
    statuses: List[WhatsAppStatus] = Field(default_factory=list)


class WhatsAppChange(_Payload):
    field: Optional[str] = None
    value: WhatsAppValue


class WhatsAppEntry(_Payload):
    id: Optional[str] = None
    changes: List[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(_Payload):
    object: Optional[str] = None
    entry: List[WhatsAppEntry] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
    skipped: int = 0
    details: Optional[List[Any]] = None
