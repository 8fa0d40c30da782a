"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (built from ORM objects)
"""

from datetime import datetime
from typing import Annotated, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, PlainSerializer, field_validator

from chatrelay.utils import isoformat


CommunicationType = Literal["sms", "whatsapp", "voice"]
ChannelStatus = Literal["active", "inactive", "suspended"]
SessionStatus = Literal["active", "archived", "closed"]
MessageType = Literal["text", "image", "video", "audio", "file", "mms", "call"]
Sender = Literal["user", "contact"]

# Datetimes leave the API as ISO-8601 UTC strings with a Z suffix
UtcDatetime = Annotated[datetime, PlainSerializer(isoformat, return_type=str)]


def _validate_e164(value: Optional[str], field_name: str) -> Optional[str]:
    """E.164-like phone number: starts with +, then digits only."""
    if value is None:
        return value
    value = value.strip()
    if not value.startswith("+"):
        raise ValueError(f"{field_name} must start with '+'")
    if len(value) < 2:
        raise ValueError(f"{field_name} must have at least one digit after '+'")
    if not value[1:].isdigit():
        raise ValueError(f"{field_name} must contain only digits after '+'")
    return value


# =============================================================================
# Message Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Operator-initiated message from the chat UI.

    - sender "user": operator speaking as the remote party (triggers auto-reply)
    - sender "contact": operator replying to the remote party
    - remote_number / local_number: the remote party's number and the channel
      number; older clients send them as user_phone_number / twilio_number
    """
    channel_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    content: str = Field(..., min_length=1, max_length=4096)
    sender: Sender
    type: MessageType = "text"
    communication_type: CommunicationType = "whatsapp"
    remote_number: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("remote_number", "user_phone_number"),
    )
    local_number: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("local_number", "twilio_number"),
    )

    @field_validator("remote_number", "local_number")
    @classmethod
    def validate_numbers(cls, v: Optional[str], info) -> Optional[str]:
        return _validate_e164(v, info.field_name)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class MessageResponse(BaseModel):
    """
    Externally shaped message; also the payload of realtime events.
    """
    id: str
    channel_id: str
    session_id: str
    content: str
    sender: str
    type: str
    communication_type: Optional[str] = None
    status: str
    created_at: UtcDatetime

    model_config = {"from_attributes": True}


class MessageDetailResponse(MessageResponse):
    """Single message including routing and delivery metadata."""
    direction: str
    authored_by: str
    provider_message_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))


# =============================================================================
# Channel Models
# =============================================================================

class ChannelCreate(BaseModel):
    name: str = Field(..., min_length=1)
    phone_number: str
    country_code: str = Field(..., min_length=1)
    type: CommunicationType = "whatsapp"
    status: ChannelStatus = "active"
    provider_sid: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str, info) -> str:
        return _validate_e164(v, info.field_name)


class ChannelUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone_number: Optional[str] = None
    country_code: Optional[str] = Field(None, min_length=1)
    type: Optional[CommunicationType] = None
    status: Optional[ChannelStatus] = None
    provider_sid: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: Optional[str], info) -> Optional[str]:
        return _validate_e164(v, info.field_name)


class ChannelResponse(BaseModel):
    id: str
    name: str
    phone_number: str
    country_code: str
    type: str
    status: str
    provider_sid: Optional[str] = None
    created_at: UtcDatetime

    model_config = {"from_attributes": True}


# =============================================================================
# Contact Models
# =============================================================================

class ContactCreate(BaseModel):
    name: str = Field(..., min_length=1)
    phone_number: str
    email: Optional[str] = None

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str, info) -> str:
        return _validate_e164(v, info.field_name)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None


class ContactUpdate(ContactCreate):
    name: Optional[str] = Field(None, min_length=1)
    phone_number: Optional[str] = None


class ContactResponse(BaseModel):
    id: str
    name: str
    phone_number: str
    email: Optional[str] = None
    created_at: UtcDatetime

    model_config = {"from_attributes": True}


# =============================================================================
# Session Models
# =============================================================================

class SessionCreate(BaseModel):
    channel_id: str = Field(..., min_length=1)
    communication_type: CommunicationType
    title: Optional[str] = None
    description: str = ""


class SessionUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[SessionStatus] = None


class SessionResponse(BaseModel):
    id: str
    channel_id: str
    communication_type: str
    title: str
    description: str
    status: str
    message_count: int
    last_message_at: UtcDatetime
    remote_number: Optional[str] = None
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("meta", "metadata"))
    created_at: UtcDatetime
    updated_at: UtcDatetime

    model_config = {"from_attributes": True}


class SessionDeleteResponse(BaseModel):
    message: str = "Session deleted successfully"
    messages_deleted: bool
    deleted_count: int = Field(0, ge=0)


class SessionArchiveResponse(BaseModel):
    message: str = "Session archived successfully"
    session: SessionResponse


# =============================================================================
# Auto-reply Models
# =============================================================================

class AutoReplyStatusResponse(BaseModel):
    enabled: bool
    provider: str
    delay_ms: int
    timeout_seconds: float


class AutoReplyTestRequest(BaseModel):
    message: str = Field(..., min_length=1)
    communication_type: CommunicationType = "whatsapp"


class AutoReplyTestResponse(BaseModel):
    user_message: str
    ai_response: Optional[str] = None
    enabled: bool


# =============================================================================
# Misc
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
