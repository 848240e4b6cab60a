"""
Pydantic schemas for the inquiry sync core.

This module contains:
- Enumerations for inquiry status, account role, pet availability and
  notification kind
- Domain models (Inquiry, Message, Notification) exchanged with the
  remote store gateways
- Request/response models for the HTTP consumer surface
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from inquiry_sync.utils import parse_timestamp


# =============================================================================
# Enumerations
# =============================================================================

class InquiryStatus(str, Enum):
    NEW = "New"
    CONTACTED = "Contacted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class Role(str, Enum):
    SHELTER = "shelter"
    APPLICANT = "applicant"


class PetAvailability(str, Enum):
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    ADOPTED = "Adopted"


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


def _validate_iso8601(value: str) -> str:
    try:
        parse_timestamp(value)
    except ValueError:
        raise ValueError("must be a valid ISO-8601 timestamp (e.g., 2024-01-01T10:00:00Z)")
    return value


# =============================================================================
# Domain Models
# =============================================================================

class ApplicantDetails(BaseModel):
    """Applicant profile snapshot attached to an inquiry."""
    location: Optional[str] = None
    bio: Optional[str] = None
    household: Optional[dict[str, Any]] = None
    availability: Optional[str] = None


class Inquiry(BaseModel):
    """
    An applicant's request to adopt a specific pet from a specific shelter.

    shelter_id and pet_id never change after creation. applicant_id is
    None when the applicant had no account at submission time.
    """
    id: str = Field(..., min_length=1, description="Opaque inquiry identifier")
    shelter_id: str = Field(..., description="Owning shelter")
    pet_id: str = Field(..., description="Pet the applicant asked about")
    pet_name: str = Field(default="Unknown", description="Denormalized pet name snapshot")
    applicant_id: Optional[str] = Field(None, description="Applicant account, if any")
    applicant_name: str = Field(..., description="Applicant display name")
    email: str = Field(default="", description="Applicant email")
    phone: str = Field(default="", description="Applicant phone")
    message: str = Field(default="", description="Free-text opening message")
    date: str = Field(..., description="Creation timestamp (ISO-8601)")
    status: InquiryStatus = Field(default=InquiryStatus.NEW)
    has_unread_messages: Optional[bool] = Field(
        None,
        description="Remote store reports unread messages from the other party"
    )
    applicant_details: Optional[ApplicantDetails] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return _validate_iso8601(v)


class Message(BaseModel):
    """A single chat message in an inquiry thread."""
    id: str = Field(..., min_length=1, description="Message identifier, unique within the inquiry")
    inquiry_id: str = Field(..., description="Owning inquiry")
    sender_id: str = Field(..., description="Author account")
    content: str = Field(..., description="Message text")
    created_at: str = Field(..., description="Creation timestamp (ISO-8601)")
    is_read: bool = Field(default=False)

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: str) -> str:
        return _validate_iso8601(v)


class InquiryCreate(BaseModel):
    """Payload for submitting a new inquiry."""
    shelter_id: str = Field(..., min_length=1)
    pet_id: str = Field(..., min_length=1)
    pet_name: Optional[str] = None
    applicant_id: Optional[str] = None
    applicant_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str = Field(default="")
    message: str = Field(default="", max_length=4096)


class Notification(BaseModel):
    """User-facing notification event. The core never renders these."""
    id: str
    message: str
    kind: NotificationKind
    created_at: str


# =============================================================================
# HTTP Request Models
# =============================================================================

class SessionRequest(BaseModel):
    """Start an account session for the local user."""
    account_id: str = Field(..., min_length=1)
    role: Role


class StatusUpdateRequest(BaseModel):
    status: InquiryStatus


class SendMessageRequest(BaseModel):
    text: str = Field(..., max_length=4096, description="Message text")


# =============================================================================
# HTTP Response Models
# =============================================================================

class SessionResponse(BaseModel):
    status: str = Field(default="ok")
    account_id: str
    role: Role


class InquiryListResponse(BaseModel):
    """
    Response model for GET /inquiries.

    Contains:
    - data: inquiries visible to the current account, newest first
    - total: number of inquiries
    - unread_count: derived unread total for the current role
    """
    data: list[Inquiry] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    unread_count: int = Field(..., ge=0)


class AllowedActionsResponse(BaseModel):
    inquiry_id: str
    status: InquiryStatus
    actions: list[InquiryStatus] = Field(default_factory=list)


class MessageListResponse(BaseModel):
    """Deduplicated, timestamp-ascending message list for one inquiry."""
    inquiry_id: str
    data: list[Message] = Field(default_factory=list)


class NotificationListResponse(BaseModel):
    data: list[Notification] = Field(default_factory=list)


class AcceptedResponse(BaseModel):
    status: str = Field(default="accepted")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
