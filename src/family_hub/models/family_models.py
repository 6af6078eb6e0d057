"""Family models: household members, workflow statuses, delivery records and request payloads."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

# Constants for validation
VAULT_TITLE_MAX_LENGTH: int = 100
VAULT_NOTES_MAX_LENGTH: int = 1000
MESSAGE_SUBJECT_MAX_LENGTH: int = 200
MESSAGE_BODY_MAX_LENGTH: int = 5000
PASSWORD_MIN_LENGTH: int = 6

# Account role -> inclusive age bracket
AGE_BRACKETS: Dict[str, tuple] = {
    "child": (8, 12),
    "teen": (13, 17),
    "young-adult": (18, 25),
}

AGE_BRACKET_MESSAGES: Dict[str, str] = {
    "child": "Child account role requires age between 8-12",
    "teen": "Teen account role requires age between 13-17",
    "young-adult": "Young adult account role requires age between 18-25",
}


class MemberKind(str, Enum):
    """Kinds of household member a reference can point at."""

    PARENT = "parent"
    TEEN = "teen"
    CHILD = "child"


MEMBER_COLLECTIONS: Dict[MemberKind, str] = {
    MemberKind.PARENT: "parents",
    MemberKind.TEEN: "teens",
    MemberKind.CHILD: "children",
}


class ParentRole(str, Enum):
    MOM = "mom"
    DAD = "dad"
    PARENT = "parent"


class AccountRole(str, Enum):
    CHILD = "child"
    TEEN = "teen"
    YOUNG_ADULT = "young-adult"


class NotificationPreference(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"
    NONE = "none"


class MergeRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class TeenInvitationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    USED = "used"
    EXPIRED = "expired"


class InvitationMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class DeliveryMethod(str, Enum):
    IN_APP = "in-app"
    SMS = "sms"
    EMAIL = "email"
    ALL = "all"


class VaultCategory(str, Enum):
    STREAMING = "streaming"
    BOOKING = "booking"
    SCHOOL = "school"
    SHOPPING = "shopping"
    UTILITIES = "utilities"
    SOCIAL_MEDIA = "social media"
    WORK = "work"
    OTHER = "other"


class MemberRef(BaseModel):
    """
    Tagged reference to a household member.

    Stored as ``{"kind": "teen", "id": ObjectId(...)}`` so resolution can
    dispatch on ``kind`` without a separate discriminator field.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    kind: MemberKind
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def validate_object_id(cls, v: Any) -> str:
        value = str(v)
        if not ObjectId.is_valid(value):
            raise ValueError(f"'{value}' is not a valid member id")
        return value

    @property
    def object_id(self) -> ObjectId:
        return ObjectId(self.id)

    def to_document(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "id": self.object_id}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MemberRef":
        return cls(kind=MemberKind(doc["kind"]), id=str(doc["id"]))

    @classmethod
    def parent(cls, member_id: Any) -> "MemberRef":
        return cls(kind=MemberKind.PARENT, id=str(member_id))

    @classmethod
    def teen(cls, member_id: Any) -> "MemberRef":
        return cls(kind=MemberKind.TEEN, id=str(member_id))

    @classmethod
    def child(cls, member_id: Any) -> "MemberRef":
        return cls(kind=MemberKind.CHILD, id=str(member_id))


class ChannelStatus(BaseModel):
    """Outcome of one delivery channel."""

    attempted: bool = False
    sent: bool = False
    sent_at: Optional[datetime] = None
    error: Optional[str] = None


class InAppStatus(BaseModel):
    sent: bool = False
    sent_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None


class DeliveryStatus(BaseModel):
    """Independent per-channel delivery record."""

    in_app: InAppStatus = Field(default_factory=InAppStatus)
    email: ChannelStatus = Field(default_factory=ChannelStatus)
    sms: ChannelStatus = Field(default_factory=ChannelStatus)

    @property
    def any_sent(self) -> bool:
        return self.in_app.sent or self.email.sent or self.sms.sent


class NotificationResult(BaseModel):
    """What ``notify`` did for one recipient."""

    preference: NotificationPreference
    email: ChannelStatus = Field(default_factory=ChannelStatus)
    sms: ChannelStatus = Field(default_factory=ChannelStatus)

    @property
    def any_sent(self) -> bool:
        return self.email.sent or self.sms.sent


class MergeDetails(BaseModel):
    children_merged: List[str] = Field(default_factory=list)
    events_merged: List[str] = Field(default_factory=list)
    merged_at: datetime


class RegistrationRequired(BaseModel):
    """Returned by invitation accept when the invited email has no account yet."""

    redirect_to: str = "register"
    email: str
    role: ParentRole
    family_name: Optional[str] = None
    token: str


# Request Models
class SendTeenInvitationRequest(BaseModel):
    """Payload for inviting a minor to create a dependent account."""

    teen_name: str = Field(..., min_length=1, max_length=100)
    account_role: AccountRole
    invitation_method: InvitationMethod
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, min_length=7, max_length=20)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @model_validator(mode="after")
    def contact_matches_method(self) -> "SendTeenInvitationRequest":
        if self.invitation_method == InvitationMethod.EMAIL and not self.email:
            raise ValueError("Email is required for email invitations")
        if self.invitation_method == InvitationMethod.SMS and not self.phone_number:
            raise ValueError("Phone number is required for SMS invitations")
        return self


class RegisterTeenRequest(BaseModel):
    """Payload for completing a teen registration from a verified code."""

    verification_code: str = Field(..., pattern=r"^\d{6}$")
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    date_of_birth: date

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @model_validator(mode="after")
    def requires_contact(self) -> "RegisterTeenRequest":
        if not self.email and not self.phone_number:
            raise ValueError("Either email or phone number is required")
        return self


class VaultEntryRequest(BaseModel):
    """Payload for creating or updating a password vault entry."""

    title: str = Field(..., min_length=1, max_length=VAULT_TITLE_MAX_LENGTH)
    category: VaultCategory = VaultCategory.OTHER
    website_link: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=VAULT_NOTES_MAX_LENGTH)
    is_favorite: bool = False
    shared_with: List[str] = Field(default_factory=list)
    shared_with_all: bool = False


class EventRequest(BaseModel):
    """Payload for a calendar event."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    location: Optional[str] = None
    assigned_to: List[str] = Field(default_factory=list)
    assigned_to_all: bool = False

    @model_validator(mode="after")
    def end_after_start(self) -> "EventRequest":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date must be after start date")
        return self


class TaskRequest(BaseModel):
    """Payload for a household task."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: str = Field("medium", pattern=r"^(low|medium|high)$")
    assigned_to: List[MemberRef] = Field(default_factory=list)
    assign_to_all: bool = False
