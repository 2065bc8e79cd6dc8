from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from klearkarma.storage.records import RecordType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    USER = "user"
    PRACTITIONER = "practitioner"
    SUPPORT = "support"
    CURATOR = "curator"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


SELF_SERVICE_ROLES = frozenset({Role.USER, Role.PRACTITIONER})
STAFF_ROLES = frozenset(
    {Role.SUPPORT, Role.CURATOR, Role.MODERATOR, Role.ADMIN, Role.SUPERADMIN}
)


class Permission(str, Enum):
    USER_READ = "user:read"
    USER_WRITE = "user:write"
    USER_DELETE = "user:delete"
    PRACTITIONER_READ = "practitioner:read"
    PRACTITIONER_WRITE = "practitioner:write"
    PRACTITIONER_DELETE = "practitioner:delete"
    PRODUCT_READ = "product:read"
    PRODUCT_WRITE = "product:write"
    PRODUCT_DELETE = "product:delete"
    BOOKING_READ = "booking:read"
    BOOKING_WRITE = "booking:write"
    BOOKING_DELETE = "booking:delete"
    PAYMENT_READ = "payment:read"
    PAYMENT_WRITE = "payment:write"
    PAYMENT_REFUND = "payment:refund"
    CONTENT_READ = "content:read"
    CONTENT_WRITE = "content:write"
    CONTENT_DELETE = "content:delete"
    CONTENT_MODERATE = "content:moderate"
    SYSTEM_READ = "system:read"
    SYSTEM_WRITE = "system:write"
    SYSTEM_ADMIN = "system:admin"
    SYSTEM_AUDIT = "system:audit"
    ANALYTICS_READ = "analytics:read"
    ANALYTICS_EXPORT = "analytics:export"


class Record(BaseModel):
    """Base for every stored record: a unique id plus timestamps."""

    model_config = ConfigDict(extra="ignore", use_enum_values=False)

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def touched(self, **changes) -> "Record":
        """Validated copy with ``changes`` applied and ``updated_at`` bumped.

        Raises pydantic's ``ValidationError`` rather than returning a record
        that would fail validation when read back.
        """
        return type(self).model_validate(
            {**self.model_dump(), **changes, "updated_at": _utcnow()}
        )


class User(Record):
    email: str
    full_name: str
    role: Role = Role.USER
    permissions: List[Permission] = Field(default_factory=list)
    password_hash: str
    password_algo: str
    phone: Optional[str] = None
    bio: Optional[str] = None
    verified: bool = False
    active: bool = True
    last_login: Optional[datetime] = None


class Service(Record):
    practitioner_id: str
    name: str
    description: str = ""
    category: str
    duration_minutes: int = Field(gt=0)
    price: float = Field(ge=0)
    currency: str = "USD"
    active: bool = True


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Appointment(Record):
    customer_id: str
    practitioner_id: str
    service_id: str
    date: str
    time: str
    duration_minutes: int
    price: float
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None


class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Review(Record):
    appointment_id: str
    customer_id: str
    practitioner_id: str
    service_id: str
    rating: int = Field(ge=1, le=5)
    title: Optional[str] = None
    comment: str
    anonymous: bool = False
    customer_name: Optional[str] = None
    moderation_status: ModerationStatus = ModerationStatus.PENDING
    moderation_notes: Optional[str] = None
    moderated_by: Optional[str] = None
    moderated_at: Optional[datetime] = None


class Message(Record):
    conversation_id: str
    sender_id: str
    recipient_id: str
    content: str
    appointment_id: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None


class Product(Record):
    name: str
    description: str = ""
    category: str
    modality: Optional[str] = None
    price: float = Field(ge=0)
    currency: str = "USD"
    curator_practitioner_id: Optional[str] = None
    verified: bool = False
    in_stock: bool = True
    rating: float = 0.0
    affiliate_url: Optional[str] = None


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Stable conversation id for a pair of participants, order independent."""
    first, second = sorted((user_a, user_b))
    return f"{first}_{second}"


USERS: RecordType[User] = RecordType(
    "user",
    User,
    {
        "primary": "user:{id}",
        "by_role": "role_users:{role}:{id}",
    },
)

SERVICES: RecordType[Service] = RecordType(
    "service",
    Service,
    {
        "primary": "service:{id}",
        "by_practitioner": "practitioner_services:{practitioner_id}:{id}",
        "by_category": "category_services:{category}:{id}",
    },
)

APPOINTMENTS: RecordType[Appointment] = RecordType(
    "appointment",
    Appointment,
    {
        "primary": "appointment:{id}",
        "by_customer": "user_appointments:{customer_id}:{id}",
        "by_practitioner": "practitioner_appointments:{practitioner_id}:{id}",
    },
)

REVIEWS: RecordType[Review] = RecordType(
    "review",
    Review,
    {
        "primary": "review:{id}",
        "by_practitioner": "practitioner_reviews:{practitioner_id}:{id}",
        "by_service": "service_reviews:{service_id}:{id}",
        "by_customer": "user_reviews:{customer_id}:{id}",
    },
)

MESSAGES: RecordType[Message] = RecordType(
    "message",
    Message,
    {
        "primary": "message:{id}",
        "by_sender": "user_messages:{sender_id}:{id}",
        "by_recipient": "user_messages:{recipient_id}:{id}",
        "by_conversation": "conversation:{conversation_id}:{id}",
    },
)

PRODUCTS: RecordType[Product] = RecordType(
    "product",
    Product,
    {
        "primary": "product:{id}",
        "by_curator": "practitioner_products:{curator_practitioner_id}:{id}",
        "by_modality": "modality_products:{modality}:{id}",
    },
)


def email_key(email: str) -> str:
    return f"email:{email.strip().lower()}"


def refresh_key(user_id: str) -> str:
    return f"refresh:{user_id}"


def appointment_review_key(appointment_id: str) -> str:
    return f"appointment_review:{appointment_id}"


def practitioner_slot_key(practitioner_id: str, date: str, time: str) -> str:
    return f"practitioner_slot:{practitioner_id}:{date}:{time}"


def practitioner_slot_prefix(practitioner_id: str, date: str) -> str:
    return f"practitioner_slot:{practitioner_id}:{date}:"
