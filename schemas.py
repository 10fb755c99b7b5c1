"""
Database Schemas for IshTop

Each Pydantic model represents a collection document (user, order, chat,
message, notification, report) or a request payload the services consume.
Documents are stored with camelCase keys, the same shape the API returns.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import MAX_ORDER_PRICE

Role = Literal["WORKER", "CUSTOMER", "ADMIN"]
OrderStatus = Literal["PENDING", "ACCEPTED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
MessageStatus = Literal["SENT", "DELIVERED", "READ"]
NotificationType = Literal["ORDER", "PAYMENT", "MESSAGE", "SYSTEM"]
ReportStatus = Literal["PENDING", "REVIEWED", "RESOLVED"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def doc(self, **kwargs) -> dict:
        return self.model_dump(by_alias=True, **kwargs)


class Location(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


def _json_if_str(v):
    # multipart forms carry nested values as JSON strings
    if isinstance(v, str):
        try:
            return json.loads(v)
        except ValueError:
            return v
    return v


# ------------------ Users ------------------

class User(CamelModel):
    name: str
    surname: Optional[str] = None
    phone: str
    email: EmailStr
    password_hash: str
    role: Role = "CUSTOMER"
    avatar: Optional[str] = None
    balance: int = 0
    rating: float = 5.0
    rating_count: int = 0
    skills: List[str] = []
    hourly_rate: Optional[float] = None
    completed_jobs: int = 0
    is_online: bool = False
    is_banned: bool = False
    ban_reason: Optional[str] = None
    location: Optional[Location] = None
    blocked_users: List[str] = []
    settled_orders: List[str] = []


class UserRegister(CamelModel):
    name: str = Field(..., min_length=1)
    surname: Optional[str] = None
    phone: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["WORKER", "CUSTOMER"] = "CUSTOMER"
    skills: List[str] = []
    hourly_rate: Optional[float] = Field(None, ge=0)
    location: Optional[Location] = None


class UserUpdate(CamelModel):
    """Profile fields a user may edit; anything else in the payload is ignored."""
    name: Optional[str] = Field(None, min_length=1)
    surname: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    skills: Annotated[Optional[List[str]], BeforeValidator(_json_if_str)] = None
    hourly_rate: Optional[float] = Field(None, ge=0)
    is_online: Optional[bool] = None
    location: Annotated[Optional[Location], BeforeValidator(_json_if_str)] = None

    @field_validator("name", "phone", "skills", "is_online")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not null")
        return v


# ------------------ Orders ------------------

class Review(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None


class Settlement(CamelModel):
    worker_id: str
    amount: int
    commission: int
    applied: bool = False
    applied_at: Optional[datetime] = None
    marker_pruned: bool = False


class OrderCreate(CamelModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    category: str = Field(..., min_length=1)
    price: float = Field(..., gt=0, le=MAX_ORDER_PRICE)
    location: str = ""
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    ai_suggested: bool = False


class Order(OrderCreate):
    customer_id: str
    worker_id: Optional[str] = None
    status: OrderStatus = "PENDING"
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    review: Optional[Review] = None
    settlement: Optional[Settlement] = None


class OrderUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    location: Optional[str] = None
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    price: Optional[float] = None
    status: Optional[OrderStatus] = None
    worker_id: Optional[str] = None


class ReviewCreate(CamelModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


# ------------------ Chats ------------------

class Attachment(CamelModel):
    name: str
    url: str
    type: str


class TextContent(CamelModel):
    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1)


class ReplyContent(CamelModel):
    kind: Literal["reply"] = "reply"
    quoted_message_id: str
    body: str = Field(..., min_length=1)


class LocationContent(CamelModel):
    kind: Literal["location"] = "location"
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class AttachmentContent(CamelModel):
    kind: Literal["attachment"] = "attachment"


MessageContent = Annotated[
    Union[TextContent, ReplyContent, LocationContent, AttachmentContent],
    Field(discriminator="kind"),
]


class MessageCreate(CamelModel):
    chat_id: str
    sender_id: Optional[str] = None
    content: MessageContent
    attachments: List[Attachment] = []

    @field_validator("content", mode="before")
    @classmethod
    def plain_text(cls, v):
        if isinstance(v, str):
            return {"kind": "text", "text": v}
        return v

    @model_validator(mode="after")
    def attachment_needs_files(self):
        if self.content.kind == "attachment" and not self.attachments:
            raise ValueError("Attachment message requires at least one attachment")
        return self


class Message(CamelModel):
    chat_id: str
    sender_id: str
    content: dict
    attachments: List[Attachment] = []
    status: MessageStatus = "SENT"
    timestamp: datetime


class Chat(CamelModel):
    participants: List[str]
    pair_key: str
    last_message: Optional[dict] = None
    unread_counts: Dict[str, int] = {}


# ------------------ Notifications ------------------

class Notification(CamelModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    is_read: bool = False
    related_id: Optional[str] = None


class Report(CamelModel):
    reporter_id: str
    reported_user_id: str
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: ReportStatus = "PENDING"
