"""
Database Schemas for Eventwise

Each top-level Pydantic model below represents a collection in MongoDB
(see ``database`` for the collection names). Request bodies that do not map
one-to-one onto a collection live at the bottom of the module.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator

Role = Literal["attendee", "organizer", "speaker", "sponsor", "admin"]
Plan = Literal["free", "starter", "professional", "enterprise"]
PaidPlan = Literal["starter", "professional", "enterprise"]
SubscriptionStatus = Literal["trialing", "active", "past_due", "canceled"]
PaymentStatus = Literal["pending", "succeeded", "failed", "refunded"]
PaymentType = Literal["ticket", "subscription", "sponsorship"]
TicketType = Literal["general", "vip", "student"]
TicketStatus = Literal["pending", "confirmed", "used", "cancelled"]
SponsorTier = Literal["gold", "silver", "bronze"]


def _check_window(end: Optional[datetime], info: ValidationInfo, start_field: str) -> Optional[datetime]:
    start = info.data.get(start_field)
    if start is None or end is None:
        return end
    # compare on a common footing when one side is naive
    if (start.tzinfo is None) != (end.tzinfo is None):
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    if end <= start:
        raise ValueError(f"must be after {start_field}")
    return end


# Users
class UserProfile(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    company: Optional[str] = None
    avatar: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    goals: Optional[str] = None
    role: Role = "attendee"
    subscription_status: Plan = "free"
    subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None


# Events
class Branding(BaseModel):
    primary_color: Optional[str] = None
    logo_url: Optional[str] = None


class EventSettings(BaseModel):
    allow_public_registration: bool = True
    require_approval: bool = False


class Event(BaseModel):
    organizer_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    start_date: datetime
    end_date: datetime
    venue: Optional[str] = None
    venue_map_url: Optional[str] = None
    branding: Branding = Field(default_factory=Branding)
    settings: EventSettings = Field(default_factory=EventSettings)

    @field_validator("end_date")
    @classmethod
    def check_schedule(cls, value, info: ValidationInfo):
        return _check_window(value, info, "start_date")


class EventUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    venue: Optional[str] = None
    venue_map_url: Optional[str] = None
    branding: Optional[Branding] = None
    settings: Optional[EventSettings] = None

    @field_validator("end_date")
    @classmethod
    def check_schedule(cls, value, info: ValidationInfo):
        return _check_window(value, info, "start_date")


# Sessions
class SessionCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    start_time: datetime
    end_time: datetime
    tags: List[str] = Field(default_factory=list)
    speaker_id: Optional[str] = None
    speaker_name: Optional[str] = None
    location: Optional[str] = None
    max_attendees: Optional[int] = Field(None, ge=0)

    @field_validator("end_time")
    @classmethod
    def check_schedule(cls, value, info: ValidationInfo):
        return _check_window(value, info, "start_time")


class Session(SessionCreate):
    event_id: str
    current_attendees: int = 0


# Event-scoped attendee records
class Attendee(BaseModel):
    user_id: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    company: Optional[str] = None
    avatar: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    personality_traits: List[str] = Field(default_factory=list)
    connections: List[str] = Field(default_factory=list)
    points: int = 0
    sessions_attended: List[str] = Field(default_factory=list)


# Billing
class Subscription(BaseModel):
    user_id: str
    plan: PaidPlan
    stripe_subscription_id: str
    stripe_customer_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False


class Payment(BaseModel):
    user_id: str
    event_id: Optional[str] = None
    type: PaymentType = "ticket"
    amount: float
    currency: str = "usd"
    status: PaymentStatus
    stripe_payment_intent_id: Optional[str] = None
    ticket_id: Optional[str] = None
    subscription_id: Optional[str] = None


class Ticket(BaseModel):
    event_id: str
    user_id: str
    ticket_type: TicketType = "general"
    price: float
    qr_code: str
    status: TicketStatus = "pending"
    payment_id: str


# Sponsors
class SponsorMaterials(BaseModel):
    brochures: List[str] = Field(default_factory=list)
    videos: List[str] = Field(default_factory=list)


class Sponsor(BaseModel):
    event_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    logo_url: Optional[str] = None
    website: Optional[str] = None
    tier: SponsorTier
    placement: List[str] = Field(default_factory=list, description="discovery, matchmaking, resource-hub")
    materials: SponsorMaterials = Field(default_factory=SponsorMaterials)


# ---------------------------
# Request bodies
# ---------------------------

class UserCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: EmailStr
    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    company: Optional[str] = None
    avatar: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    goals: Optional[str] = None
    role: Role = "attendee"


class ProfileUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = None
    company: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    goals: Optional[str] = None


class ConnectionRequest(BaseModel):
    attendee_id: str = Field(..., min_length=1)


class PointsRequest(BaseModel):
    points: int


class SubscriptionCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan: PaidPlan
    stripe_subscription_id: str = Field(..., min_length=1)
    stripe_customer_id: str = Field(..., min_length=1)


class SubscriptionAction(BaseModel):
    action: Literal["cancel", "resume", "upgrade", "downgrade"]
    new_plan: Optional[PaidPlan] = None


class TicketPurchase(BaseModel):
    event_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    ticket_type: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    type: Literal["payment", "subscription"] = "payment"


class AssistantMessage(BaseModel):
    role: Literal["user", "model"]
    content: str


class AssistantRequest(BaseModel):
    query: str = Field(..., min_length=1)
    history: List[AssistantMessage] = Field(default_factory=list)
    event_id: Optional[str] = None
