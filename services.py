import base64
import json
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Any, Dict, List, Literal, Optional

import qrcode
import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING

from database import (
    ATTENDEES,
    EVENTS,
    LEADERBOARDS,
    PAYMENTS,
    SESSIONS,
    SPONSORS,
    SUBSCRIPTIONS,
    TICKETS,
    USERS,
    WEBHOOK_EVENTS,
    Data,
    DocumentStore,
)
from schemas import Attendee, Event, Payment, Session, Sponsor, Subscription, Ticket, UserProfile

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _first(docs: List[dict]) -> Optional[dict]:
    return docs[0] if docs else None


class InvalidTicketState(Exception):
    def __init__(self, ticket_id: str, status: str):
        super().__init__(f"Ticket {ticket_id} is {status}")
        self.ticket_id = ticket_id
        self.status = status


class UserService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, user_id: str) -> Optional[dict]:
        return self.store.get_one(USERS, user_id)

    def get_by_email(self, email: str) -> Optional[dict]:
        return _first(self.store.get_many(USERS, {"email": email}, limit=1))

    def create(self, user_id: str, data: Data) -> str:
        profile = data if isinstance(data, UserProfile) else UserProfile.model_validate(data)
        return self.store.create(USERS, profile, doc_id=user_id)

    def update(self, user_id: str, data: Data) -> bool:
        return self.store.update(USERS, user_id, data)

    def list(self) -> List[dict]:
        return self.store.get_many(USERS)


class EventService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, event_id: str) -> Optional[dict]:
        return self.store.get_one(EVENTS, event_id)

    def list_by_organizer(self, organizer_id: str) -> List[dict]:
        return self.store.get_many(EVENTS, {"organizer_id": organizer_id})

    def create(self, event: Event) -> str:
        return self.store.create(EVENTS, event)

    def update(self, event_id: str, data: Data) -> bool:
        return self.store.update(EVENTS, event_id, data)

    def delete(self, event_id: str) -> bool:
        # Sessions, attendees, sponsors and tickets of the event are left in place.
        return self.store.delete(EVENTS, event_id)


class SessionService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, session_id: str) -> Optional[dict]:
        return self.store.get_one(SESSIONS, session_id)

    def list_by_event(self, event_id: str) -> List[dict]:
        return self.store.get_many(SESSIONS, {"event_id": event_id}, sort=[("start_time", ASCENDING)])

    def upcoming(self, event_id: str, minutes: int = 15) -> List[dict]:
        """Sessions of the event starting between now and ``minutes`` from now."""
        now = _now()
        return self.store.get_many(
            SESSIONS,
            {"event_id": event_id, "start_time": {"$gte": now, "$lte": now + timedelta(minutes=minutes)}},
            sort=[("start_time", ASCENDING)],
        )

    def create(self, session: Session) -> str:
        return self.store.create(SESSIONS, session.model_copy(update={"current_attendees": 0}))

    def update(self, session_id: str, data: Data) -> bool:
        return self.store.update(SESSIONS, session_id, data)

    def delete(self, session_id: str) -> bool:
        return self.store.delete(SESSIONS, session_id)


class LeaderboardService:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def entry_id(user_id: str, event_id: str) -> str:
        return f"{user_id}_{event_id}"

    def get(self, event_id: str, limit: int = 10) -> List[dict]:
        entries = self.store.get_many(
            LEADERBOARDS, {"event_id": event_id}, sort=[("points", DESCENDING)], limit=limit
        )
        # rank is positional for this read only
        for position, entry in enumerate(entries, start=1):
            entry["rank"] = position
        return entries

    def update_entry(self, user_id: str, event_id: str, data: Dict[str, Any]) -> dict:
        changes = {**data, "last_updated": _now()}
        defaults = {"user_id": user_id, "event_id": event_id, "points": 0, "rank": 0, "change": "same"}
        return self.store.upsert(LEADERBOARDS, self.entry_id(user_id, event_id), changes, defaults)


class AttendeeService:
    def __init__(self, store: DocumentStore, leaderboard: LeaderboardService):
        self.store = store
        self.leaderboard = leaderboard

    def get(self, attendee_id: str) -> Optional[dict]:
        return self.store.get_one(ATTENDEES, attendee_id)

    def list_by_event(self, event_id: str) -> List[dict]:
        return self.store.get_many(ATTENDEES, {"event_id": event_id})

    def get_by_user_and_event(self, user_id: str, event_id: str) -> Optional[dict]:
        return _first(self.store.get_many(ATTENDEES, {"user_id": user_id, "event_id": event_id}, limit=1))

    def create(self, attendee: Attendee) -> str:
        return self.store.create(ATTENDEES, attendee)

    def update(self, attendee_id: str, data: Data) -> bool:
        return self.store.update(ATTENDEES, attendee_id, data)

    def add_connection(self, attendee_id: str, connected_attendee_id: str) -> bool:
        """Record that ``attendee_id`` connected with ``connected_attendee_id``; repeats are no-ops."""
        return self.store.add_to_set(ATTENDEES, attendee_id, "connections", connected_attendee_id)

    def add_points(self, attendee_id: str, points: int) -> Optional[dict]:
        attendee = self.store.increment(ATTENDEES, attendee_id, "points", points)
        if attendee is None:
            return None
        self.leaderboard.update_entry(
            attendee["user_id"],
            attendee["event_id"],
            {"name": attendee.get("name", ""), "avatar": attendee.get("avatar"), "points": attendee["points"]},
        )
        return attendee


class SubscriptionService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, subscription_id: str) -> Optional[dict]:
        return self.store.get_one(SUBSCRIPTIONS, subscription_id)

    def get_by_user(self, user_id: str) -> Optional[dict]:
        """The user's active subscription, if any."""
        return _first(self.store.get_many(SUBSCRIPTIONS, {"user_id": user_id, "status": "active"}, limit=1))

    def find_for_user(self, user_id: str) -> Optional[dict]:
        return _first(
            self.store.get_many(SUBSCRIPTIONS, {"user_id": user_id}, sort=[("updated_at", DESCENDING)], limit=1)
        )

    def find_by_stripe_id(self, stripe_subscription_id: str) -> Optional[dict]:
        return _first(
            self.store.get_many(SUBSCRIPTIONS, {"stripe_subscription_id": stripe_subscription_id}, limit=1)
        )

    def create(self, subscription: Subscription) -> str:
        return self.store.create(SUBSCRIPTIONS, subscription)

    def update(self, subscription_id: str, data: Data) -> bool:
        return self.store.update(SUBSCRIPTIONS, subscription_id, data)

    def upsert_for_user(self, subscription: Subscription) -> str:
        """Write ``subscription`` over the user's existing record, keeping one per user."""
        existing = self.find_for_user(subscription.user_id)
        if existing:
            self.update(existing["id"], subscription)
            return existing["id"]
        return self.create(subscription)


class PaymentService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, payment_id: str) -> Optional[dict]:
        return self.store.get_one(PAYMENTS, payment_id)

    def list_by_user(self, user_id: str) -> List[dict]:
        return self.store.get_many(PAYMENTS, {"user_id": user_id}, sort=[("created_at", DESCENDING)])

    def create(self, payment: Payment) -> str:
        return self.store.create(PAYMENTS, payment)

    def update(self, payment_id: str, data: Data) -> bool:
        return self.store.update(PAYMENTS, payment_id, data)


# Ticket prices in dollars
TICKET_PRICES = {"general": 99, "vip": 299, "student": 49}
TRANSACTION_FEE_RATE = 0.04


def transaction_fee(amount: float) -> float:
    return round(amount * TRANSACTION_FEE_RATE, 2)


def ticket_quote(ticket_type: str) -> Dict[str, Any]:
    """Price breakdown for a ticket type; unknown types are sold as general admission."""
    if ticket_type not in TICKET_PRICES:
        ticket_type = "general"
    base_price = TICKET_PRICES[ticket_type]
    fee = transaction_fee(base_price)
    return {"ticket_type": ticket_type, "base_price": base_price, "fee": fee, "total": round(base_price + fee, 2)}


def qr_data_url(payload: Dict[str, Any]) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(json.dumps(payload))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, "PNG")
    return "data:image/png;base64," + base64.b64encode(buffered.getvalue()).decode("utf-8")


class TicketService:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def new_id() -> str:
        return f"ticket_{DocumentStore.new_id()}"

    def get(self, ticket_id: str) -> Optional[dict]:
        return self.store.get_one(TICKETS, ticket_id)

    def list_by_user(self, user_id: str) -> List[dict]:
        return self.store.get_many(TICKETS, {"user_id": user_id}, sort=[("created_at", DESCENDING)])

    def list_by_event(self, event_id: str) -> List[dict]:
        return self.store.get_many(TICKETS, {"event_id": event_id})

    def create(self, ticket: Ticket, ticket_id: Optional[str] = None) -> str:
        return self.store.create(TICKETS, ticket, doc_id=ticket_id)

    def update(self, ticket_id: str, data: Data) -> bool:
        return self.store.update(TICKETS, ticket_id, data)

    def check_in(self, ticket_id: str) -> Optional[dict]:
        ticket = self.get(ticket_id)
        if ticket is None:
            return None
        if ticket["status"] != "confirmed":
            raise InvalidTicketState(ticket_id, ticket["status"])
        self.update(ticket_id, {"status": "used"})
        return self.get(ticket_id)


class SponsorService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, sponsor_id: str) -> Optional[dict]:
        return self.store.get_one(SPONSORS, sponsor_id)

    def list_by_event(self, event_id: str) -> List[dict]:
        return self.store.get_many(SPONSORS, {"event_id": event_id})

    def create(self, sponsor: Sponsor) -> str:
        return self.store.create(SPONSORS, sponsor)

    def update(self, sponsor_id: str, data: Data) -> bool:
        return self.store.update(SPONSORS, sponsor_id, data)

    def delete(self, sponsor_id: str) -> bool:
        return self.store.delete(SPONSORS, sponsor_id)


class WebhookLedger:
    """Ids of gateway events whose side effects have been applied."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def seen(self, event_id: str) -> bool:
        return self.store.get_one(WEBHOOK_EVENTS, event_id) is not None

    def record(self, event_id: str, event_type: str) -> None:
        self.store.upsert(WEBHOOK_EVENTS, event_id, {"type": event_type})


# ---------------------------
# Plan limits
# ---------------------------

class PlanLimits(BaseModel):
    max_attendees: float
    max_events: float
    features: List[str]


PLAN_LIMITS: Dict[str, PlanLimits] = {
    "free": PlanLimits(max_attendees=0, max_events=0, features=["Basic attendee features"]),
    "starter": PlanLimits(
        max_attendees=500,
        max_events=5,
        features=["Up to 500 attendees per event", "Up to 5 events", "Basic analytics", "Email support"],
    ),
    "professional": PlanLimits(
        max_attendees=2000,
        max_events=20,
        features=[
            "Up to 2,000 attendees per event",
            "Up to 20 events",
            "Advanced analytics",
            "AI matchmaking",
            "Priority support",
        ],
    ),
    "enterprise": PlanLimits(
        max_attendees=math.inf,
        max_events=math.inf,
        features=[
            "Unlimited attendees",
            "Unlimited events",
            "Custom analytics",
            "White-label options",
            "Dedicated support",
            "API access",
        ],
    ),
}


class UsageLimit(BaseModel):
    allowed: bool
    limit: float
    current: int


class Services:
    """Every domain service, built over one injected store."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.users = UserService(store)
        self.events = EventService(store)
        self.sessions = SessionService(store)
        self.leaderboard = LeaderboardService(store)
        self.attendees = AttendeeService(store, self.leaderboard)
        self.subscriptions = SubscriptionService(store)
        self.payments = PaymentService(store)
        self.tickets = TicketService(store)
        self.sponsors = SponsorService(store)
        self.webhook_events = WebhookLedger(store)

    def plan_for_user(self, user_id: str) -> str:
        subscription = self.subscriptions.get_by_user(user_id)
        if not subscription or subscription.get("status") != "active":
            return "free"
        return subscription["plan"]

    def check_usage_limit(self, user_id: str, kind: Literal["attendees", "events"], current: int) -> UsageLimit:
        limits = PLAN_LIMITS[self.plan_for_user(user_id)]
        limit = limits.max_attendees if kind == "attendees" else limits.max_events
        return UsageLimit(allowed=current < limit, limit=limit, current=current)

    def can_create_event(self, organizer_id: str) -> bool:
        current = len(self.events.list_by_organizer(organizer_id))
        return self.check_usage_limit(organizer_id, "events", current).allowed

    def organizer_analytics(self, event_id: Optional[str] = None, organizer_id: Optional[str] = None) -> dict:
        if event_id:
            event = self.events.get(event_id)
            events = [event] if event else []
        else:
            events = self.events.list_by_organizer(organizer_id)

        total_attendees = 0
        engaged = 0
        total_sessions = 0
        interests: Counter = Counter()
        for event in events:
            attendees = self.attendees.list_by_event(event["id"])
            total_attendees += len(attendees)
            engaged += sum(1 for a in attendees if a.get("sessions_attended"))
            for attendee in attendees:
                interests.update(attendee.get("interests", []))
            total_sessions += len(self.sessions.list_by_event(event["id"]))

        return {
            "events": len(events),
            "total_attendees": total_attendees,
            "total_sessions": total_sessions,
            "engagement_rate": round(engaged * 100 / total_attendees) if total_attendees else 0,
            "interest_distribution": [
                {"name": name, "value": count} for name, count in interests.most_common(5)
            ],
        }
