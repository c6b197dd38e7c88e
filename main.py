import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import openai
import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from assistant import EventAssistant
from config import Settings, configure_logging
from database import DocumentStore, to_public
from payments import PaymentGateway, StripeEventHandler, WebhookVerificationError
from rate_limit import RateLimiter, client_key
from rbac import PermissionDenied, can_access_route, require_permission, role_from_user
from schemas import (
    AssistantRequest,
    Attendee,
    CheckoutRequest,
    ConnectionRequest,
    Event,
    EventUpdate,
    PointsRequest,
    ProfileUpdate,
    Session,
    SessionCreate,
    Sponsor,
    Subscription,
    SubscriptionAction,
    SubscriptionCreate,
    Ticket,
    TicketPurchase,
    UserCreate,
    UserProfile,
)
from services import InvalidTicketState, Services, qr_data_url, ticket_quote

logger = structlog.get_logger(__name__)


# Helpers
class InsertResponse(BaseModel):
    id: str


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_role(request: Request, x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        return "attendee"
    return role_from_user(request.app.state.services.users.get(x_user_id))


def route_guard(request: Request, role: str = Depends(current_role)) -> None:
    if not can_access_route(role, request.url.path):
        raise PermissionDenied(role, request.url.path, "access")


def permission(resource: str, action: str):
    def dependency(role: str = Depends(current_role)) -> str:
        require_permission(role, resource, action)
        return role

    return dependency


router = APIRouter(prefix="/api", dependencies=[Depends(route_guard)])


@router.get("/health")
def health(request: Request):
    try:
        request.app.state.store.ping()
        database = "connected"
    except Exception as e:
        logger.warning("health_database_unreachable", error=str(e))
        database = "disconnected"
    body = {
        "status": "healthy" if database == "connected" else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"database": database},
    }
    return JSONResponse(body, status_code=200 if database == "connected" else 503)


# Users
@router.get("/users")
def list_users(services: Services = Depends(get_services)):
    try:
        return [to_public(u) for u in services.users.list()]
    except Exception as e:
        logger.exception("users_list_failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/users", status_code=201)
def create_user(payload: UserCreate, services: Services = Depends(get_services)):
    try:
        profile = UserProfile(**payload.model_dump(exclude={"user_id"}))
        services.users.create(payload.user_id, profile)
        return {"id": payload.user_id, "message": "User created successfully"}
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    except Exception as e:
        logger.exception("user_create_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=str(e))


# Profile
@router.get("/profile")
def get_profile(user_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    try:
        user = services.users.get(user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return to_public(user)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("profile_fetch_failed", user_id=user_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/profile")
def update_profile(payload: ProfileUpdate, services: Services = Depends(get_services)):
    try:
        changes = payload.model_dump(exclude={"user_id"}, exclude_unset=True, exclude_none=True)
        if not services.users.update(payload.user_id, changes):
            raise HTTPException(status_code=404, detail="User not found")
        return {"message": "Profile updated successfully"}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("profile_update_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=str(e))


# Events
@router.get("/events")
def list_events(organizer_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    try:
        return [to_public(e) for e in services.events.list_by_organizer(organizer_id)]
    except Exception as e:
        logger.exception("events_list_failed", organizer_id=organizer_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/events", response_model=InsertResponse, status_code=201)
def create_event(
    event: Event,
    services: Services = Depends(get_services),
    _role: str = Depends(permission("events", "create")),
):
    try:
        if not services.can_create_event(event.organizer_id):
            raise HTTPException(
                status_code=403, detail="Event creation limit reached. Please upgrade your subscription."
            )
        event_id = services.events.create(event)
        logger.info("event_created", event_id=event_id, organizer_id=event.organizer_id)
        return {"id": event_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("event_create_failed", organizer_id=event.organizer_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/events/{event_id}")
def get_event(event_id: str, services: Services = Depends(get_services)):
    try:
        event = services.events.get(event_id)
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")
        return to_public(event)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("event_fetch_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/events/{event_id}")
def update_event(
    event_id: str,
    payload: EventUpdate,
    services: Services = Depends(get_services),
    _role: str = Depends(permission("events", "update")),
):
    try:
        event = services.events.get(event_id)
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        # the schedule must stay valid against whichever bound is not being changed
        Event(**{**event, **changes})
        services.events.update(event_id, changes)
        return {"message": "Event updated successfully"}
    except HTTPException:
        raise
    except ValidationError as e:
        raise RequestValidationError(e.errors())
    except Exception as e:
        logger.exception("event_update_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/events/{event_id}")
def delete_event(
    event_id: str,
    services: Services = Depends(get_services),
    _role: str = Depends(permission("events", "delete")),
):
    try:
        if not services.events.delete(event_id):
            raise HTTPException(status_code=404, detail="Event not found")
        logger.info("event_deleted", event_id=event_id)
        return {"message": "Event deleted successfully"}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("event_delete_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


# Sessions
@router.get("/events/{event_id}/sessions")
def list_sessions(event_id: str, services: Services = Depends(get_services)):
    try:
        return [to_public(s) for s in services.sessions.list_by_event(event_id)]
    except Exception as e:
        logger.exception("sessions_list_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/events/{event_id}/sessions", response_model=InsertResponse, status_code=201)
def create_session(
    event_id: str,
    payload: SessionCreate,
    services: Services = Depends(get_services),
    _role: str = Depends(permission("sessions", "create")),
):
    try:
        if not services.events.get(event_id):
            raise HTTPException(status_code=404, detail="Event not found")
        session_id = services.sessions.create(Session(event_id=event_id, **payload.model_dump()))
        return {"id": session_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("session_create_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/events/{event_id}/leaderboard")
def get_leaderboard(
    event_id: str,
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    try:
        return [to_public(e) for e in services.leaderboard.get(event_id, limit)]
    except Exception as e:
        logger.exception("leaderboard_fetch_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


# Attendees
@router.get("/attendees")
def list_attendees(event_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    try:
        return [to_public(a) for a in services.attendees.list_by_event(event_id)]
    except Exception as e:
        logger.exception("attendees_list_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/attendees", response_model=InsertResponse, status_code=201)
def create_attendee(attendee: Attendee, services: Services = Depends(get_services)):
    try:
        event = services.events.get(attendee.event_id)
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")
        if services.attendees.get_by_user_and_event(attendee.user_id, attendee.event_id):
            raise HTTPException(status_code=409, detail="User is already registered for this event")
        current = len(services.attendees.list_by_event(attendee.event_id))
        if not services.check_usage_limit(event["organizer_id"], "attendees", current).allowed:
            raise HTTPException(status_code=403, detail="Attendee limit reached for this event")
        return {"id": services.attendees.create(attendee)}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("attendee_create_failed", event_id=attendee.event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/attendees/{attendee_id}/connections")
def add_connection(attendee_id: str, payload: ConnectionRequest, services: Services = Depends(get_services)):
    try:
        if payload.attendee_id == attendee_id:
            raise HTTPException(status_code=400, detail="An attendee cannot connect with themselves")
        if not services.attendees.add_connection(attendee_id, payload.attendee_id):
            raise HTTPException(status_code=404, detail="Attendee not found")
        return to_public(services.attendees.get(attendee_id))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("attendee_connect_failed", attendee_id=attendee_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/attendees/{attendee_id}/points")
def add_points(attendee_id: str, payload: PointsRequest, services: Services = Depends(get_services)):
    try:
        attendee = services.attendees.add_points(attendee_id, payload.points)
        if attendee is None:
            raise HTTPException(status_code=404, detail="Attendee not found")
        return to_public(attendee)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("attendee_points_failed", attendee_id=attendee_id)
        raise HTTPException(status_code=500, detail=str(e))


# Sponsors
@router.get("/sponsors")
def list_sponsors(event_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    try:
        return [to_public(s) for s in services.sponsors.list_by_event(event_id)]
    except Exception as e:
        logger.exception("sponsors_list_failed", event_id=event_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sponsors", response_model=InsertResponse, status_code=201)
def create_sponsor(
    sponsor: Sponsor,
    services: Services = Depends(get_services),
    _role: str = Depends(permission("sponsors", "create")),
):
    try:
        return {"id": services.sponsors.create(sponsor)}
    except Exception as e:
        logger.exception("sponsor_create_failed", event_id=sponsor.event_id)
        raise HTTPException(status_code=500, detail=str(e))


# Subscriptions
@router.get("/subscriptions")
def get_user_subscription(user_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    try:
        return {"subscription": to_public(services.subscriptions.get_by_user(user_id))}
    except Exception as e:
        logger.exception("subscription_fetch_failed", user_id=user_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/subscriptions", response_model=InsertResponse, status_code=201)
def create_subscription(payload: SubscriptionCreate, services: Services = Depends(get_services)):
    try:
        now = datetime.now(timezone.utc)
        subscription_id = services.subscriptions.upsert_for_user(
            Subscription(
                user_id=payload.user_id,
                plan=payload.plan,
                stripe_subscription_id=payload.stripe_subscription_id,
                stripe_customer_id=payload.stripe_customer_id,
                status="active",
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
            )
        )
        services.users.update(
            payload.user_id,
            {
                "subscription_status": payload.plan,
                "subscription_id": subscription_id,
                "stripe_customer_id": payload.stripe_customer_id,
            },
        )
        return {"id": subscription_id}
    except Exception as e:
        logger.exception("subscription_create_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: str, services: Services = Depends(get_services)):
    try:
        subscription = services.subscriptions.get(subscription_id)
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
        return to_public(subscription)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("subscription_fetch_failed", subscription_id=subscription_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.patch("/subscriptions/{subscription_id}")
def change_subscription(
    subscription_id: str,
    payload: SubscriptionAction,
    services: Services = Depends(get_services),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    try:
        subscription = services.subscriptions.get(subscription_id)
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
        stripe_id = subscription["stripe_subscription_id"]

        if payload.action in ("cancel", "resume"):
            cancel = payload.action == "cancel"
            gateway.modify_subscription(stripe_id, cancel_at_period_end=cancel)
            services.subscriptions.update(subscription_id, {"cancel_at_period_end": cancel})
        else:
            if not payload.new_plan:
                raise HTTPException(status_code=400, detail="new_plan is required for upgrade/downgrade")
            price_id = settings.plan_price_ids.get(payload.new_plan)
            if not price_id:
                raise HTTPException(status_code=400, detail="Invalid plan specified")
            remote = gateway.retrieve_subscription(stripe_id)
            gateway.modify_subscription(
                stripe_id,
                items=[{"id": remote["items"]["data"][0]["id"], "price": price_id}],
                proration_behavior="always_invoice",
            )
            services.subscriptions.update(subscription_id, {"plan": payload.new_plan})
            services.users.update(subscription["user_id"], {"subscription_status": payload.new_plan})

        logger.info("subscription_changed", subscription_id=subscription_id, action=payload.action)
        return {"message": "Subscription updated successfully"}
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("subscription_change_failed", subscription_id=subscription_id, action=payload.action)
        raise HTTPException(status_code=500, detail=str(e))


# Tickets
@router.post("/tickets/purchase")
def purchase_ticket(
    payload: TicketPurchase,
    services: Services = Depends(get_services),
    gateway: PaymentGateway = Depends(get_gateway),
):
    try:
        if not services.events.get(payload.event_id):
            raise HTTPException(status_code=404, detail="Event not found")
        quote = ticket_quote(payload.ticket_type)
        ticket_id = services.tickets.new_id()
        intent = gateway.create_payment_intent(
            amount_cents=round(quote["total"] * 100),
            currency="usd",
            metadata={
                "userId": payload.user_id,
                "eventId": payload.event_id,
                "ticketId": ticket_id,
                "ticketType": quote["ticket_type"],
                "basePrice": str(quote["base_price"]),
                "transactionFee": str(quote["fee"]),
            },
        )
        qr_code = qr_data_url(
            {
                "ticketId": ticket_id,
                "eventId": payload.event_id,
                "userId": payload.user_id,
                "ticketType": quote["ticket_type"],
            }
        )
        services.tickets.create(
            Ticket(
                event_id=payload.event_id,
                user_id=payload.user_id,
                ticket_type=quote["ticket_type"],
                price=quote["total"],
                qr_code=qr_code,
                status="pending",
                payment_id=intent["id"],
            ),
            ticket_id=ticket_id,
        )
        logger.info("ticket_reserved", ticket_id=ticket_id, payment_intent_id=intent["id"])
        return {
            "payment_intent_id": intent["id"],
            "client_secret": intent.get("client_secret"),
            "amount": quote["total"],
            "ticket_id": ticket_id,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("ticket_purchase_failed", event_id=payload.event_id, user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/tickets/{ticket_id}/check-in")
def check_in_ticket(ticket_id: str, services: Services = Depends(get_services)):
    try:
        ticket = services.tickets.check_in(ticket_id)
        if ticket is None:
            raise HTTPException(status_code=404, detail="Ticket not found")
        return to_public(ticket)
    except InvalidTicketState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("ticket_check_in_failed", ticket_id=ticket_id)
        raise HTTPException(status_code=500, detail=str(e))


# Stripe
@router.post("/stripe/create-checkout")
def create_checkout(
    payload: CheckoutRequest,
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    try:
        success_url = f"{settings.app_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = f"{settings.app_url}/payment/cancel"
        create = (
            gateway.create_subscription_checkout_session
            if payload.type == "subscription"
            else gateway.create_checkout_session
        )
        session = create(
            price_id=payload.price_id,
            user_id=payload.user_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"email": payload.email},
        )
        return {"session_id": session["id"], "url": session.get("url")}
    except Exception as e:
        logger.exception("checkout_create_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=f"Failed to create checkout session: {e}")


@router.post("/stripe/create-subscription")
def create_subscription_checkout(
    payload: CheckoutRequest,
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    try:
        session = gateway.create_subscription_checkout_session(
            price_id=payload.price_id,
            user_id=payload.user_id,
            success_url=f"{settings.app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.app_url}/subscription/cancel",
            metadata={"email": payload.email},
        )
        return {"session_id": session["id"], "url": session.get("url")}
    except Exception as e:
        logger.exception("subscription_checkout_create_failed", user_id=payload.user_id)
        raise HTTPException(status_code=500, detail=f"Failed to create subscription checkout session: {e}")


def _process_webhook(event: dict, services: Services, gateway: PaymentGateway) -> bool:
    """Apply ``event`` unless its id was already processed; returns False for duplicates."""
    event_id = event.get("id")
    if event_id and services.webhook_events.seen(event_id):
        logger.info("stripe_webhook_duplicate", event_id=event_id, event_type=event.get("type"))
        return False
    StripeEventHandler(event, services, gateway).handle()
    if event_id:
        services.webhook_events.record(event_id, event.get("type", ""))
    return True


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payload = await request.body()
    try:
        event = gateway.verify_event(payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.warning("stripe_webhook_rejected", error=str(e))
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        await run_in_threadpool(_process_webhook, event, services, gateway)
        return {"received": True}
    except Exception:
        logger.exception("stripe_webhook_failed", event_id=event.get("id"), event_type=event.get("type"))
        raise HTTPException(status_code=500, detail="Webhook processing failed")


# Assistant
@router.post("/assistant")
def ask_assistant(payload: AssistantRequest, request: Request):
    assistant: EventAssistant = request.app.state.assistant
    suggestion = assistant.get_next_action(
        payload.query,
        history=[m.model_dump() for m in payload.history],
        event_id=payload.event_id,
    )
    return {"suggestion": suggestion}


# Organizer
@router.get("/organizer/analytics")
def organizer_analytics(
    event_id: Optional[str] = None,
    organizer_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    if not event_id and not organizer_id:
        raise HTTPException(status_code=400, detail="event_id or organizer_id query parameter is required")
    try:
        return services.organizer_analytics(event_id=event_id, organizer_id=organizer_id)
    except Exception as e:
        logger.exception("analytics_failed", event_id=event_id, organizer_id=organizer_id)
        raise HTTPException(status_code=500, detail=str(e))


# ---------------------------
# Error handlers and middleware
# ---------------------------

async def permission_denied_handler(request: Request, exc: PermissionDenied):
    logger.info("permission_denied", role=exc.role, resource=exc.resource, action=exc.action)
    return JSONResponse(status_code=403, content={"detail": str(exc)})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = exc.errors()[0] if exc.errors() else {}
    loc = tuple(error.get("loc", ()))
    if loc and loc[0] in ("body", "query", "path", "header"):
        loc = loc[1:]
    location = [str(p) for p in loc]
    return JSONResponse(
        status_code=400,
        content={"detail": error.get("msg", "Invalid request"), "field": ".".join(location) or None},
    )


async def rate_limit_middleware(request: Request, call_next):
    limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
    if limiter is None or request.method == "OPTIONS" or not request.url.path.startswith("/api"):
        return await call_next(request)

    key = client_key(
        request.headers.get("x-user-id"),
        request.headers.get("x-forwarded-for"),
        request.client.host if request.client else None,
    )
    result = limiter.check(key)
    if not result.allowed:
        logger.info("rate_limited", key=key, retry_after=result.retry_after)
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Too many requests",
                "message": f"Rate limit exceeded. Please try again after {result.retry_after} seconds.",
            },
            headers={
                "Retry-After": str(result.retry_after),
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": limiter.reset_time(result).isoformat(),
            },
        )
    return await call_next(request)


async def request_context_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        ip_address=client_key(None, request.headers.get("x-forwarded-for"),
                              request.client.host if request.client else None),
    )
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    gateway: Optional[PaymentGateway] = None,
    assistant: Optional[EventAssistant] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the API. Anything not passed in is constructed from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        mongo_client = None
        if state.settings is None:
            state.settings = Settings.from_env()
            configure_logging(state.settings.log_level, state.settings.log_format)
        s = state.settings
        if state.store is None:
            mongo_client = MongoClient(s.database_url)
            state.store = DocumentStore(mongo_client[s.database_name])
        state.services = Services(state.store)
        if state.gateway is None:
            state.gateway = PaymentGateway(s.stripe_secret_key, s.stripe_webhook_secret)
        if state.assistant is None:
            state.assistant = EventAssistant(openai.OpenAI(api_key=s.openai_api_key), state.services, s.openai_model)
        if state.rate_limiter is None:
            state.rate_limiter = RateLimiter(s.rate_limit_max_requests, s.rate_limit_window_seconds)
        if not s.stripe_webhook_secret:
            logger.warning("stripe_webhook_secret_missing")
        logger.info("app_started", database=s.database_name)
        try:
            yield
        finally:
            if mongo_client is not None:
                mongo_client.close()

    app = FastAPI(title="Eventwise API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.assistant = assistant
    app.state.rate_limiter = rate_limiter
    if store is not None:
        app.state.services = Services(store)

    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_context_middleware)
    # outermost, so rejections from the layers above still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PermissionDenied, permission_denied_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
