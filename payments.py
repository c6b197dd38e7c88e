"""Stripe checkout creation and webhook reconciliation."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
import structlog

from schemas import Payment, Subscription
from services import Services

logger = structlog.get_logger(__name__)

LOCAL_SUBSCRIPTION_STATUSES = ("active", "canceled", "past_due", "trialing")
DOWNGRADE_STATUSES = ("canceled", "past_due")


class WebhookVerificationError(Exception):
    pass


def _plain(obj: Any) -> Any:
    """StripeObject -> plain dict (a StripeObject renders as its JSON body)."""
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def _from_minor_units(amount: Optional[int]) -> float:
    return amount / 100 if amount else 0


def _timestamp(seconds: Optional[int]) -> Optional[datetime]:
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def local_status(status: Optional[str]) -> str:
    return status if status in LOCAL_SUBSCRIPTION_STATUSES else "trialing"


class PaymentGateway:
    """Thin wrapper over the Stripe API bound to one secret key."""

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _checkout(self, mode: str, price_id: str, user_id: str, success_url: str, cancel_url: str,
                  metadata: Optional[Dict[str, str]] = None, **extra) -> dict:
        metadata = {k: v for k, v in (metadata or {}).items() if v is not None}
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            mode=mode,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            customer_email=metadata.get("email"),
            metadata={"userId": user_id, **metadata},
            success_url=success_url,
            cancel_url=cancel_url,
            **extra,
        )
        return _plain(session)

    def create_checkout_session(self, price_id: str, user_id: str, success_url: str, cancel_url: str,
                                metadata: Optional[Dict[str, str]] = None) -> dict:
        return self._checkout("payment", price_id, user_id, success_url, cancel_url, metadata)

    def create_subscription_checkout_session(self, price_id: str, user_id: str, success_url: str,
                                             cancel_url: str, metadata: Optional[Dict[str, str]] = None) -> dict:
        # the subscription carries userId too, so later customer.subscription.* events can be correlated
        sub_metadata = {"userId": user_id, **{k: v for k, v in (metadata or {}).items() if v is not None}}
        return self._checkout(
            "subscription", price_id, user_id, success_url, cancel_url, metadata,
            subscription_data={"metadata": sub_metadata},
        )

    def create_payment_intent(self, amount_cents: int, currency: str, metadata: Dict[str, str]) -> dict:
        intent = stripe.PaymentIntent.create(
            api_key=self.api_key,
            amount=amount_cents,
            currency=currency,
            metadata=metadata,
        )
        return _plain(intent)

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return _plain(stripe.Subscription.retrieve(subscription_id, api_key=self.api_key))

    def modify_subscription(self, subscription_id: str, **params) -> dict:
        return _plain(stripe.Subscription.modify(subscription_id, api_key=self.api_key, **params))

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """Check the ``Stripe-Signature`` header and return the event envelope."""
        if not signature or not self.webhook_secret:
            raise WebhookVerificationError("Missing stripe signature or webhook secret")
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(str(e)) from e
        try:
            return json.loads(body)
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e


class StripeEventHandler:
    """Applies the local side effects of one Stripe webhook event."""

    def __init__(self, event: dict, services: Services, gateway: PaymentGateway):
        self.event = event
        self.services = services
        self.gateway = gateway

    def handle(self) -> None:
        """Routes the event to the handler for its type."""
        event_type = self.event.get("type", "")
        handler_method = getattr(self, f"handle_{event_type.replace('.', '_')}", self.handle_unknown_event)
        handler_method(self.event["data"]["object"])

    def handle_unknown_event(self, obj: dict) -> None:
        logger.info("stripe_webhook_unhandled_event", event_type=self.event.get("type"), event_id=self.event.get("id"))

    def handle_checkout_session_completed(self, session: dict) -> None:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id:
            logger.error("stripe_session_missing_user", session_id=session.get("id"))
            return

        if session.get("mode") == "subscription":
            self._activate_subscription(user_id, session)
            return

        amount = _from_minor_units(session.get("amount_total"))
        payment_id = self.services.payments.create(
            Payment(
                user_id=user_id,
                event_id=metadata.get("eventId"),
                type="ticket",
                amount=amount,
                currency=session.get("currency") or "usd",
                status="succeeded",
                stripe_payment_intent_id=session.get("payment_intent"),
            )
        )
        logger.info("stripe_payment_success", session_id=session.get("id"), payment_id=payment_id, amount=amount)

    def _activate_subscription(self, user_id: str, session: dict) -> None:
        stripe_subscription_id = session["subscription"]
        subscription = self.gateway.retrieve_subscription(stripe_subscription_id)
        item = subscription["items"]["data"][0]
        plan = ((item.get("price") or {}).get("metadata") or {}).get("plan") or "starter"
        if plan not in ("starter", "professional", "enterprise"):
            plan = "starter"

        # newer API versions report the period on the subscription item
        now = int(datetime.now(timezone.utc).timestamp())
        period_start = subscription.get("current_period_start") or item.get("current_period_start") or now
        period_end = subscription.get("current_period_end") or item.get("current_period_end") or now

        local_id = self.services.subscriptions.upsert_for_user(
            Subscription(
                user_id=user_id,
                plan=plan,
                stripe_subscription_id=stripe_subscription_id,
                stripe_customer_id=subscription["customer"],
                status=local_status(subscription.get("status")),
                current_period_start=_timestamp(period_start),
                current_period_end=_timestamp(period_end),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            )
        )

        if self.services.users.get(user_id):
            self.services.users.update(
                user_id,
                {
                    "subscription_status": plan,
                    "subscription_id": local_id,
                    "stripe_customer_id": subscription["customer"],
                },
            )
        else:
            logger.warning("stripe_subscription_unknown_user", user_id=user_id, subscription_id=local_id)
        logger.info("stripe_subscription_activated", user_id=user_id, plan=plan, subscription_id=local_id)

    def handle_payment_intent_succeeded(self, intent: dict) -> None:
        metadata = intent.get("metadata") or {}
        ticket_id = metadata.get("ticketId")
        if not ticket_id:
            # checkout.session.completed already recorded it
            return
        ticket = self.services.tickets.get(ticket_id)
        if ticket is None:
            logger.warning("stripe_intent_unknown_ticket", ticket_id=ticket_id, payment_intent_id=intent.get("id"))
            return

        if ticket["status"] == "pending":
            self.services.tickets.update(ticket_id, {"status": "confirmed"})
        self.services.payments.create(
            Payment(
                user_id=ticket["user_id"],
                event_id=ticket["event_id"],
                type="ticket",
                amount=_from_minor_units(intent.get("amount")),
                currency=intent.get("currency") or "usd",
                status="succeeded",
                stripe_payment_intent_id=intent.get("id"),
                ticket_id=ticket_id,
            )
        )
        logger.info("stripe_ticket_confirmed", ticket_id=ticket_id, payment_intent_id=intent.get("id"))

    def handle_payment_intent_payment_failed(self, intent: dict) -> None:
        metadata = intent.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id:
            logger.warning("stripe_intent_missing_user", payment_intent_id=intent.get("id"))
            return

        ticket_id = metadata.get("ticketId")
        self.services.payments.create(
            Payment(
                user_id=user_id,
                event_id=metadata.get("eventId"),
                type="ticket",
                amount=_from_minor_units(intent.get("amount")),
                currency=intent.get("currency") or "usd",
                status="failed",
                stripe_payment_intent_id=intent.get("id"),
                ticket_id=ticket_id,
            )
        )
        if ticket_id:
            ticket = self.services.tickets.get(ticket_id)
            if ticket and ticket["status"] == "pending":
                self.services.tickets.update(ticket_id, {"status": "cancelled"})
        logger.info("stripe_payment_failed", user_id=user_id, payment_intent_id=intent.get("id"))

    def handle_customer_subscription_updated(self, subscription: dict) -> None:
        metadata = subscription.get("metadata") or {}
        user_id = metadata.get("userId")
        existing = None
        if user_id:
            existing = self.services.subscriptions.find_for_user(user_id)
        if existing is None and subscription.get("id"):
            existing = self.services.subscriptions.find_by_stripe_id(subscription["id"])
        if existing is None:
            logger.warning("stripe_subscription_unknown", stripe_subscription_id=subscription.get("id"), user_id=user_id)
            return

        status = local_status(subscription.get("status"))
        changes: Dict[str, Any] = {
            "status": status,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }
        period_start = _timestamp(subscription.get("current_period_start"))
        period_end = _timestamp(subscription.get("current_period_end"))
        if period_start:
            changes["current_period_start"] = period_start
        if period_end:
            changes["current_period_end"] = period_end
        self.services.subscriptions.update(existing["id"], changes)

        user_id = user_id or existing["user_id"]
        if status in DOWNGRADE_STATUSES:
            self.services.users.update(user_id, {"subscription_status": "free"})
        elif status == "active":
            self.services.users.update(user_id, {"subscription_status": existing["plan"]})
        logger.info("stripe_subscription_synced", user_id=user_id, subscription_id=existing["id"], status=status)

    handle_customer_subscription_deleted = handle_customer_subscription_updated
