from datetime import datetime, timedelta, timezone

import pytest

from schemas import Attendee, Event, Session, Subscription, Ticket
from services import (
    PLAN_LIMITS,
    InvalidTicketState,
    Services,
    qr_data_url,
    ticket_quote,
)


def _attendee(event_id: str, user_id: str, **kwargs) -> Attendee:
    return Attendee(user_id=user_id, event_id=event_id, name=kwargs.pop("name", user_id), **kwargs)


def _subscription(user_id: str, plan: str = "starter", status: str = "active", stripe_id: str = "sub_1") -> Subscription:
    now = datetime.now(timezone.utc)
    return Subscription(
        user_id=user_id,
        plan=plan,
        stripe_subscription_id=stripe_id,
        stripe_customer_id="cus_1",
        status=status,
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
    )


class TestAttendeeService:
    def test_add_connection_is_idempotent(self, services: Services, event_id: str) -> None:
        a = services.attendees.create(_attendee(event_id, "u1"))
        b = services.attendees.create(_attendee(event_id, "u2"))

        assert services.attendees.add_connection(a, b)
        assert services.attendees.add_connection(a, b)

        assert services.attendees.get(a)["connections"] == [b]

    def test_add_connection_unknown_attendee(self, services: Services) -> None:
        assert services.attendees.add_connection("missing", "other") is False

    def test_add_points_updates_leaderboard(self, services: Services, event_id: str) -> None:
        attendee_id = services.attendees.create(_attendee(event_id, "u1", name="Ada", points=5))

        updated = services.attendees.add_points(attendee_id, 10)

        assert updated["points"] == 15
        [entry] = services.leaderboard.get(event_id)
        assert entry["id"] == f"u1_{event_id}"
        assert entry["name"] == "Ada"
        assert entry["points"] == 15
        assert entry["rank"] == 1

    def test_add_points_unknown_attendee(self, services: Services) -> None:
        assert services.attendees.add_points("missing", 10) is None

    def test_get_by_user_and_event(self, services: Services, event_id: str) -> None:
        attendee_id = services.attendees.create(_attendee(event_id, "u1"))

        assert services.attendees.get_by_user_and_event("u1", event_id)["id"] == attendee_id
        assert services.attendees.get_by_user_and_event("u1", "other") is None


class TestLeaderboardService:
    def test_ranks_by_points(self, services: Services, event_id: str) -> None:
        for user_id, points in (("u1", 10), ("u2", 30), ("u3", 20)):
            services.leaderboard.update_entry(user_id, event_id, {"name": user_id, "points": points})

        entries = services.leaderboard.get(event_id, limit=2)

        assert [(e["user_id"], e["rank"]) for e in entries] == [("u2", 1), ("u3", 2)]

    def test_update_entry_creates_defaults(self, services: Services) -> None:
        entry = services.leaderboard.update_entry("u1", "ev", {"name": "Ada"})

        assert entry["points"] == 0
        assert entry["change"] == "same"
        assert entry["last_updated"].tzinfo is not None


class TestSessionService:
    def test_list_by_event_sorted_by_start(self, services: Services, event_id: str) -> None:
        base = datetime(2030, 5, 1, 9, tzinfo=timezone.utc)
        for title, offset in (("late", 3), ("early", 1)):
            services.sessions.create(
                Session(
                    event_id=event_id,
                    title=title,
                    start_time=base + timedelta(hours=offset),
                    end_time=base + timedelta(hours=offset + 1),
                )
            )

        assert [s["title"] for s in services.sessions.list_by_event(event_id)] == ["early", "late"]

    def test_create_resets_attendance(self, services: Services, event_id: str) -> None:
        base = datetime(2030, 5, 1, 9, tzinfo=timezone.utc)
        session_id = services.sessions.create(
            Session(
                event_id=event_id,
                title="Keynote",
                start_time=base,
                end_time=base + timedelta(hours=1),
                current_attendees=40,
            )
        )

        assert services.sessions.get(session_id)["current_attendees"] == 0

    def test_upcoming_window(self, services: Services, event_id: str) -> None:
        now = datetime.now(timezone.utc)
        for title, minutes in (("soon", 5), ("later", 60), ("past", -30)):
            start = now + timedelta(minutes=minutes)
            services.sessions.create(
                Session(event_id=event_id, title=title, start_time=start, end_time=start + timedelta(minutes=45))
            )

        assert [s["title"] for s in services.sessions.upcoming(event_id, 15)] == ["soon"]


class TestSubscriptionService:
    def test_upsert_keeps_one_record_per_user(self, services: Services) -> None:
        first = services.subscriptions.upsert_for_user(_subscription("u1", "starter"))
        second = services.subscriptions.upsert_for_user(_subscription("u1", "professional", stripe_id="sub_2"))

        assert first == second
        stored = services.subscriptions.get(first)
        assert stored["plan"] == "professional"
        assert stored["stripe_subscription_id"] == "sub_2"

    def test_get_by_user_only_returns_active(self, services: Services) -> None:
        services.subscriptions.create(_subscription("u1", status="canceled"))

        assert services.subscriptions.get_by_user("u1") is None
        assert services.subscriptions.find_for_user("u1")["status"] == "canceled"

    def test_find_by_stripe_id(self, services: Services) -> None:
        subscription_id = services.subscriptions.create(_subscription("u1", stripe_id="sub_x"))

        assert services.subscriptions.find_by_stripe_id("sub_x")["id"] == subscription_id


class TestTickets:
    @pytest.mark.parametrize(
        "ticket_type,expected",
        [
            ("general", {"ticket_type": "general", "base_price": 99, "fee": 3.96, "total": 102.96}),
            ("vip", {"ticket_type": "vip", "base_price": 299, "fee": 11.96, "total": 310.96}),
            ("student", {"ticket_type": "student", "base_price": 49, "fee": 1.96, "total": 50.96}),
            ("backstage", {"ticket_type": "general", "base_price": 99, "fee": 3.96, "total": 102.96}),
        ],
    )
    def test_quote(self, ticket_type: str, expected: dict) -> None:
        assert ticket_quote(ticket_type) == expected

    def test_qr_data_url(self) -> None:
        assert qr_data_url({"ticketId": "ticket_1"}).startswith("data:image/png;base64,")

    def _ticket(self, services: Services, status: str) -> str:
        return services.tickets.create(
            Ticket(event_id="ev", user_id="u1", price=102.96, qr_code="data:", status=status, payment_id="pi_1"),
            ticket_id=services.tickets.new_id(),
        )

    def test_check_in_confirmed_ticket(self, services: Services) -> None:
        ticket_id = self._ticket(services, "confirmed")

        assert ticket_id.startswith("ticket_")
        assert services.tickets.check_in(ticket_id)["status"] == "used"

    @pytest.mark.parametrize("status", ["pending", "used", "cancelled"])
    def test_check_in_rejects_other_states(self, services: Services, status: str) -> None:
        ticket_id = self._ticket(services, status)

        with pytest.raises(InvalidTicketState):
            services.tickets.check_in(ticket_id)
        assert services.tickets.get(ticket_id)["status"] == status

    def test_check_in_missing_ticket(self, services: Services) -> None:
        assert services.tickets.check_in("ticket_missing") is None


class TestPlanLimits:
    def test_free_plan_cannot_create_events(self, services: Services) -> None:
        assert services.plan_for_user("nobody") == "free"
        assert services.can_create_event("nobody") is False

    def test_starter_limit(self, services: Services, organizer: str) -> None:
        start = datetime(2030, 1, 1, tzinfo=timezone.utc)
        for n in range(int(PLAN_LIMITS["starter"].max_events)):
            assert services.can_create_event(organizer)
            services.events.create(
                Event(
                    organizer_id=organizer,
                    title=f"Event {n}",
                    description="d",
                    start_date=start,
                    end_date=start + timedelta(hours=2),
                )
            )

        assert services.can_create_event(organizer) is False

    def test_enterprise_is_unlimited(self, services: Services) -> None:
        services.subscriptions.create(_subscription("big", plan="enterprise"))

        usage = services.check_usage_limit("big", "attendees", 1_000_000)

        assert usage.allowed is True

    def test_inactive_subscription_counts_as_free(self, services: Services) -> None:
        services.subscriptions.create(_subscription("u1", status="past_due"))

        assert services.plan_for_user("u1") == "free"


class TestAnalytics:
    def test_organizer_analytics(self, services: Services, organizer: str, event_id: str) -> None:
        services.attendees.create(_attendee(event_id, "u1", interests=["AI", "SaaS"], sessions_attended=["s1"]))
        services.attendees.create(_attendee(event_id, "u2", interests=["AI"]))
        base = datetime(2030, 5, 1, 9, tzinfo=timezone.utc)
        services.sessions.create(
            Session(event_id=event_id, title="Keynote", start_time=base, end_time=base + timedelta(hours=1))
        )

        result = services.organizer_analytics(organizer_id=organizer)

        assert result == {
            "events": 1,
            "total_attendees": 2,
            "total_sessions": 1,
            "engagement_rate": 50,
            "interest_distribution": [{"name": "AI", "value": 2}, {"name": "SaaS", "value": 1}],
        }

    def test_analytics_for_unknown_event(self, services: Services) -> None:
        result = services.organizer_analytics(event_id="missing")

        assert result["events"] == 0
        assert result["engagement_rate"] == 0
