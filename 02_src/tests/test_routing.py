"""Tests for realtime routing rules."""

import pytest

from eventhub.models import ClientIdentity, EventEnvelope, Route, RouteKind
from eventhub.realtime import Connection, build_message, event_name_for, resolve_route, select_connections
from eventhub.realtime.routing import supplementary_recipients


async def _noop(frame):
    pass


def _connection(user_id: str, tenant_id: str = "T1", role: str = "employee", rooms=()) -> Connection:
    connection = Connection(send=_noop)
    connection.authenticate(ClientIdentity(user_id=user_id, tenant_id=tenant_id, role=role))
    connection.activate()
    connection.rooms.update(rooms)
    return connection


class TestEventNames:
    """Tests for push names."""

    @pytest.mark.parametrize(
        "event_type,expected",
        [
            ("chat.message", "chat:message"),
            ("chat.typing", "chat:typing"),
            ("leave.approved", "leave:update"),
            ("leave.requested", "leave:update"),
            ("attendance.checked_in", "attendance:update"),
            ("dashboard.updated", "dashboard:refresh"),
            ("notification.created", "notification"),
            ("payroll.paid", "notification"),
            ("user.online", "user:online"),
        ],
    )
    def test_event_name_for(self, event_type, expected):
        """Test the event type to push name mapping."""
        assert event_name_for(event_type) == expected


class TestResolveRoute:
    """Tests for route selection."""

    def test_target_user_wins(self):
        """Test that a target user takes precedence over a room."""
        envelope = EventEnvelope.create("notification.created", "T1", {}, target_user_id="U1", room_id="R1")
        route = resolve_route(envelope)
        assert route.kind is RouteKind.USERS
        assert route.user_ids == ("U1",)

    def test_leave_includes_manager(self):
        """Test that leave events also go to the manager named in the payload."""
        envelope = EventEnvelope.create(
            "leave.requested", "T1", {"managerId": "M1"}, target_user_id="U1"
        )
        assert supplementary_recipients(envelope) == ["M1"]
        assert resolve_route(envelope).user_ids == ("U1", "M1")

    def test_chat_includes_sender_once(self):
        """Test that the sender is added without duplicates."""
        envelope = EventEnvelope.create(
            "chat.message", "T1", {"senderId": "U1", "sender_id": "U1"}, target_user_id="U2"
        )
        assert resolve_route(envelope).user_ids == ("U2", "U1")

    def test_room_route(self):
        """Test room routing."""
        envelope = EventEnvelope.create("chat.message", "T1", {}, room_id="R1")
        route = resolve_route(envelope)
        assert route.kind is RouteKind.ROOM
        assert route.room_id == "R1"

    def test_attendance_broadcast_is_role_restricted(self):
        """Test that untargeted attendance events go to privileged roles only."""
        route = resolve_route(EventEnvelope.create("attendance.checked_in", "T1", {}))
        assert route.kind is RouteKind.ROLES
        assert "manager" in route.roles
        assert "employee" not in route.roles

    def test_tenant_broadcast(self):
        """Test the tenant-wide fallback."""
        route = resolve_route(EventEnvelope.create("employee.created", "T1", {}))
        assert route == Route(kind=RouteKind.TENANT, tenant_id="T1")

    def test_build_message_frame(self):
        """Test the client frame shape."""
        envelope = EventEnvelope.create("leave.approved", "T1", {"leaveId": "L1"}, target_user_id="U1")
        frame = build_message(envelope).client_frame()
        assert frame["event"] == "leave:update"
        assert frame["data"] == {"leaveId": "L1"}
        assert frame["eventId"] == envelope.event_id
        assert frame["eventType"] == "leave.approved"


class TestSelectConnections:
    """Tests for target set selection."""

    def test_tenant_isolation(self):
        """Test that routes never cross tenants."""
        mine = _connection("U1", "T1")
        other = _connection("U1", "T2")
        route = Route(kind=RouteKind.USERS, tenant_id="T1", user_ids=("U1",))
        assert select_connections([mine, other], route) == [mine]

    def test_room_membership(self):
        """Test that only room members are selected."""
        member = _connection("U1", rooms={"R1"})
        outsider = _connection("U2")
        route = Route(kind=RouteKind.ROOM, tenant_id="T1", room_id="R1")
        assert select_connections([member, outsider], route) == [member]

    def test_roles(self):
        """Test role-restricted routes."""
        hr = _connection("U1", role="hr")
        employee = _connection("U2")
        route = Route(kind=RouteKind.ROLES, tenant_id="T1", roles=("hr",))
        assert select_connections([hr, employee], route) == [hr]

    def test_exclusion_and_inactive(self):
        """Test that the excluded and non-active connections are skipped."""
        sender = _connection("U1")
        peer = _connection("U2")
        closed = _connection("U3")
        closed.close()
        route = Route(kind=RouteKind.TENANT, tenant_id="T1")
        assert select_connections([sender, peer, closed], route, sender.id) == [peer]
