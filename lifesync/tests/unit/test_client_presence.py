"""
Tests for client-side presence tracking.
"""

import pytest

from lifesync.client.connection import ClientConnectionManager
from lifesync.client.presence import HEARTBEAT_TASK, TICK_TASK, PresenceTracker
from lifesync.config.models import PresenceConfig
from lifesync.models.presence import PresenceCounts, PresenceStatus


@pytest.fixture
async def tracked(client_transports, clock):
    connection = ClientConnectionManager("ws://lifesync.test/api/ws", transport_factory=client_transports, clock=clock)
    tracker = PresenceTracker(connection, PresenceConfig(activity_threshold=30.0), clock=clock)
    statuses: list[PresenceStatus] = []
    tracker.on("status_changed", statuses.append)
    tracker.statuses = statuses
    yield connection, tracker
    await connection.close()


def heartbeats(client_transports):
    return [m["data"] for m in client_transports.latest.sent_of_type("presence:heartbeat")]


def remote(user_id: str, status: str = "online", updated_at: float = 100.0) -> dict:
    return {"user_id": user_id, "status": status, "updated_at": updated_at}


class TestLocalStatus:
    """The local user's status machine."""

    @pytest.mark.asyncio
    async def test_online_on_connect(self, tracked, client_transports):
        """Test that connecting goes online, starts the timers and reports a heartbeat."""
        connection, tracker = tracked

        await connection.connect("token-alice")

        assert tracker.status == PresenceStatus.ONLINE
        assert tracker.statuses == [PresenceStatus.ONLINE]
        assert heartbeats(client_transports)[-1]["status"] == "online"
        assert connection.tasks.is_scheduled(TICK_TASK)
        assert connection.tasks.is_scheduled(HEARTBEAT_TASK)

    @pytest.mark.asyncio
    async def test_away_after_inactivity(self, tracked, client_transports, clock):
        """Test that idling past the threshold goes away and reports it."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        clock.advance(31.0)
        await tracker.tick()

        assert tracker.status == PresenceStatus.AWAY
        assert heartbeats(client_transports)[-1]["status"] == "away"
        assert tracker.is_active is False

    @pytest.mark.asyncio
    async def test_activity_within_threshold_stays_online(self, tracked, clock):
        """Test that a tick before the threshold changes nothing."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        clock.advance(29.0)
        await tracker.tick()

        assert tracker.status == PresenceStatus.ONLINE

    @pytest.mark.asyncio
    async def test_activity_returns_to_online(self, tracked, client_transports, clock):
        """Test that any activity brings an away user back online."""
        connection, tracker = tracked
        await connection.connect("token-alice")
        clock.advance(31.0)
        await tracker.tick()

        await tracker.record_activity()

        assert tracker.status == PresenceStatus.ONLINE
        assert tracker.statuses == [PresenceStatus.ONLINE, PresenceStatus.AWAY, PresenceStatus.ONLINE]
        assert heartbeats(client_transports)[-1]["status"] == "online"

    @pytest.mark.asyncio
    async def test_visibility(self, tracked, clock):
        """Test that a hidden window is not active, and showing it counts as activity."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        await tracker.set_visibility(False)
        assert tracker.is_active is False

        clock.advance(31.0)
        await tracker.tick()
        await tracker.set_visibility(True)
        assert tracker.status == PresenceStatus.ONLINE
        assert tracker.is_active is True

    @pytest.mark.asyncio
    async def test_logout_reports_offline(self, tracked, client_transports):
        """Test that logout sends a final offline heartbeat and stops the timers."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        await tracker.logout()

        assert tracker.status == PresenceStatus.OFFLINE
        assert heartbeats(client_transports)[-1]["status"] == "offline"
        assert not connection.tasks.is_scheduled(HEARTBEAT_TASK)

    @pytest.mark.asyncio
    async def test_disconnect_goes_offline(self, tracked):
        """Test that losing the connection takes the local status offline."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        await connection.disconnect()

        assert tracker.status == PresenceStatus.OFFLINE
        assert not connection.tasks.is_scheduled(TICK_TASK)

    @pytest.mark.asyncio
    async def test_heartbeat_while_disconnected_is_not_sent(self, tracked):
        """Test that heartbeats without a channel are skipped quietly."""
        _, tracker = tracked

        await tracker.send_heartbeat()

        assert tracker.heartbeats_sent == 0


class TestContext:
    """presence:update."""

    @pytest.mark.asyncio
    async def test_set_current_page(self, tracked, client_transports):
        """Test that context changes are sent as presence:update."""
        connection, tracker = tracked
        await connection.connect("token-alice")

        await tracker.set_current_page("/board")
        await tracker.set_active_task("t1")

        updates = [m["data"] for m in client_transports.latest.sent_of_type("presence:update")]
        assert updates[0]["current_page"] == "/board"
        assert updates[1]["active_task"] == "t1"
        assert tracker.context == {"current_page": "/board", "active_task": "t1"}


class TestRemoteView:
    """Presence of other users."""

    @pytest.mark.asyncio
    async def test_user_joined_and_counts(self, tracked):
        """Test that joined users are stored, and counted on the next tick."""
        _, tracker = tracked
        counts = []
        tracker.on("counts_changed", counts.append)

        await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote("bob")}})
        await tracker.handle_message(
            {"type": "presence:initial_state", "data": {"users": [remote("carol", "away"), remote("dan", "online")]}}
        )
        assert counts == []
        await tracker.tick()

        assert tracker.get("bob").status == PresenceStatus.ONLINE
        assert tracker.remote_user_ids() == {"bob", "carol", "dan"}
        assert counts[-1] == PresenceCounts(online=2, away=1, offline=0, total=3)
        assert [r.user_id for r in tracker.by_status(PresenceStatus.AWAY)] == ["carol"]

    @pytest.mark.asyncio
    async def test_last_write_wins(self, tracked):
        """Test that an older record never replaces a newer one."""
        _, tracker = tracked

        newer = remote("bob", "away", 200.0)
        await tracker.handle_message({"type": "presence:user_updated", "data": {"presence": newer}})
        await tracker.handle_message({"type": "presence:sync", "data": {"updates": [remote("bob", "online", 150.0)]}})

        assert tracker.get("bob").status == PresenceStatus.AWAY

    @pytest.mark.asyncio
    async def test_user_left_marks_offline(self, tracked):
        """Test that presence:user_left keeps the user but marks them offline."""
        _, tracker = tracked
        await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote("bob")}})

        await tracker.handle_message({"type": "presence:user_left", "data": {"user_id": "bob"}})
        await tracker.tick()

        assert tracker.get("bob").status == PresenceStatus.OFFLINE
        assert tracker.counts.offline == 1

    @pytest.mark.asyncio
    async def test_malformed_record_is_dropped(self, tracked):
        """Test that a record with an unknown status is ignored."""
        _, tracker = tracked

        await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote("bob", "asleep")}})

        assert tracker.get("bob") is None

    @pytest.mark.asyncio
    async def test_stale_records_are_evicted(self, tracked, clock):
        """Test that records not refreshed within the stale threshold are removed on tick."""
        _, tracker = tracked
        await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote("bob")}})
        clock.advance(100.0)
        await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote("carol")}})

        clock.advance(100.0)
        await tracker.tick()

        assert tracker.remote_user_ids() == {"carol"}
        assert tracker.counts.total == 1

    @pytest.mark.asyncio
    async def test_other_messages_ignored(self, tracked):
        """Test that non-presence messages leave the view alone."""
        _, tracker = tracked
        counts = []
        tracker.on("counts_changed", counts.append)

        await tracker.handle_message({"type": "task:created", "data": {"id": "t1"}})

        assert counts == []

    @pytest.mark.asyncio
    async def test_events_alone_do_not_recount(self, tracked):
        """Test that aggregate counts only change on the tick."""
        _, tracker = tracked
        counts = []
        tracker.on("counts_changed", counts.append)

        for user_id in ("bob", "carol", "dan"):
            await tracker.handle_message({"type": "presence:user_joined", "data": {"presence": remote(user_id)}})

        assert counts == []
        assert tracker.counts.total == 0

        await tracker.tick()

        assert counts == [PresenceCounts(online=3, away=0, offline=0, total=3)]
