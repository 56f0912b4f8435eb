"""Tests for presence fan-out rules."""

import pytest

from geopresence.utils.broadcaster import Delivery, PresenceBroadcaster
from geopresence.utils.protocol import ChannelEvent, InvalidPayloadError


def _connect(broadcaster, *ids, room=None):
    for cid in ids:
        broadcaster.handle_connect(cid)
        if room is not None:
            broadcaster.handle_join(cid, room)


@pytest.fixture
def scoped(registry):
    return PresenceBroadcaster(registry, room_scoped=True)


@pytest.fixture
def unscoped(registry):
    return PresenceBroadcaster(registry, room_scoped=False)


class TestRoomScoped:
    def test_scenario_payload_and_recipients(self, scoped, sample_update):
        _connect(scoped, "C1", "C2", room="r1")
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.event == ChannelEvent.RECEIVE_LOCATION
        assert delivery.payload == {
            "id": "C1",
            "latitude": 10.0,
            "longitude": 20.0,
            "heading": 0.0,
            "name": "A",
            "color": "#111",
        }
        assert delivery.recipients == {"C1", "C2"}

    def test_room_field_stripped(self, scoped, sample_update):
        _connect(scoped, "C1", room="r1")
        delivery = scoped.handle_location("C1", sample_update)
        assert "room" not in delivery.payload

    def test_room_isolation(self, scoped, sample_update):
        _connect(scoped, "A1", "A2", room="r1")
        _connect(scoped, "B1", "B2", room="r2")
        delivery = scoped.handle_location("A1", sample_update)
        assert delivery.recipients.isdisjoint({"B1", "B2"})

    def test_falls_back_to_registered_room(self, scoped, sample_update):
        _connect(scoped, "C1", "C2", room="r1")
        _connect(scoped, "C3", room="r2")
        del sample_update["room"]
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1", "C2"}

    def test_empty_room_field_uses_registered_room(self, scoped, sample_update):
        _connect(scoped, "C1", "C2", room="r2")
        sample_update["room"] = ""
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1", "C2"}

    def test_payload_room_cannot_cross_rooms(self, scoped, sample_update):
        _connect(scoped, "A1", "A2", room="r2")
        _connect(scoped, "B1", room="r1")
        delivery = scoped.handle_location("A1", sample_update)  # names r1
        assert delivery.recipients == {"A1", "A2"}
        assert "B1" not in delivery.recipients

    def test_unjoined_sender_cannot_address_a_room(self, scoped, sample_update):
        _connect(scoped, "C1")
        _connect(scoped, "C2", room="r1")
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1"}

    def test_matching_payload_room_delivered(self, scoped, sample_update):
        _connect(scoped, "C1", "C2", room="r1")
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1", "C2"}

    def test_no_room_at_all_echoes_only(self, scoped, sample_update):
        _connect(scoped, "C1", "C2")
        del sample_update["room"]
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1"}

    def test_join_blank_room_uses_default(self, scoped):
        _connect(scoped, "C1")
        assert scoped.handle_join("C1", "") == "default"
        assert scoped.handle_join("C1", None) == "default"
        assert scoped.registry.room_of("C1") == "default"

    def test_join_after_disconnect(self, scoped):
        assert scoped.handle_join("gone", "r1") is None


class TestBroadcastMode:
    def test_everyone_receives(self, unscoped, sample_update):
        _connect(unscoped, "A1", room="r1")
        _connect(unscoped, "B1", room="r2")
        _connect(unscoped, "C1")
        delivery = unscoped.handle_location("A1", sample_update)
        assert delivery.recipients == {"A1", "B1", "C1"}

    def test_mode_in_stats(self, unscoped, scoped):
        assert unscoped.stats["mode"] == "broadcast"
        assert scoped.stats["mode"] == "room"


class TestSelfInclusion:
    @pytest.mark.parametrize("room_scoped", [True, False])
    def test_sender_receives_echo(self, registry, sample_update, room_scoped):
        broadcaster = PresenceBroadcaster(registry, room_scoped=room_scoped)
        _connect(broadcaster, "C1", room="r1")
        delivery = broadcaster.handle_location("C1", sample_update)
        assert "C1" in delivery.recipients


class TestDeparture:
    def test_global_notice(self, scoped):
        _connect(scoped, "C1", "C2", room="r1")
        _connect(scoped, "C3", room="r2")
        delivery = scoped.handle_disconnect("C1")
        assert delivery.event == ChannelEvent.USER_DISCONNECTED
        assert delivery.payload == "C1"
        assert delivery.recipients == {"C2", "C3"}
        assert not scoped.registry.is_connected("C1")

    def test_departed_not_targeted_later(self, scoped, sample_update):
        _connect(scoped, "C1", "C2", room="r1")
        scoped.handle_disconnect("C2")
        delivery = scoped.handle_location("C1", sample_update)
        assert delivery.recipients == {"C1"}


class TestValidation:
    @pytest.mark.parametrize("payload", [
        None,
        "not an object",
        {"latitude": "x", "longitude": 1},
        {"latitude": 91, "longitude": 0},
        {"longitude": 20},
        {"latitude": float("nan"), "longitude": 20},
    ])
    def test_rejects_malformed(self, scoped, payload):
        _connect(scoped, "C1", room="r1")
        with pytest.raises(InvalidPayloadError):
            scoped.handle_location("C1", payload)
        assert scoped.stats["updates_rejected"] == 1

    def test_defaults_filled(self, scoped):
        _connect(scoped, "C1", room="r1")
        delivery = scoped.handle_location("C1", {"latitude": 1, "longitude": 2, "heading": None})
        assert delivery.payload["heading"] == 0.0
        assert delivery.payload["name"] == "Anonymous"
        assert delivery.payload["color"] == "#3498db"

    def test_validation_off_propagates_as_is(self, registry):
        broadcaster = PresenceBroadcaster(registry, validate_payloads=False)
        _connect(broadcaster, "C1", room="r1")
        delivery = broadcaster.handle_location(
            "C1", {"latitude": "weird", "extra": [1, 2], "room": "r1"},
        )
        assert delivery.payload == {"id": "C1", "latitude": "weird", "extra": [1, 2]}

    def test_validation_off_still_needs_object(self, registry):
        broadcaster = PresenceBroadcaster(registry, validate_payloads=False)
        _connect(broadcaster, "C1")
        with pytest.raises(InvalidPayloadError):
            broadcaster.handle_location("C1", [1, 2])


class TestDelivery:
    def test_recipient_count(self):
        d = Delivery(ChannelEvent.USER_DISCONNECTED, "x", frozenset({"a", "b"}))
        assert d.recipient_count == 2

    def test_later_update_supersedes(self, scoped, sample_update):
        _connect(scoped, "C1", room="r1")
        first = scoped.handle_location("C1", sample_update)
        sample_update["latitude"] = 11
        second = scoped.handle_location("C1", sample_update)
        assert first.payload["latitude"] == 10.0
        assert second.payload["latitude"] == 11.0
        assert scoped.stats["updates_relayed"] == 2
