"""Tests for inbound event validation."""
import pytest

from pairlink.errors import EventValidationError
from pairlink.signaling.events import (
    BroadcastMessage,
    ForceLeave,
    JoinRoom,
    ReportTurnUsage,
    TargetedMessage,
    parse_event,
)


class TestParseEvent:

    def test_join_room(self):
        event = parse_event({"type": "join-room", "roomId": "r1", "userId": "alice", "nickname": "Alice"})
        assert isinstance(event, JoinRoom)
        assert event.roomId == "r1"
        assert event.nickname == "Alice"

    def test_join_room_nickname_optional(self):
        event = parse_event({"type": "join-room", "roomId": "r1", "userId": "alice"})
        assert event.nickname == ""

    def test_signal_keeps_opaque_data(self):
        payload = {"sdp": "v=0...", "candidates": [1, 2]}
        event = parse_event({"type": "signal", "to": "bob", "data": payload})
        assert isinstance(event, TargetedMessage)
        assert event.data == payload

    @pytest.mark.parametrize("kind", ["file-meta", "file-accept", "file-decline", "file-cancel", "file-chunk"])
    def test_file_kinds_are_targeted(self, kind):
        assert isinstance(parse_event({"type": kind, "to": "bob", "data": {}}), TargetedMessage)

    def test_chat_is_broadcast(self):
        assert isinstance(parse_event({"type": "chat", "data": "hi"}), BroadcastMessage)

    def test_force_leave(self):
        event = parse_event({"type": "force-leave", "targetUserId": "bob"})
        assert isinstance(event, ForceLeave)

    def test_turn_usage_accepts_either_byte_field(self):
        assert parse_event({"type": "report-turn-usage", "bytesUsed": 10}).nbytes == 10
        assert parse_event({"type": "report-turn-usage", "bytes": 20}).nbytes == 20
        event = parse_event({"type": "report-turn-usage"})
        assert isinstance(event, ReportTurnUsage)
        assert event.nbytes == 0
        assert event.direction == "both"

    def test_extra_fields_ignored(self):
        event = parse_event({"type": "heartbeat", "ts": 123})
        assert event.type == "heartbeat"


class TestInvalidEvents:

    def test_unknown_type(self):
        with pytest.raises(EventValidationError) as exc:
            parse_event({"type": "launch-missiles"})
        assert exc.value.code == "UNKNOWN_EVENT"

    def test_missing_type(self):
        with pytest.raises(EventValidationError) as exc:
            parse_event({"roomId": "r1"})
        assert exc.value.code == "UNKNOWN_EVENT"

    def test_not_an_object(self):
        with pytest.raises(EventValidationError) as exc:
            parse_event(["join-room"])
        assert exc.value.code == "INVALID_PAYLOAD"

    def test_join_without_room(self):
        with pytest.raises(EventValidationError) as exc:
            parse_event({"type": "join-room", "userId": "alice"})
        assert exc.value.code == "INVALID_PAYLOAD"
        assert "roomId" in exc.value.message

    def test_signal_without_target(self):
        with pytest.raises(EventValidationError):
            parse_event({"type": "signal", "data": {}})

    def test_negative_usage(self):
        with pytest.raises(EventValidationError):
            parse_event({"type": "report-turn-usage", "bytesUsed": -5})

    @pytest.mark.parametrize("bad_type", [["join-room"], {}, 7, None])
    def test_non_string_type(self, bad_type):
        with pytest.raises(EventValidationError) as exc:
            parse_event({"type": bad_type})
        assert exc.value.code == "UNKNOWN_EVENT"
