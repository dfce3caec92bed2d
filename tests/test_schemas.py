"""Tests for domain entities and wire schemas."""

from datetime import datetime, timedelta, timezone

import pytest

from peelog.core.errors import DataCorruptionError, InvalidInputError
from peelog.core.schemas import (
    AuthProvider,
    DataSource,
    Event,
    Quality,
    Sourced,
    SyncCursor,
    SyncState,
    User,
    format_timestamp,
    parse_timestamp,
)
from peelog.network.schemas import AIInsight, AIInsightKind, RemoteEvent


class TestQuality:
    def test_numeric_scale(self):
        """Pale yellow is optimal and amber the worst."""
        assert Quality.PALE_YELLOW.numeric_value == 5.0
        assert Quality.CLEAR.numeric_value == 3.5
        assert Quality.YELLOW.numeric_value == 2.5
        assert Quality.DARK_YELLOW.numeric_value == 1.5
        assert Quality.AMBER.numeric_value == 1.0

    def test_acceptable_includes_clear(self):
        assert Quality.CLEAR.is_acceptable
        assert Quality.PALE_YELLOW.is_acceptable
        assert not Quality.CLEAR.is_optimal
        assert Quality.YELLOW.is_concerning

    @pytest.mark.parametrize("text", ["paleYellow", "PALE_YELLOW", "Pale Yellow"])
    def test_parse_accepts_value_name_and_label(self, text):
        assert Quality.parse(text) is Quality.PALE_YELLOW

    def test_parse_unknown(self):
        with pytest.raises(InvalidInputError):
            Quality.parse("purple")


class TestEvent:
    def test_create_defaults(self, now):
        event = Event.create(Quality.CLEAR, notes="  ", now=now)
        assert event.timestamp == now
        assert event.notes is None
        assert event.sync_state is SyncState.PENDING_UPLOAD
        assert len(event.id) == 32

    def test_future_timestamp_rejected(self, now):
        with pytest.raises(InvalidInputError):
            Event.create(Quality.CLEAR, timestamp=now + timedelta(minutes=5), now=now)

    def test_small_clock_skew_tolerated(self, now):
        event = Event.create(Quality.CLEAR, timestamp=now + timedelta(seconds=2), now=now)
        assert event.timestamp > now

    def test_coordinates_must_come_together(self, now):
        with pytest.raises(InvalidInputError):
            Event.create(Quality.CLEAR, latitude=10.0, now=now)

    def test_coordinates_range_checked(self, now):
        with pytest.raises(InvalidInputError):
            Event.create(Quality.CLEAR, latitude=91.0, longitude=0.0, now=now)

    def test_db_round_trip(self, now):
        event = Event.create(Quality.AMBER, notes="after run", latitude=1.5, longitude=2.5, owner_id="u", now=now)
        restored = Event.from_db_row(event.to_db_dict())
        assert restored == event
        assert restored.has_location

    def test_unreadable_row(self, now):
        row = Event.create(Quality.AMBER, now=now).to_db_dict()
        row["quality"] = "purple"
        with pytest.raises(DataCorruptionError):
            Event.from_db_row(row)


class TestTimestamps:
    def test_naive_is_utc(self):
        assert parse_timestamp("2026-03-10T08:00:00") == datetime(2026, 3, 10, 8, tzinfo=timezone.utc)

    def test_zulu_suffix(self):
        assert parse_timestamp("2026-03-10T08:00:00Z").tzinfo is not None

    def test_formatted_timestamps_sort_as_text(self):
        earlier = format_timestamp(datetime(2026, 3, 10, 8, tzinfo=timezone.utc))
        later = format_timestamp(datetime(2026, 3, 10, 8, 0, 0, 1, tzinfo=timezone.utc))
        assert earlier < later


class TestUser:
    def test_guest_cannot_have_email(self):
        with pytest.raises(InvalidInputError):
            User(id="guest-x", auth_provider=AuthProvider.GUEST, email="a@b.co")

    def test_create_guest(self):
        guest = User.create_guest()
        assert guest.is_guest
        assert guest.id.startswith("guest-")

    def test_display_name_falls_back_to_email(self):
        user = User.from_identity("uid", AuthProvider.EMAIL, email="sam@example.com")
        assert user.display_name == "sam"

    def test_db_round_trip(self):
        user = User.from_identity("uid", AuthProvider.APPLE, email="sam@example.com", display_name="Sam")
        user.preferences.sync_enabled = False
        restored = User.from_db_row(user.to_db_dict())
        assert restored.preferences.sync_enabled is False
        assert restored.auth_provider is AuthProvider.APPLE


class TestSyncCursor:
    def test_last_success_is_latest(self, now):
        cursor = SyncCursor("u", last_full_sync_at=now - timedelta(hours=1), last_incremental_sync_at=now)
        assert cursor.last_success_at == now

    def test_never_synced(self):
        assert SyncCursor("u").last_success_at is None


class TestSourced:
    def test_only_remote_is_verified(self):
        assert Sourced(1, DataSource.REMOTE).is_verified
        assert not Sourced(1, DataSource.CACHE).is_verified
        assert not Sourced(1, DataSource.LOCAL).is_verified


class TestRemoteEvent:
    def test_quality_from_index(self):
        remote = RemoteEvent.model_validate({"id": "e1", "timestamp": "2026-03-10T08:00:00Z", "quality": 4})
        assert remote.quality is Quality.AMBER

    def test_out_of_range_index_defaults_to_pale_yellow(self):
        remote = RemoteEvent.model_validate({"id": "e1", "timestamp": "2026-03-10T08:00:00Z", "quality": 9})
        assert remote.quality is Quality.PALE_YELLOW

    def test_wire_uses_index_and_camel_case(self, now):
        event = Event.create(Quality.DARK_YELLOW, location_name="Gym", latitude=1.0, longitude=2.0, now=now)
        wire = RemoteEvent.from_event(event, "u").to_wire()
        assert wire["quality"] == 3
        assert wire["userId"] == "u"
        assert wire["locationName"] == "Gym"
        assert "notes" not in wire

    def test_to_event_is_synced(self):
        remote = RemoteEvent.model_validate({"id": "e1", "timestamp": "2026-03-10T08:00:00Z", "quality": 1})
        event = remote.to_event("u")
        assert event.owner_id == "u"
        assert event.sync_state is SyncState.SYNCED


class TestAIInsight:
    def test_parses_wire_payload(self):
        insight = AIInsight.model_validate(
            {"type": "daily", "content": "Drink water", "generatedAt": "2026-03-10T08:00:00Z"}
        )
        assert insight.type is AIInsightKind.DAILY
        assert insight.question is None
