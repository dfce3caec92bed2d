"""Domain entities: events, users, sync cursors and provenance-tagged results."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from peelog.core.errors import DataCorruptionError, InvalidInputError

T = TypeVar("T")

# Events may be stamped slightly ahead of this device's clock by another device
CLOCK_SKEW_TOLERANCE = timedelta(seconds=5)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO form, so stored timestamps sort as text."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Quality(str, Enum):
    """Urine color rating, ordered from best hydrated to most dehydrated."""

    CLEAR = "clear"
    PALE_YELLOW = "paleYellow"
    YELLOW = "yellow"
    DARK_YELLOW = "darkYellow"
    AMBER = "amber"

    @property
    def numeric_value(self) -> float:
        """Scale used for averaging (5 = optimal, 1 = severely dehydrated)."""
        return _QUALITY_SCALE[self]

    @property
    def description(self) -> str:
        return _QUALITY_DESCRIPTIONS[self]

    @property
    def label(self) -> str:
        return _QUALITY_LABELS[self]

    @property
    def is_optimal(self) -> bool:
        return self is Quality.PALE_YELLOW

    @property
    def is_acceptable(self) -> bool:
        """Acceptable-inclusive: optimal plus over-hydrated clear."""
        return self in (Quality.CLEAR, Quality.PALE_YELLOW)

    @property
    def is_concerning(self) -> bool:
        return not self.is_acceptable

    @classmethod
    def parse(cls, value: str) -> Quality:
        """Accept wire values, enum names and display labels."""
        for quality in cls:
            if value in (quality.value, quality.name, quality.label):
                return quality
        raise InvalidInputError(f"Unknown quality: {value!r}")


_QUALITY_SCALE = {
    Quality.PALE_YELLOW: 5.0,
    Quality.CLEAR: 3.5,
    Quality.YELLOW: 2.5,
    Quality.DARK_YELLOW: 1.5,
    Quality.AMBER: 1.0,
}

_QUALITY_DESCRIPTIONS = {
    Quality.CLEAR: "Well hydrated",
    Quality.PALE_YELLOW: "Normal hydration",
    Quality.YELLOW: "Might need water soon",
    Quality.DARK_YELLOW: "Dehydration warning",
    Quality.AMBER: "Dehydrated - drink water!",
}

_QUALITY_LABELS = {
    Quality.CLEAR: "Clear",
    Quality.PALE_YELLOW: "Pale Yellow",
    Quality.YELLOW: "Yellow",
    Quality.DARK_YELLOW: "Dark Yellow",
    Quality.AMBER: "Amber",
}


class SyncState(str, Enum):
    """Upload status of a local event."""

    SYNCED = "synced"
    PENDING_UPLOAD = "pending_upload"
    PENDING_DELETE = "pending_delete"


class MigrationState(str, Enum):
    """Per-event progress of a guest-to-account migration."""

    NONE = "none"
    REASSIGNED = "reassigned"
    UPLOADED = "uploaded"


@dataclass
class Event:
    """A single logged observation."""

    id: str
    timestamp: datetime
    quality: Quality
    notes: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    owner_id: str | None = None
    sync_state: SyncState = SyncState.PENDING_UPLOAD
    migration_state: MigrationState = MigrationState.NONE
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        quality: Quality,
        timestamp: datetime | None = None,
        notes: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        location_name: str | None = None,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> Event:
        """Create a new, not yet uploaded event.

        Raises:
            InvalidInputError: If the timestamp lies in the future or the
                coordinates are out of range.
        """
        now = now or utcnow()
        ts = parse_timestamp(timestamp) if timestamp else now
        if ts > now + CLOCK_SKEW_TOLERANCE:
            raise InvalidInputError("Event timestamp cannot be in the future")
        if (latitude is None) != (longitude is None):
            raise InvalidInputError("Latitude and longitude must be given together")
        if latitude is not None and not -90.0 <= latitude <= 90.0:
            raise InvalidInputError(f"Latitude out of range: {latitude}")
        if longitude is not None and not -180.0 <= longitude <= 180.0:
            raise InvalidInputError(f"Longitude out of range: {longitude}")

        return cls(
            id=uuid.uuid4().hex,
            timestamp=ts,
            quality=quality,
            notes=notes.strip() if notes and notes.strip() else None,
            latitude=latitude,
            longitude=longitude,
            location_name=location_name,
            owner_id=owner_id,
            updated_at=now,
        )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def with_owner(self, owner_id: str | None) -> Event:
        return replace(self, owner_id=owner_id)

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "quality": self.quality.value,
            "notes": self.notes,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_name": self.location_name,
            "owner_id": self.owner_id,
            "sync_state": self.sync_state.value,
            "migration_state": self.migration_state.value,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Event:
        """Create from database row.

        Raises:
            DataCorruptionError: If the stored row cannot be decoded.
        """
        try:
            return cls(
                id=row["id"],
                timestamp=parse_timestamp(row["timestamp"]),
                quality=Quality(row["quality"]),
                notes=row.get("notes"),
                latitude=row.get("latitude"),
                longitude=row.get("longitude"),
                location_name=row.get("location_name"),
                owner_id=row.get("owner_id"),
                sync_state=SyncState(row.get("sync_state") or SyncState.SYNCED.value),
                migration_state=MigrationState(row.get("migration_state") or MigrationState.NONE.value),
                updated_at=parse_timestamp(row.get("updated_at") or row["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataCorruptionError(f"Unreadable event row {row.get('id')!r}: {e}") from e


class AuthProvider(str, Enum):
    """How a user identity was established."""

    EMAIL = "email"
    APPLE = "apple"
    GUEST = "guest"


class MeasurementUnit(str, Enum):
    METRIC = "metric"
    IMPERIAL = "imperial"


class ThemePreference(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


@dataclass
class UserPreferences:
    """Per-user settings."""

    units: MeasurementUnit = MeasurementUnit.METRIC
    theme: ThemePreference = ThemePreference.SYSTEM
    notifications_enabled: bool = True
    sync_enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "units": self.units.value,
            "theme": self.theme.value,
            "notifications_enabled": self.notifications_enabled,
            "sync_enabled": self.sync_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UserPreferences:
        data = data or {}
        return cls(
            units=MeasurementUnit(data.get("units", MeasurementUnit.METRIC.value)),
            theme=ThemePreference(data.get("theme", ThemePreference.SYSTEM.value)),
            notifications_enabled=bool(data.get("notifications_enabled", True)),
            sync_enabled=bool(data.get("sync_enabled", True)),
        )


@dataclass
class User:
    """A local identity; guests exist only on this device."""

    id: str
    auth_provider: AuthProvider
    email: str | None = None
    display_name: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    preferences: UserPreferences = field(default_factory=UserPreferences)

    def __post_init__(self) -> None:
        if self.auth_provider is AuthProvider.GUEST and self.email:
            raise InvalidInputError("Guest users cannot have an email")

    @property
    def is_guest(self) -> bool:
        return self.auth_provider is AuthProvider.GUEST

    @classmethod
    def create_guest(cls) -> User:
        return cls(id=f"guest-{uuid.uuid4().hex}", auth_provider=AuthProvider.GUEST, display_name="Guest User")

    @classmethod
    def from_identity(
        cls,
        uid: str,
        provider: AuthProvider,
        email: str | None = None,
        display_name: str | None = None,
    ) -> User:
        """Create a user for a remote identity; display name falls back to the email's local part."""
        if not (display_name and display_name.strip()) and email:
            display_name = email.split("@")[0]
        return cls(id=uid, auth_provider=provider, email=email, display_name=display_name)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "auth_provider": self.auth_provider.value,
            "email": self.email,
            "display_name": self.display_name,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "preferences": json.dumps(self.preferences.to_dict()),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> User:
        try:
            return cls(
                id=row["id"],
                auth_provider=AuthProvider(row["auth_provider"]),
                email=row.get("email"),
                display_name=row.get("display_name"),
                created_at=parse_timestamp(row["created_at"]),
                updated_at=parse_timestamp(row["updated_at"]),
                preferences=UserPreferences.from_dict(json.loads(row.get("preferences") or "{}")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataCorruptionError(f"Unreadable user row {row.get('id')!r}: {e}") from e


@dataclass
class SyncCursor:
    """Last successful sync instants for one user."""

    user_id: str
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None

    @property
    def last_success_at(self) -> datetime | None:
        stamps = [s for s in (self.last_full_sync_at, self.last_incremental_sync_at) if s]
        return max(stamps) if stamps else None


class DataSource(str, Enum):
    """Where a derived statistic came from."""

    REMOTE = "remote"
    CACHE = "cache"
    LOCAL = "local"


@dataclass(frozen=True)
class Sourced(Generic[T]):
    """A statistic paired with exactly one provenance tag."""

    data: T
    source: DataSource
    user_id: str | None = None
    generation: int = 0
    fetched_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.source is DataSource.REMOTE
