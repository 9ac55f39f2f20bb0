from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


PROVIDERS = ("google", "outlook")
EVENT_SOURCES = ("local",) + PROVIDERS
TASK_PRIORITIES = ("low", "medium", "high")
TASK_STATUSES = ("pending", "in-progress", "completed")
PROJECT_CATEGORIES = ("personal", "professional", "academic")
PROJECT_STATUSES = ("active", "completed", "on-hold")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    if isinstance(value, date):
        return date_to_datetime(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if len(text) == 10:
        return date_to_datetime(date.fromisoformat(text))
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderConfig:
    client_id: str = ""
    client_secret: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "") or "").strip(),
            client_secret=str(data.get("client_secret", "") or "").strip(),
        )

    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class SyncConfig:
    past_days: int = 30
    future_days: int = 90
    interval_seconds: int = 900
    scheduler_enabled: bool = False
    http_timeout_seconds: int = 20

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            past_days=max(0, int(data.get("past_days", 30))),
            future_days=max(1, int(data.get("future_days", 90))),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            scheduler_enabled=bool(data.get("scheduler_enabled", False)),
            http_timeout_seconds=max(1, int(data.get("http_timeout_seconds", 20))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    google: ProviderConfig = field(default_factory=ProviderConfig)
    outlook: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=ProviderConfig.from_dict(data.get("google")),
            outlook=ProviderConfig.from_dict(data.get("outlook")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Credentials:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return _ensure_tz(now) >= self.expires_at


@dataclass
class CalendarAccount:
    id: int
    user_id: int
    provider: str
    email: str
    credentials: Credentials
    calendar_id: str | None = None
    enabled: bool = True
    last_synced_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CalendarAccount":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            provider=str(row["provider"]),
            email=str(row["email"]),
            credentials=Credentials(
                access_token=str(row["access_token"] or ""),
                refresh_token=row["refresh_token"] or None,
                expires_at=parse_iso_datetime(row["token_expires_at"]),
            ),
            calendar_id=row["calendar_id"] or None,
            enabled=bool(row["enabled"]),
            last_synced_at=parse_iso_datetime(row["last_synced_at"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "email": self.email,
            "enabled": self.enabled,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class RemoteEvent:
    """Provider-neutral view of one event in a provider listing."""

    external_id: str
    title: str = ""
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    all_day: bool = False
    cancelled: bool = False


@dataclass
class Event:
    id: int
    user_id: int
    title: str
    start_time: datetime
    end_time: datetime | None = None
    description: str | None = None
    all_day: bool = False
    project_id: int | None = None
    task_id: int | None = None
    source: str = "local"
    external_id: str | None = None
    calendar_account_id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Event":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            start_time=parse_iso_datetime(row["start_time"]),
            end_time=parse_iso_datetime(row["end_time"]),
            description=row["description"],
            all_day=bool(row["all_day"]),
            project_id=row["project_id"],
            task_id=row["task_id"],
            source=str(row["source"] or "local"),
            external_id=row["external_id"],
            calendar_account_id=row["calendar_account_id"],
            created_at=parse_iso_datetime(row["created_at"]),
        )

    @property
    def is_mirror(self) -> bool:
        return self.source != "local"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class Project:
    id: int
    user_id: int
    name: str
    description: str | None = None
    category: str = "personal"
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Project":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            name=str(row["name"]),
            description=row["description"],
            category=str(row["category"] or "personal"),
            status=str(row["status"] or "active"),
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class Task:
    id: int
    user_id: int
    title: str
    description: str | None = None
    priority: str = "medium"
    status: str = "pending"
    due_date: datetime | None = None
    project_id: int | None = None
    event_id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Task":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            description=row["description"],
            priority=str(row["priority"] or "medium"),
            status=str(row["status"] or "pending"),
            due_date=parse_iso_datetime(row["due_date"]),
            project_id=row["project_id"],
            event_id=row["event_id"],
            created_at=parse_iso_datetime(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["due_date"] = serialize_datetime(self.due_date)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class AccountSyncOutcome:
    provider: str
    email: str
    account_id: int
    synced: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "account_id": self.account_id,
            "provider": self.provider,
            "email": self.email,
        }
        if self.error is None:
            payload["synced"] = self.synced or 0
        else:
            payload["error"] = self.error
        return payload


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, past_days: int, future_days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return now_utc - timedelta(days=max(0, past_days)), now_utc + timedelta(days=max(1, future_days))
