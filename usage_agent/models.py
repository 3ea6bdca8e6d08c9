"""Data models for the agent."""

import datetime
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

DEFAULT_NOTIFICATION_THRESHOLD = 20.0
MAX_NICKNAME_LENGTH = 30


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 string into an aware datetime; anything unusable becomes None."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def _format_timestamp(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def mask_secret(value: Optional[str]) -> str:
    """Short, log-safe representation of a credential."""
    if not value:
        return "<none>"
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


@dataclass
class Account:
    """One authenticated claude.ai identity."""

    session_key: str
    organization_id: str
    email: Optional[str] = None
    nickname: Optional[str] = None
    session_key_expiration: Optional[datetime.datetime] = None
    notification_threshold: float = DEFAULT_NOTIFICATION_THRESHOLD
    did_notify_below_threshold: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    added_date: datetime.datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        return (
            f"Account(id={self.id!r}, organization_id={self.organization_id!r}, "
            f"email={self.email!r}, session_key={mask_secret(self.session_key)!r})"
        )

    def is_session_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.session_key_expiration is None:
            return False
        return self.session_key_expiration < (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "nickname": self.nickname,
            "session_key": self.session_key,
            "organization_id": self.organization_id,
            "session_key_expiration": _format_timestamp(self.session_key_expiration),
            "notification_threshold": self.notification_threshold,
            "did_notify_below_threshold": self.did_notify_below_threshold,
            "added_date": _format_timestamp(self.added_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        threshold = data.get("notification_threshold")
        return cls(
            id=data["id"],
            session_key=data["session_key"],
            organization_id=data["organization_id"],
            email=data.get("email") or None,
            nickname=data.get("nickname") or None,
            session_key_expiration=parse_timestamp(data.get("session_key_expiration")),
            notification_threshold=(
                float(threshold)
                if isinstance(threshold, (int, float)) and not isinstance(threshold, bool)
                else DEFAULT_NOTIFICATION_THRESHOLD
            ),
            did_notify_below_threshold=bool(data.get("did_notify_below_threshold", False)),
            added_date=parse_timestamp(data.get("added_date")) or utcnow(),
        )


@dataclass(frozen=True)
class UsageTier:
    """One quota window."""

    remaining_percent: float = 100.0
    resets_at: Optional[datetime.datetime] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "UsageTier":
        """Build a tier from the API shape; missing or malformed fields fall back to 100% remaining."""
        if not isinstance(payload, dict):
            return cls()
        utilization = payload.get("utilization")
        if not isinstance(utilization, (int, float)) or isinstance(utilization, bool):
            utilization = 0.0
        remaining = max(0.0, min(100.0, 100.0 - float(utilization)))
        return cls(
            remaining_percent=remaining,
            resets_at=parse_timestamp(payload.get("resets_at")),
        )


@dataclass(frozen=True)
class UsageSnapshot:
    """Quota readings for the four usage windows."""

    session: UsageTier = field(default_factory=UsageTier)
    weekly: UsageTier = field(default_factory=UsageTier)
    weekly_opus: UsageTier = field(default_factory=UsageTier)
    weekly_sonnet: UsageTier = field(default_factory=UsageTier)

    @property
    def weekly_remaining(self) -> float:
        return self.weekly.remaining_percent

    @property
    def session_remaining(self) -> float:
        return self.session.remaining_percent

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UsageSnapshot":
        return cls(
            session=UsageTier.from_payload(payload.get("five_hour")),
            weekly=UsageTier.from_payload(payload.get("seven_day")),
            weekly_opus=UsageTier.from_payload(payload.get("seven_day_opus")),
            weekly_sonnet=UsageTier.from_payload(payload.get("seven_day_sonnet")),
        )


class PollHealth(str, enum.Enum):
    NO_DATA = "no_data"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class PollState:
    """In-memory polling state for the active account."""

    consecutive_failures: int = 0
    last_successful_fetch: Optional[datetime.datetime] = None
    latest_snapshot: Optional[UsageSnapshot] = None
    auth_failed: bool = False


@dataclass(frozen=True)
class CookieEvent:
    """A cookie observed by the login surface."""

    name: str
    domain: str
    secure: bool
    path: str
    value: str = field(repr=False)
    expires_at: Optional[datetime.datetime] = None


class LoginState(str, enum.Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    AWAITING_COOKIE = "awaiting_cookie"
    VERIFYING = "verifying"
    RESOLVED = "resolved"


class LoginFailureReason(str, enum.Enum):
    AUTH = "auth"
    NO_ORGANIZATION = "no_organization"
    DUPLICATE = "duplicate"
    LIMIT = "limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    STORAGE = "storage"


@dataclass(frozen=True)
class LoginResult:
    """Outcome of one login attempt."""

    success: bool
    account_id: Optional[str] = None
    reason: Optional[LoginFailureReason] = None

    @property
    def retryable(self) -> bool:
        return self.reason in (
            LoginFailureReason.NETWORK,
            LoginFailureReason.TIMEOUT,
            LoginFailureReason.CANCELLED,
            LoginFailureReason.STORAGE,
        )
