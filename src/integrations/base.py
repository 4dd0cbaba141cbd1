"""Base classes and normalized data models for device integrations.

Every device integration must subclass DeviceIntegration and hand back the
vendor-agnostic SleepData / RecoveryData / WorkoutData records.  These types
are the only shapes that cross from a vendor module into storage, the sync
endpoints, and whatever consumes the stored documents.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, ClassVar, Literal, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("fitsync.integrations")


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class TokenSet:
    """OAuth credentials for one vendor.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Rotating token used to obtain a new access_token.
        expires_at:    UTC instant the access token expires.  ``None`` means
                       unknown and is always treated as already expired.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None

    def to_document(self) -> str:
        """Serialize to the JSON token document kept in the shared store."""
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )

    @classmethod
    def from_document(cls, content: str) -> "TokenSet | None":
        """Parse a token document.  Returns None when it is unusable."""
        try:
            data = json.loads(content)
        except (TypeError, ValueError):
            logger.warning("Token document is not valid JSON")
            return None
        if not isinstance(data, dict):
            return None

        access = data.get("access_token") or data.get("accessToken")
        refresh = data.get("refresh_token") or data.get("refreshToken")
        if not access or not refresh:
            return None

        raw_expiry = data.get("expires_at", data.get("expiresAt"))
        expires_at: datetime | None
        if isinstance(raw_expiry, (int, float)) and not isinstance(raw_expiry, bool):
            # Epoch milliseconds; zero means "unset"
            expires_at = (
                datetime.fromtimestamp(raw_expiry / 1000, tz=timezone.utc) if raw_expiry else None
            )
        else:
            expires_at = parse_iso_datetime(raw_expiry)

        return cls(access_token=access, refresh_token=refresh, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Normalized records
# ---------------------------------------------------------------------------


@dataclass
class SleepStages:
    """Minutes spent in each sleep stage."""

    rem: int
    deep: int
    light: int
    awake: int


@dataclass
class SleepData:
    """Main sleep period, normalized across vendors.

    Attributes:
        source:           Vendor slug ('whoop', ...).
        date:             User's local calendar day the sleep started on.
        start_time:       UTC start instant.
        end_time:         UTC end instant.
        duration_minutes: End minus start, in whole minutes.
        stages:           Stage breakdown when the vendor scored it.
        score:            Vendor sleep score 0-100.
        efficiency:       Sleep efficiency percentage.
        respiratory_rate: Breaths per minute.
        record_id:        Vendor record id, used for idempotent re-delivery.
        raw:              Original vendor payload, never persisted to documents.
    """

    source: str
    date: date
    start_time: datetime | None
    end_time: datetime | None
    duration_minutes: int
    stages: SleepStages | None = None
    score: float | None = None
    efficiency: float | None = None
    respiratory_rate: float | None = None
    record_id: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    def to_fields(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_minutes": self.duration_minutes,
            "score": self.score,
            "efficiency": self.efficiency,
            "respiratory_rate": self.respiratory_rate,
            "stages": (
                {
                    "rem": self.stages.rem,
                    "deep": self.stages.deep,
                    "light": self.stages.light,
                    "awake": self.stages.awake,
                }
                if self.stages
                else None
            ),
        }

    @classmethod
    def from_fields(cls, source: str, day: date, data: Mapping[str, Any]) -> "SleepData":
        stages_raw = data.get("stages")
        stages = None
        if isinstance(stages_raw, Mapping):
            stages = SleepStages(
                rem=safe_int(stages_raw.get("rem")) or 0,
                deep=safe_int(stages_raw.get("deep")) or 0,
                light=safe_int(stages_raw.get("light")) or 0,
                awake=safe_int(stages_raw.get("awake")) or 0,
            )
        return cls(
            source=source,
            date=day,
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            duration_minutes=safe_int(data.get("duration_minutes")) or 0,
            stages=stages,
            score=safe_float(data.get("score")),
            efficiency=safe_float(data.get("efficiency")),
            respiratory_rate=safe_float(data.get("respiratory_rate")),
            record_id=_opt_str(data.get("id")),
        )


@dataclass
class RecoveryData:
    """Recovery / readiness reading, normalized across vendors.

    Attributes:
        source:              Vendor slug.
        date:                User's local calendar day of the reading.
        score:               Recovery score 0-100.
        hrv:                 HRV RMSSD in milliseconds.
        resting_heart_rate:  Resting heart rate in bpm.
        spo2:                Blood oxygen percentage.
        skin_temp_deviation: Skin temperature in Celsius as reported.
        sleep_id:            Id of the sleep this recovery was computed from.
        raw:                 Original vendor payload.
    """

    source: str
    date: date
    score: float
    hrv: float | None = None
    resting_heart_rate: float | None = None
    spo2: float | None = None
    skin_temp_deviation: float | None = None
    sleep_id: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    def to_fields(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "hrv": self.hrv,
            "resting_heart_rate": self.resting_heart_rate,
            "spo2": self.spo2,
            "skin_temp_deviation": self.skin_temp_deviation,
            "sleep_id": self.sleep_id,
        }

    @classmethod
    def from_fields(cls, source: str, day: date, data: Mapping[str, Any]) -> "RecoveryData":
        return cls(
            source=source,
            date=day,
            score=safe_float(data.get("score")) or 0.0,
            hrv=safe_float(data.get("hrv")),
            resting_heart_rate=safe_float(data.get("resting_heart_rate")),
            spo2=safe_float(data.get("spo2")),
            skin_temp_deviation=safe_float(data.get("skin_temp_deviation")),
            sleep_id=_opt_str(data.get("sleep_id")),
        )


@dataclass
class WorkoutData:
    """A single workout, normalized across vendors.

    Attributes:
        source:           Vendor slug.
        date:             User's local calendar day the workout started on.
        type:             Human-readable activity name.
        duration_minutes: Duration in whole minutes.
        strain:           Vendor strain score (Whoop: 0-21).
        calories:         Energy burned in kcal.
        heart_rate_avg:   Average heart rate in bpm.
        heart_rate_max:   Maximum heart rate in bpm.
        distance_meters:  Distance covered, when recorded.
        record_id:        Vendor record id, the de-duplication key in storage.
        raw:              Original vendor payload.
    """

    source: str
    date: date
    type: str
    duration_minutes: int
    strain: float | None = None
    calories: int | None = None
    heart_rate_avg: int | None = None
    heart_rate_max: int | None = None
    distance_meters: float | None = None
    record_id: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def dedup_key(self) -> str:
        return self.record_id or f"type:{self.type}"

    def to_fields(self) -> dict[str, Any]:
        return {
            "id": self.record_id,
            "type": self.type,
            "duration_minutes": self.duration_minutes,
            "strain": self.strain,
            "calories": self.calories,
            "heart_rate_avg": self.heart_rate_avg,
            "heart_rate_max": self.heart_rate_max,
            "distance_meters": self.distance_meters,
        }

    @classmethod
    def from_fields(cls, source: str, day: date, data: Mapping[str, Any]) -> "WorkoutData":
        return cls(
            source=source,
            date=day,
            type=str(data.get("type") or "Activity"),
            duration_minutes=safe_int(data.get("duration_minutes")) or 0,
            strain=safe_float(data.get("strain")),
            calories=safe_int(data.get("calories")),
            heart_rate_avg=safe_int(data.get("heart_rate_avg")),
            heart_rate_max=safe_int(data.get("heart_rate_max")),
            distance_meters=safe_float(data.get("distance_meters")),
            record_id=_opt_str(data.get("id")),
        )


# ---------------------------------------------------------------------------
# Webhook events (tagged union)
# ---------------------------------------------------------------------------


@dataclass
class SleepEvent:
    data: SleepData
    kind: ClassVar[Literal["sleep"]] = "sleep"


@dataclass
class RecoveryEvent:
    data: RecoveryData
    kind: ClassVar[Literal["recovery"]] = "recovery"


@dataclass
class WorkoutEvent:
    data: WorkoutData
    kind: ClassVar[Literal["workout"]] = "workout"


WebhookEvent = SleepEvent | RecoveryEvent | WorkoutEvent


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-neutral view of an inbound webhook.

    Verification needs the exact bytes the vendor signed, so the body is
    kept raw and decoded lazily.
    """

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json(self) -> Any:
        """Decoded body, or None when it is not valid JSON."""
        try:
            return json.loads(self.body)
        except (TypeError, ValueError):
            return None


# ---------------------------------------------------------------------------
# Capability contract
# ---------------------------------------------------------------------------


class DeviceIntegration(ABC):
    """Contract every vendor integration satisfies.

    Webhook routing, the manual sync endpoint and the token refresh job only
    ever talk to this interface.
    """

    #: Display name (e.g. "Whoop").
    name: str = "Unknown Device"

    #: URL-safe identifier used in routes and document namespaces (e.g. "whoop").
    slug: str = "unknown"

    @abstractmethod
    def is_configured(self) -> bool:
        """True when client credentials are present."""

    @abstractmethod
    def get_auth_url(self, redirect_uri: str) -> str:
        """Return the vendor authorization URL the user should visit."""

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code for a TokenSet."""

    @abstractmethod
    async def refresh(self) -> TokenSet:
        """Refresh the stored access token and persist the result."""

    @abstractmethod
    async def fetch_sleep(self, day: date) -> SleepData | None:
        """Fetch the main, scored sleep for one local calendar day."""

    @abstractmethod
    async def fetch_recovery(self, day: date) -> RecoveryData | None:
        """Fetch the scored recovery for one local calendar day."""

    @abstractmethod
    async def fetch_workouts(self, day: date) -> list[WorkoutData]:
        """Fetch every scored workout for one local calendar day."""

    @abstractmethod
    def verify_webhook(self, request: WebhookRequest) -> bool:
        """Check payload structure, authenticity and user match."""

    @abstractmethod
    async def parse_webhook(self, payload: Any) -> WebhookEvent | None:
        """Resolve a verified payload into a normalized event, or None."""


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

_OFFSET_RE = re.compile(r"^(?:UTC)?([+-])(\d{1,2}):?(\d{2})?$")


def resolve_timezone(name: str) -> tzinfo:
    """Turn a configured timezone into a tzinfo.

    Accepts IANA names ("America/New_York"), "UTC", or fixed offsets such as
    "-05:00" / "UTC+2".  Unknown names fall back to UTC with a warning.
    """
    name = (name or "UTC").strip()
    if name.upper() in ("UTC", "Z"):
        return timezone.utc
    match = _OFFSET_RE.match(name)
    if match:
        sign, hours, minutes = match.groups()
        delta = timedelta(hours=int(hours), minutes=int(minutes or 0))
        return timezone(-delta if sign == "-" else delta)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


def local_date(instant: datetime, tz: tzinfo) -> date:
    """Calendar day of ``instant`` as seen by the user in ``tz``.

    Naive datetimes are taken to be UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz).date()


def parse_iso_datetime(value: object) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def safe_int(value: object) -> int | None:
    """Coerce to int, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_float(value: object) -> float | None:
    """Coerce to float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _opt_str(value: object) -> str | None:
    return None if value is None else str(value)
