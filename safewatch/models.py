import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from safewatch import config
from safewatch.errors import InvalidTransition
from safewatch.geo import validate_coordinates


class TrackingMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class TrackingState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class Containment(str, Enum):
    UNKNOWN = "unknown"
    INSIDE = "inside"
    OUTSIDE = "outside"


class ZoneEventKind(str, Enum):
    ENTERED = "entered"
    EXITED = "exited"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SHAKE = "shake"
    SILENT = "silent"
    ZONE_EXIT = "zone_exit"
    ZONE_ENTER = "zone_enter"

    @property
    def is_zone_transition(self) -> bool:
        return self in (TriggerKind.ZONE_EXIT, TriggerKind.ZONE_ENTER)


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    QUEUED_OFFLINE = "queued_offline"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DELIVERED, JobStatus.FAILED)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_FLIGHT, JobStatus.QUEUED_OFFLINE}),
    JobStatus.QUEUED_OFFLINE: frozenset({JobStatus.IN_FLIGHT}),
    JobStatus.IN_FLIGHT: frozenset({JobStatus.DELIVERED, JobStatus.FAILED, JobStatus.QUEUED_OFFLINE}),
    JobStatus.DELIVERED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class PositionSample:
    latitude: float
    longitude: float
    accuracy_m: Optional[float]
    captured_at: float
    speed: Optional[float] = None
    heading: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_m": self.accuracy_m,
            "captured_at": self.captured_at,
            "speed": self.speed,
            "heading": self.heading,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PositionSample":
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy_m=float(data["accuracy_m"]) if data.get("accuracy_m") is not None else None,
            captured_at=float(data["captured_at"]),
            speed=data.get("speed"),
            heading=data.get("heading"),
        )


@dataclass(frozen=True)
class CadencePolicy:
    min_interval_sec: float
    min_displacement_m: float
    max_accuracy_m: float = config.ACCURACY_MAX_M
    max_age_sec: float = config.SAMPLE_MAX_AGE_SEC


FOREGROUND_POLICY = CadencePolicy(
    min_interval_sec=config.FG_MIN_INTERVAL_SEC,
    min_displacement_m=config.FG_MIN_DISPLACEMENT_M,
)
BACKGROUND_POLICY = CadencePolicy(
    min_interval_sec=config.BG_MIN_INTERVAL_SEC,
    min_displacement_m=config.BG_MIN_DISPLACEMENT_M,
)


@dataclass
class SafeZone:
    id: str
    center_lat: float
    center_lon: float
    radius_m: float
    name: str = ""
    alert_on_enter: bool = False
    alert_on_exit: bool = True
    enabled: bool = True
    last_entered_at: Optional[float] = None
    last_exited_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not config.ZONE_RADIUS_MIN_M <= float(self.radius_m) <= config.ZONE_RADIUS_MAX_M:
            raise ValueError(
                f"radius_m must be within [{config.ZONE_RADIUS_MIN_M}, {config.ZONE_RADIUS_MAX_M}], got {self.radius_m}"
            )
        if not validate_coordinates(self.center_lat, self.center_lon):
            raise ValueError(f"invalid zone center {self.center_lat},{self.center_lon}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "center_lat": self.center_lat,
            "center_lon": self.center_lon,
            "radius_m": self.radius_m,
            "alert_on_enter": self.alert_on_enter,
            "alert_on_exit": self.alert_on_exit,
            "enabled": self.enabled,
            "last_entered_at": self.last_entered_at,
            "last_exited_at": self.last_exited_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SafeZone":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            center_lat=float(data["center_lat"]),
            center_lon=float(data["center_lon"]),
            radius_m=float(data["radius_m"]),
            alert_on_enter=bool(data.get("alert_on_enter", False)),
            alert_on_exit=bool(data.get("alert_on_exit", True)),
            enabled=bool(data.get("enabled", True)),
            last_entered_at=data.get("last_entered_at"),
            last_exited_at=data.get("last_exited_at"),
        )


@dataclass
class ZoneContainment:
    zone_id: str
    is_inside: bool
    last_transition_at: float


@dataclass(frozen=True)
class ZoneEvent:
    kind: ZoneEventKind
    zone: SafeZone
    sample: PositionSample
    distance_m: float

    @property
    def trigger_kind(self) -> TriggerKind:
        if self.kind == ZoneEventKind.ENTERED:
            return TriggerKind.ZONE_ENTER
        return TriggerKind.ZONE_EXIT


@dataclass
class RecipientOutcome:
    address: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    delivery_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AlertJob:
    id: str
    trigger_kind: TriggerKind
    recipients: list[str]
    position: Optional[PositionSample]
    created_at: float = field(default_factory=time.time)
    status: JobStatus = JobStatus.PENDING
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None
    address: Optional[str] = None
    attempt_count: int = 0
    queue_attempts: int = 0
    outcomes: dict[str, RecipientOutcome] = field(default_factory=dict)
    error: Optional[str] = None
    updated_at: float = 0.0

    def transition(self, status: JobStatus, now_ts: float | None = None) -> None:
        if status not in JOB_TRANSITIONS[self.status]:
            raise InvalidTransition(f"job {self.id}: {self.status.value} -> {status.value}")
        self.status = status
        self.updated_at = now_ts or time.time()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trigger_kind": self.trigger_kind.value,
            "recipients": list(self.recipients),
            "position": self.position.to_dict() if self.position else None,
            "created_at": self.created_at,
            "status": self.status.value,
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "address": self.address,
            "attempt_count": self.attempt_count,
            "queue_attempts": self.queue_attempts,
            "outcomes": {
                address: {
                    "status": outcome.status.value,
                    "attempts": outcome.attempts,
                    "delivery_id": outcome.delivery_id,
                    "error": outcome.error,
                }
                for address, outcome in self.outcomes.items()
            },
            "error": self.error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlertJob":
        position = data.get("position")
        outcomes = {
            address: RecipientOutcome(
                address=address,
                status=DeliveryStatus(raw.get("status", DeliveryStatus.PENDING.value)),
                attempts=int(raw.get("attempts", 0)),
                delivery_id=raw.get("delivery_id"),
                error=raw.get("error"),
            )
            for address, raw in (data.get("outcomes") or {}).items()
        }
        return cls(
            id=str(data["id"]),
            trigger_kind=TriggerKind(data["trigger_kind"]),
            recipients=list(data.get("recipients") or []),
            position=PositionSample.from_dict(position) if position else None,
            created_at=float(data.get("created_at", 0.0)),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            zone_id=data.get("zone_id"),
            zone_name=data.get("zone_name"),
            address=data.get("address"),
            attempt_count=int(data.get("attempt_count", 0)),
            queue_attempts=int(data.get("queue_attempts", 0)),
            outcomes=outcomes,
            error=data.get("error"),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass
class ShareSession:
    id: str
    access_code: str
    created_at: float
    expires_at: float
    max_views: Optional[int] = None
    view_count: int = 0
    is_active: bool = True
    last_position: Optional[PositionSample] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None

    def is_expired(self, now_ts: float) -> bool:
        return now_ts >= self.expires_at

    def quota_left(self) -> Optional[int]:
        if self.max_views is None:
            return None
        return max(self.max_views - self.view_count, 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "access_code": self.access_code,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "max_views": self.max_views,
            "view_count": self.view_count,
            "is_active": self.is_active,
            "last_position": self.last_position.to_dict() if self.last_position else None,
            "recipient_name": self.recipient_name,
            "recipient_phone": self.recipient_phone,
        }


@dataclass(frozen=True)
class ShareView:
    session_id: str
    position: Optional[PositionSample]
    expires_at: float
    views_left: Optional[int]
