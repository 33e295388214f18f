"""Records exchanged with the relay dashboard API."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import InvalidStatusError

DEFAULT_LOAD_BALANCE = "round-robin"
LOAD_BALANCE_STRATEGIES = ("round-robin", "random", "failover")

CHANNEL_STATUSES = frozenset({"active", "suspended", "disabled"})
HEALTH_VALUES = frozenset({"healthy", "error", "unknown"})

# Wire keys mapped onto Channel attributes; everything else lands in ``extra``.
_CHANNEL_FIELDS = (
    "index",
    "name",
    "serviceType",
    "baseUrl",
    "baseUrls",
    "apiKeys",
    "description",
    "website",
    "status",
    "health",
    "latency",
    "latencyTestTime",
    "priority",
    "pinned",
    "promotionUntil",
    "suspendReason",
)


def _coerce_int(value: object) -> Optional[int]:
    """Convert ``value`` into an integer if possible."""

    if isinstance(value, bool):  # ``True``/``False`` are not counts.
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                numeric = float(text)
            except ValueError:
                return None
            if numeric.is_integer():
                return int(numeric)
    return None


def _coerce_float(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _coerce_str(value: object, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def _coerce_str_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


def _timestamp_from_millis(value: object) -> Optional[datetime]:
    millis = _coerce_float(value)
    if millis is None or millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def _timestamp_to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def normalize_health(status: object) -> Optional[str]:
    """Return *status* if it is a known health tag, otherwise ``None``."""

    if isinstance(status, str) and status in HEALTH_VALUES:
        return status
    return None


def normalize_status(status: object) -> str:
    """Return a channel status tag; unknown or missing values become ``""`` (unset)."""

    if isinstance(status, str) and status in CHANNEL_STATUSES:
        return status
    return ""


def validate_status(status: str) -> str:
    """Return *status* unchanged or raise :class:`InvalidStatusError`."""

    if status not in CHANNEL_STATUSES:
        raise InvalidStatusError(
            f"Unsupported channel status {status!r}; expected one of {sorted(CHANNEL_STATUSES)}"
        )
    return status


@dataclass(slots=True)
class Channel:
    """One upstream route as reported by the relay.

    ``index`` is assigned by the relay and is only unique within a category.
    ``latency`` and ``latency_measured_at`` may be overlaid locally by ping
    operations.
    """

    index: int
    name: str = ""
    service_type: str = ""
    base_url: str = ""
    base_urls: list[str] = field(default_factory=list)
    api_keys: list[str] = field(default_factory=list)
    description: Optional[str] = None
    website: Optional[str] = None
    status: str = ""
    health: Optional[str] = None
    latency: Optional[float] = None
    latency_measured_at: Optional[datetime] = None
    priority: Optional[int] = None
    pinned: bool = False
    promotion_until: Optional[str] = None
    suspend_reason: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        """Active channels include those without an explicit status."""

        return self.status in ("active", "")

    @property
    def takes_failover(self) -> bool:
        return self.status != "disabled"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Channel":
        index = _coerce_int(payload.get("index"))
        if index is None:
            raise ValueError(f"Channel payload without a usable index: {payload!r}")
        return cls(
            index=index,
            name=_coerce_str(payload.get("name")),
            service_type=_coerce_str(payload.get("serviceType")),
            base_url=_coerce_str(payload.get("baseUrl")),
            base_urls=_coerce_str_list(payload.get("baseUrls")),
            api_keys=_coerce_str_list(payload.get("apiKeys")),
            description=_optional_str(payload.get("description")),
            website=_optional_str(payload.get("website")),
            status=normalize_status(payload.get("status")),
            health=normalize_health(payload.get("health")),
            latency=_coerce_float(payload.get("latency")),
            latency_measured_at=_timestamp_from_millis(payload.get("latencyTestTime")),
            priority=_coerce_int(payload.get("priority")),
            pinned=bool(payload.get("pinned", False)),
            promotion_until=_optional_str(payload.get("promotionUntil")),
            suspend_reason=_optional_str(payload.get("suspendReason")),
            extra={key: value for key, value in payload.items() if key not in _CHANNEL_FIELDS},
        )

    def to_payload(self, *, include_runtime: bool = True) -> dict[str, Any]:
        """Return the wire representation.

        With ``include_runtime=False`` the relay-assigned and locally measured
        fields are left out, which is the shape add/update requests expect.
        """

        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "name": self.name,
                "serviceType": self.service_type,
                "baseUrl": self.base_url,
                "apiKeys": list(self.api_keys),
            }
        )
        if self.base_urls:
            data["baseUrls"] = list(self.base_urls)
        if self.description is not None:
            data["description"] = self.description
        if self.website is not None:
            data["website"] = self.website
        if self.priority is not None:
            data["priority"] = self.priority
        if self.pinned:
            data["pinned"] = True
        if not include_runtime:
            return data
        data["index"] = self.index
        data["status"] = self.status
        if self.health is not None:
            data["health"] = self.health
        if self.latency is not None:
            data["latency"] = self.latency
        if self.latency_measured_at is not None:
            data["latencyTestTime"] = _timestamp_to_millis(self.latency_measured_at)
        if self.promotion_until is not None:
            data["promotionUntil"] = self.promotion_until
        if self.suspend_reason is not None:
            data["suspendReason"] = self.suspend_reason
        return data


@dataclass(slots=True)
class Snapshot:
    """Last known channel list of one category."""

    channels: list[Channel] = field(default_factory=list)
    current: Optional[int] = None
    load_balance: str = DEFAULT_LOAD_BALANCE

    def find(self, index: int) -> Optional[Channel]:
        for channel in self.channels:
            if channel.index == index:
                return channel
        return None


@dataclass(slots=True)
class ChannelMetrics:
    """Scheduler metrics for one channel."""

    channel_index: int
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    consecutive_failures: int = 0
    latency: Optional[float] = None
    last_success_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["ChannelMetrics"]:
        index = _coerce_int(payload.get("channelIndex"))
        if index is None:
            return None
        known = {
            "channelIndex",
            "requestCount",
            "successCount",
            "failureCount",
            "successRate",
            "errorRate",
            "consecutiveFailures",
            "latency",
            "lastSuccessAt",
            "lastFailureAt",
        }
        return cls(
            channel_index=index,
            request_count=_coerce_int(payload.get("requestCount")) or 0,
            success_count=_coerce_int(payload.get("successCount")) or 0,
            failure_count=_coerce_int(payload.get("failureCount")) or 0,
            success_rate=_coerce_float(payload.get("successRate")) or 0.0,
            error_rate=_coerce_float(payload.get("errorRate")) or 0.0,
            consecutive_failures=_coerce_int(payload.get("consecutiveFailures")) or 0,
            latency=_coerce_float(payload.get("latency")),
            last_success_at=_optional_str(payload.get("lastSuccessAt")),
            last_failure_at=_optional_str(payload.get("lastFailureAt")),
            extra={key: value for key, value in payload.items() if key not in known},
        )


@dataclass(slots=True)
class DashboardStats:
    """Scheduler summary for one category."""

    multi_channel_mode: bool = False
    active_channel_count: int = 0
    trace_affinity_count: int = 0
    trace_affinity_ttl: str = ""
    failure_threshold: int = 0
    window_size: int = 0
    circuit_recovery_time: str = ""

    @classmethod
    def from_payload(cls, payload: object) -> Optional["DashboardStats"]:
        if not isinstance(payload, dict):
            return None
        return cls(
            multi_channel_mode=bool(payload.get("multiChannelMode", False)),
            active_channel_count=_coerce_int(payload.get("activeChannelCount")) or 0,
            trace_affinity_count=_coerce_int(payload.get("traceAffinityCount")) or 0,
            trace_affinity_ttl=_coerce_str(payload.get("traceAffinityTTL")),
            failure_threshold=_coerce_int(payload.get("failureThreshold")) or 0,
            window_size=_coerce_int(payload.get("windowSize")) or 0,
            circuit_recovery_time=_coerce_str(payload.get("circuitRecoveryTime")),
        )


@dataclass(slots=True)
class ChannelActivity:
    """Recent per-segment traffic of one channel (oldest segment first)."""

    channel_index: int
    segments: list[dict[str, Any]] = field(default_factory=list)
    rpm: float = 0.0
    tpm: float = 0.0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["ChannelActivity"]:
        index = _coerce_int(payload.get("channelIndex"))
        if index is None:
            return None
        segments = payload.get("segments")
        return cls(
            channel_index=index,
            segments=[dict(item) for item in segments if isinstance(item, dict)]
            if isinstance(segments, list)
            else [],
            rpm=_coerce_float(payload.get("rpm")) or 0.0,
            tpm=_coerce_float(payload.get("tpm")) or 0.0,
        )


@dataclass(slots=True)
class DashboardSlot:
    """Metrics, stats and recent activity cached for one category."""

    metrics: list[ChannelMetrics] = field(default_factory=list)
    stats: Optional[DashboardStats] = None
    recent_activity: Optional[list[ChannelActivity]] = None

    def metrics_for(self, index: int) -> Optional[ChannelMetrics]:
        for entry in self.metrics:
            if entry.channel_index == index:
                return entry
        return None

    def activity_for(self, index: int) -> Optional[ChannelActivity]:
        for entry in self.recent_activity or ():
            if entry.channel_index == index:
                return entry
        return None


@dataclass(slots=True)
class DashboardPayload:
    """Parsed response of the dashboard endpoint."""

    channels: list[Channel]
    load_balance: str
    metrics: list[ChannelMetrics]
    stats: Optional[DashboardStats]
    recent_activity: Optional[list[ChannelActivity]]

    @classmethod
    def from_payload(cls, payload: object) -> "DashboardPayload":
        if not isinstance(payload, dict):
            raise ValueError("Dashboard response is not an object")
        channels_raw = payload.get("channels") or []
        metrics_raw = payload.get("metrics") or []
        activity_raw = payload.get("recentActivity")
        recent_activity: Optional[list[ChannelActivity]] = None
        if isinstance(activity_raw, list):
            recent_activity = [
                entry
                for entry in (
                    ChannelActivity.from_payload(item) for item in activity_raw if isinstance(item, dict)
                )
                if entry is not None
            ]
        return cls(
            channels=[Channel.from_payload(item) for item in channels_raw if isinstance(item, dict)],
            load_balance=_coerce_str(payload.get("loadBalance"), DEFAULT_LOAD_BALANCE)
            or DEFAULT_LOAD_BALANCE,
            metrics=[
                entry
                for entry in (
                    ChannelMetrics.from_payload(item) for item in metrics_raw if isinstance(item, dict)
                )
                if entry is not None
            ],
            stats=DashboardStats.from_payload(payload.get("stats")),
            recent_activity=recent_activity,
        )

    def slot(self) -> DashboardSlot:
        return DashboardSlot(
            metrics=list(self.metrics),
            stats=self.stats,
            recent_activity=list(self.recent_activity) if self.recent_activity is not None else None,
        )


@dataclass(slots=True)
class PingResult:
    """Latency probe of one channel."""

    id: int
    latency: Optional[float]
    status: str = "unknown"
    success: bool = False
    error: Optional[str] = None

    @property
    def health(self) -> Optional[str]:
        return normalize_health(self.status)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, default_id: Optional[int] = None) -> "PingResult":
        identifier = _coerce_int(payload.get("id"))
        if identifier is None:
            identifier = _coerce_int(payload.get("index"))
        if identifier is None:
            identifier = default_id
        if identifier is None:
            raise ValueError(f"Ping result without a channel id: {payload!r}")
        success = bool(payload.get("success", False))
        status = payload.get("status")
        if not isinstance(status, str) or not status:
            status = "healthy" if success else "error"
        return cls(
            id=identifier,
            latency=_coerce_float(payload.get("latency")),
            status=status,
            success=success or status == "healthy",
            error=_optional_str(payload.get("error")),
        )


def parse_ping_sweep(payload: object) -> list[PingResult]:
    """Parse either ping-all response shape into :class:`PingResult` entries.

    Relays answer with a bare list of ``{id, latency, status}`` objects or
    with ``{"channels": [{index, latency, success}]}``.
    """

    if isinstance(payload, dict):
        payload = payload.get("channels")
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise ValueError("Ping sweep response is not a list")
    return [PingResult.from_payload(item) for item in payload if isinstance(item, dict)]


@dataclass(slots=True)
class OperationResult:
    """Outcome of a user-triggered operation."""

    success: bool
    message: str = ""
    detail: Optional[str] = None


__all__ = [
    "CHANNEL_STATUSES",
    "Channel",
    "ChannelActivity",
    "ChannelMetrics",
    "DEFAULT_LOAD_BALANCE",
    "LOAD_BALANCE_STRATEGIES",
    "DashboardPayload",
    "DashboardSlot",
    "DashboardStats",
    "OperationResult",
    "PingResult",
    "Snapshot",
    "normalize_health",
    "normalize_status",
    "parse_ping_sweep",
    "validate_status",
]
