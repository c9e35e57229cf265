from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class ConnectionState(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    ENDED = "ended"


class PingSample(NamedTuple):
    timestamp: float
    latency_ms: float


class ErrorEntry(NamedTuple):
    timestamp: float
    kind: str
    message: str


class TransportUpgrade(NamedTuple):
    from_transport: str
    to_transport: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class ClientInfo:
    """Describes the remote client; fixed for the lifetime of a connection."""

    platform: str = "unknown"
    transport: str = "unknown"
    address: Optional[str] = None
    user_agent: Optional[str] = None
    network_type: Optional[str] = None
    usb_debugging: bool = False

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any] | None) -> "ClientInfo":
        payload = payload or {}
        return cls(
            platform=str(payload.get("platform") or "unknown"),
            transport=str(payload.get("transport") or "unknown"),
            address=payload.get("address"),
            user_agent=payload.get("user_agent") or payload.get("userAgent"),
            network_type=payload.get("network_type") or payload.get("networkType"),
            usb_debugging=bool(payload.get("usb_debugging") or payload.get("usbDebugging")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "transport": self.transport,
            "address": self.address,
            "user_agent": self.user_agent,
            "network_type": self.network_type,
            "usb_debugging": self.usb_debugging,
        }


@dataclass(slots=True)
class ConnectionRecord:
    """Live state of one logical client connection.

    The record is only mutated by the health monitor that owns it. Readers
    must go through :meth:`snapshot` so they never observe a record while
    events are being appended to it.
    """

    id: str
    start_time: float
    client_info: ClientInfo
    ping_history: List[PingSample] = field(default_factory=list)
    errors: List[ErrorEntry] = field(default_factory=list)
    transport_upgrades: List[TransportUpgrade] = field(default_factory=list)
    state: ConnectionState = ConnectionState.ACTIVE
    end_reason: Optional[str] = None
    end_time: Optional[float] = None
    last_ping: Optional[float] = None
    transport: str = "unknown"

    @property
    def ended(self) -> bool:
        return self.state is ConnectionState.ENDED

    @property
    def upgrade_count(self) -> int:
        return len(self.transport_upgrades)

    @property
    def last_upgrade(self) -> Optional[TransportUpgrade]:
        return self.transport_upgrades[-1] if self.transport_upgrades else None

    def duration(self, now: float) -> float:
        end = self.end_time if self.end_time is not None else now
        return max(0.0, end - self.start_time)

    def snapshot(self) -> "ConnectionRecord":
        # Samples are immutable tuples, so copying the containers is enough.
        return replace(
            self,
            ping_history=list(self.ping_history),
            errors=list(self.errors),
            transport_upgrades=list(self.transport_upgrades),
        )

    def to_dict(self) -> Dict[str, Any]:
        last_upgrade = self.last_upgrade
        return {
            "id": self.id,
            "start_time": self.start_time,
            "client_info": self.client_info.to_dict(),
            "state": self.state.value,
            "end_reason": self.end_reason,
            "end_time": self.end_time,
            "transport": self.transport,
            "ping_count": len(self.ping_history),
            "error_count": len(self.errors),
            "transport_upgrades": {
                "count": self.upgrade_count,
                "last": last_upgrade._asdict() if last_upgrade else None,
            },
        }
