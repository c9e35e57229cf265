from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class AuthorizationState(str, Enum):
    AUTHORIZED = "authorized"
    PENDING_USER_APPROVAL = "pending_user_approval"
    UNAUTHORIZED = "unauthorized"

    @classmethod
    def from_bridge_status(cls, status: str) -> "AuthorizationState":
        """Map an ``adb devices`` status column onto an authorization state."""
        normalized = (status or "").strip().lower()
        if normalized == "device":
            return cls.AUTHORIZED
        if normalized in {"unauthorized", "authorizing"}:
            return cls.PENDING_USER_APPROVAL
        return cls.UNAUTHORIZED


@dataclass(slots=True)
class DiscoveredDevice:
    """A cable-attached device seen through the debug bridge."""

    identifier: str
    authorization_state: AuthorizationState
    last_seen: float
    address: str = "127.0.0.1"
    port: Optional[int] = None
    model: Optional[str] = None
    product: Optional[str] = None
    transport: str = "usb"

    @property
    def authorized(self) -> bool:
        return self.authorization_state is AuthorizationState.AUTHORIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "address": self.address,
            "port": self.port,
            "authorization_state": self.authorization_state.value,
            "last_seen": self.last_seen,
            "model": self.model,
            "product": self.product,
            "transport": self.transport,
        }


@dataclass(slots=True)
class DiscoveredService:
    """A host instance announced over multicast DNS."""

    identifier: str
    address: Optional[str]
    port: int
    last_seen: float
    addresses: Tuple[str, ...] = ()
    server: Optional[str] = None
    properties: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "address": self.address,
            "addresses": list(self.addresses),
            "port": self.port,
            "server": self.server,
            "properties": dict(self.properties),
            "last_seen": self.last_seen,
        }
