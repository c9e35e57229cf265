"""Multicast-DNS advertisement, browsing and pairing for the host service."""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import platform
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import ifaddr
from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from resilink.config import NetworkConfig
from resilink.events import EventBus
from resilink.models import DiscoveredDevice, DiscoveredService
from resilink.pairing import PairingCode, PairingGrant, PairingTokenIssuer
from resilink.presence import PresenceTracker
from resilink.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

CONNECTION_METHODS = ("websocket", "polling", "usb")
CAPABILITIES = ("audio_playback", "realtime_control", "qr_pairing", "usb_forwarding")
RESOLVE_TIMEOUT_MS = 3000


@dataclass(frozen=True, slots=True)
class InterfaceAddress:
    interface: str
    address: str
    prefix: int

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Interface(f"{self.address}/{self.prefix}").network

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interface": self.interface,
            "address": self.address,
            "prefix": self.prefix,
            "network": str(self.network),
        }


@dataclass(slots=True)
class NetworkInfo:
    hostname: str
    platform: str
    primary_address: str
    primary_interface: Optional[str]
    interfaces: List[InterfaceAddress] = field(default_factory=list)

    def contains(self, address: Optional[str]) -> bool:
        """True when ``address`` lies on one of the host's IPv4 subnets."""
        if not address:
            return False
        try:
            candidate = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(candidate in entry.network for entry in self.interfaces)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "platform": self.platform,
            "primary_address": self.primary_address,
            "primary_interface": self.primary_interface,
            "interfaces": [entry.to_dict() for entry in self.interfaces],
        }


def collect_network_info(adapters: Iterable[Any]) -> NetworkInfo:
    """Summarise ``ifaddr`` adapters; loopback only counts when nothing else exists."""
    interfaces: List[InterfaceAddress] = []
    for adapter in adapters:
        for ip in adapter.ips:
            if not ip.is_IPv4:
                continue
            interfaces.append(InterfaceAddress(adapter.nice_name, ip.ip, ip.network_prefix))

    external = [entry for entry in interfaces if not ipaddress.ip_address(entry.address).is_loopback]
    primary = external[0] if external else (interfaces[0] if interfaces else None)
    return NetworkInfo(
        hostname=socket.gethostname(),
        platform=platform.system().lower() or "unknown",
        primary_address=primary.address if primary else "127.0.0.1",
        primary_interface=primary.interface if primary else None,
        interfaces=interfaces,
    )


class NetworkDiscoveryService:
    """Advertise this host over mDNS and keep a debounced view of its peers.

    Browser callbacks only update the set of currently announced services;
    :meth:`refresh_once` turns that set into ``serviceDiscovered`` and
    ``serviceDown`` events with the same two-miss rule the USB scanner uses.
    """

    def __init__(
        self,
        config: Optional[NetworkConfig] = None,
        *,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        issuer: Optional[PairingTokenIssuer] = None,
        zeroconf_factory: Callable[[], Any] = AsyncZeroconf,
        adapters_provider: Callable[[], Iterable[Any]] = ifaddr.get_adapters,
    ) -> None:
        self.config = config or NetworkConfig()
        self.bus = bus or EventBus(clock)
        self._clock = clock
        self.issuer = issuer or PairingTokenIssuer(self.config.pairing_secret, clock=clock)
        self._zeroconf_factory = zeroconf_factory
        self._adapters_provider = adapters_provider

        self._zeroconf: Optional[Any] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._advertised: Optional[AsyncServiceInfo] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._announced: Dict[str, DiscoveredService] = {}
        self._services: Dict[str, DiscoveredService] = {}
        self._tracker = PresenceTracker(self.config.miss_threshold)
        self._task = PeriodicTask("network-discovery", self.config.refresh_interval, self.refresh_once)
        self._network_info: Optional[NetworkInfo] = None
        self.last_refresh_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Host identity
    # ------------------------------------------------------------------
    @property
    def instance_name(self) -> str:
        return f"{self.config.service_name}.{self.config.qualified_type}"

    def network_info(self, *, refresh: bool = False) -> NetworkInfo:
        if self._network_info is None or refresh:
            self._network_info = collect_network_info(self._adapters_provider())
        return self._network_info

    def txt_record(self) -> Dict[str, str]:
        info = self.network_info()
        return {
            "version": self.config.version,
            "platform": info.platform,
            "hostname": info.hostname,
            "service_type": self.config.service_type,
            "connection_methods": ",".join(CONNECTION_METHODS),
            "capabilities": ",".join(CAPABILITIES),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self.start_advertisement()
        await self.start_browsing()
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
        await self.stop_browsing()
        await self.stop_advertisement()
        if self._zeroconf is not None:
            try:
                await self._zeroconf.async_close()
            except Exception:
                logger.exception("Error closing zeroconf")
            self._zeroconf = None
        self._announced.clear()
        self._services.clear()
        self._tracker.clear()

    def _ensure_zeroconf(self) -> Any:
        if self._zeroconf is None:
            self._zeroconf = self._zeroconf_factory()
        return self._zeroconf

    async def start_advertisement(self) -> bool:
        await self.stop_advertisement()
        info = self.network_info(refresh=True)
        service = AsyncServiceInfo(
            self.config.qualified_type,
            self.instance_name,
            addresses=[socket.inet_aton(info.primary_address)],
            port=self.config.server_port,
            properties=self.txt_record(),
            server=f"{info.hostname}.local.",
        )
        try:
            zeroconf = self._ensure_zeroconf()
            registration = await zeroconf.async_register_service(service)
            await registration
        except Exception as exc:
            logger.exception("Failed to advertise %s", self.instance_name)
            self.bus.emit("advertisementError", self.instance_name, message=str(exc))
            return False

        self._advertised = service
        logger.info(
            "Advertising %s on %s:%d",
            self.instance_name,
            info.primary_address,
            self.config.server_port,
        )
        self.bus.emit(
            "serviceAdvertised",
            self.instance_name,
            name=self.config.service_name,
            address=info.primary_address,
            port=self.config.server_port,
            txt=self.txt_record(),
        )
        return True

    async def stop_advertisement(self) -> None:
        service, self._advertised = self._advertised, None
        if service is None or self._zeroconf is None:
            return
        try:
            unregistration = await self._zeroconf.async_unregister_service(service)
            await unregistration
            logger.info("Stopped advertising %s", self.instance_name)
        except Exception:
            logger.exception("Failed to withdraw %s", self.instance_name)

    async def start_browsing(self) -> None:
        if self._browser is not None:
            return
        self._loop = asyncio.get_running_loop()
        zeroconf = self._ensure_zeroconf()
        self._browser = AsyncServiceBrowser(
            zeroconf.zeroconf,
            self.config.qualified_type,
            handlers=[self._on_service_state_change],
        )
        logger.info("Browsing for %s", self.config.qualified_type)

    async def stop_browsing(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.async_cancel()
        except Exception:
            logger.exception("Error cancelling service browser")

    # ------------------------------------------------------------------
    # Browser plumbing
    # ------------------------------------------------------------------
    def _on_service_state_change(self, **kwargs: Any) -> None:
        # Keyword-only in recent zeroconf releases.
        if self._loop is None:
            return
        name = kwargs.get("name", "")
        state_change = kwargs.get("state_change")
        if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
            asyncio.run_coroutine_threadsafe(
                self._resolve(kwargs.get("zeroconf"), kwargs.get("service_type", ""), name),
                self._loop,
            )
        elif state_change == ServiceStateChange.Removed:
            self._loop.call_soon_threadsafe(self.service_withdrawn, name)

    async def _resolve(self, zeroconf: Any, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        try:
            found = await info.async_request(zeroconf, RESOLVE_TIMEOUT_MS)
        except Exception:
            logger.exception("Failed to resolve %s", name)
            return
        if not found:
            logger.debug("No service info for %s", name)
            return
        addresses = tuple(info.parsed_addresses())
        properties = {
            _text(key): _text(value)
            for key, value in (info.properties or {}).items()
            if key is not None
        }
        self.service_announced(
            DiscoveredService(
                identifier=name,
                address=addresses[0] if addresses else None,
                port=info.port or 0,
                last_seen=self._clock(),
                addresses=addresses,
                server=info.server,
                properties=properties,
            )
        )

    def service_announced(self, service: DiscoveredService) -> None:
        if self._is_own(service):
            return
        self._announced[service.identifier] = service
        logger.debug("Service announced: %s", service.identifier)

    def service_withdrawn(self, name: str) -> None:
        if self._announced.pop(name, None) is not None:
            logger.debug("Service withdrawn: %s", name)

    def _is_own(self, service: DiscoveredService) -> bool:
        if service.identifier == self.instance_name:
            return True
        info = self.network_info()
        return service.port == self.config.server_port and info.primary_address in service.addresses

    # ------------------------------------------------------------------
    # Debounced view
    # ------------------------------------------------------------------
    def refresh_once(self) -> None:
        now = self._clock()
        delta = self._tracker.observe(self._announced)
        for name in delta.added + delta.present:
            service = self._announced[name]
            service.last_seen = now
            self._services[name] = service
        for name in delta.added:
            service = self._services[name]
            logger.info("Discovered %s at %s:%s", name, service.address, service.port)
            self.bus.emit("serviceDiscovered", name, service=service.to_dict())
        for name in delta.removed:
            service = self._services.pop(name, None)
            logger.info("Service down: %s", name)
            self.bus.emit("serviceDown", name, service=service.to_dict() if service else None)
        self.last_refresh_at = now

    def discovered_services(self) -> List[DiscoveredService]:
        return [
            DiscoveredService(
                identifier=service.identifier,
                address=service.address,
                port=service.port,
                last_seen=service.last_seen,
                addresses=service.addresses,
                server=service.server,
                properties=dict(service.properties),
            )
            for _, service in sorted(self._services.items())
        ]

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------
    def generate_pairing_code(
        self,
        size: Optional[int] = None,
        expiry_hours: Optional[float] = None,
    ) -> PairingCode:
        info = self.network_info()
        code = self.issuer.generate_code(
            host=info.primary_address,
            port=self.config.server_port,
            name=self.config.service_name,
            expiry_hours=self.config.default_expiry_hours if expiry_hours is None else expiry_hours,
            size=size or self.config.default_qr_size,
            extra={"hostname": info.hostname, "methods": ["websocket", "polling"]},
        )
        self.bus.emit(
            "pairingCodeGenerated",
            self.instance_name,
            expires_at=code.expires_at,
            address=info.primary_address,
            port=self.config.server_port,
        )
        return code

    def redeem_pairing_token(self, token: str) -> PairingGrant:
        return self.issuer.redeem(token)

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------
    def recommend_connection_methods(
        self,
        hints: Optional[Mapping[str, Any]] = None,
        usb_devices: Sequence[DiscoveredDevice] = (),
    ) -> Dict[str, Any]:
        hints = dict(hints or {})
        client_platform = str(hints.get("platform") or "unknown").lower()
        usb_debugging = bool(hints.get("usb_debugging") or hints.get("usbDebugging"))
        connection_type = str(hints.get("connection_type") or hints.get("network_type") or "unknown").lower()
        address = hints.get("address")

        info = self.network_info()
        authorized = [device for device in usb_devices if device.authorized]
        pending = [device for device in usb_devices if not device.authorized]
        same_subnet = info.contains(address)

        methods: List[Dict[str, Any]] = []
        if authorized:
            methods.append(
                {
                    "method": "usb_adb",
                    "rank": 1,
                    "reason": "An authorized USB device is attached; a cable link is the most stable",
                    "devices": [device.identifier for device in authorized],
                }
            )
        elif usb_debugging and client_platform == "android":
            methods.append(
                {
                    "method": "usb_adb",
                    "rank": 3,
                    "reason": "USB debugging is enabled; connect a cable for the most stable link",
                    "devices": [device.identifier for device in pending],
                }
            )
        if same_subnet or (address is None and connection_type == "wifi"):
            methods.append(
                {
                    "method": "network",
                    "rank": 2,
                    "reason": "Client shares a local network with the advertised service",
                    "service": self.instance_name,
                    "address": info.primary_address,
                    "port": self.config.server_port,
                }
            )
        methods.append(
            {
                "method": "manual",
                "rank": 4,
                "reason": "Enter the host address manually",
                "address": info.primary_address,
                "port": self.config.server_port,
            }
        )
        methods.sort(key=lambda entry: entry["rank"])
        return {
            "recommendations": methods,
            "network_analysis": {
                "same_subnet": same_subnet,
                "connection_type": connection_type,
                "authorized_usb_devices": len(authorized),
            },
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_status(self) -> Dict[str, Any]:
        info = self.network_info()
        return {
            "advertisement": {
                "active": self._advertised is not None,
                "service": {
                    "name": self.config.service_name,
                    "type": self.config.qualified_type,
                    "address": info.primary_address,
                    "port": self.config.server_port,
                }
                if self._advertised is not None
                else None,
            },
            "browsing": self._browser is not None,
            "discovery": {
                "services_found": len(self._services),
                "services": [service.to_dict() for service in self.discovered_services()],
                "last_refresh": self.last_refresh_at,
            },
            "network": info.to_dict(),
            "pairing": {
                "issued": self.issuer.issued_count,
                "redeemed": self.issuer.redeemed_count,
            },
        }


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return "" if value is None else str(value)


__all__ = [
    "InterfaceAddress",
    "NetworkDiscoveryService",
    "NetworkInfo",
    "collect_network_info",
]
