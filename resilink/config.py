"""Configuration bundles for the resilience services.

Every service takes its own dataclass so it can be built in isolation (tests
do this constantly). :func:`load_config` assembles the full tree from
``RESILINK_*`` environment variables.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional


class ConfigError(ValueError):
    """Raised when a configuration value is missing or malformed."""


@dataclass(slots=True)
class HealthConfig:
    max_samples: int = 50
    retention_seconds: float = 300.0
    error_window_seconds: float = 60.0
    degrade_error_threshold: int = 5
    error_burst_threshold: int = 3
    jitter_window: int = 5
    jitter_ratio: float = 0.5
    trend_window: int = 5
    trend_threshold_ms: float = 10.0
    frequent_upgrade_threshold: int = 3
    latency_thresholds_ms: tuple[float, float, float] = (50.0, 100.0, 200.0)
    archive_size: int = 100
    stale_ping_seconds: float = 60.0
    health_check_interval: float = 30.0
    error_pattern_window: int = 10
    error_pattern_threshold: int = 3

    def __post_init__(self) -> None:
        if self.max_samples <= 0:
            raise ConfigError("max_samples must be positive")
        if self.retention_seconds <= 0:
            raise ConfigError("retention_seconds must be positive")
        if self.jitter_window < 2:
            raise ConfigError("jitter_window must be at least 2")
        if self.archive_size <= 0:
            raise ConfigError("archive_size must be positive")
        excellent, good, fair = self.latency_thresholds_ms
        if not excellent < good < fair:
            raise ConfigError("latency_thresholds_ms must be strictly increasing")


@dataclass(slots=True)
class ReconnectionConfig:
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    immediate_delay_ms: float = 500.0
    immediate_attempts: int = 3
    backoff_attempts: int = 8
    backoff_multiplier: float = 1.5
    jitter_ratio: float = 0.2
    short_lived_seconds: float = 30.0
    long_lived_seconds: float = 300.0
    high_error_count: int = 3
    frequent_upgrade_threshold: int = 3
    plan_log_size: int = 200

    def __post_init__(self) -> None:
        if self.base_delay_ms <= 0 or self.max_delay_ms < self.base_delay_ms:
            raise ConfigError("delays must satisfy 0 < base_delay_ms <= max_delay_ms")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ConfigError("jitter_ratio must be within [0, 1)")
        if self.backoff_multiplier < 1.0:
            raise ConfigError("backoff_multiplier must be >= 1")


@dataclass(slots=True)
class UsbConfig:
    adb_path: str = "adb"
    scan_interval: float = 3.0
    command_timeout: float = 5.0
    miss_threshold: int = 2
    local_port_base: int = 3001
    device_port: int = 8080
    use_reverse: bool = False
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.scan_interval <= 0:
            raise ConfigError("scan_interval must be positive")
        if self.miss_threshold < 1:
            raise ConfigError("miss_threshold must be >= 1")
        if self.retry_max_seconds < self.retry_base_seconds:
            raise ConfigError("retry_max_seconds must be >= retry_base_seconds")


@dataclass(slots=True)
class NetworkConfig:
    service_name: str = "Soundboard Server"
    service_type: str = "soundboard"
    server_port: int = 3001
    refresh_interval: float = 5.0
    miss_threshold: int = 2
    pairing_secret: Optional[str] = None
    default_expiry_hours: float = 24.0
    default_qr_size: int = 256
    version: str = "1.0"

    def __post_init__(self) -> None:
        if not self.service_type or self.service_type.startswith("_"):
            raise ConfigError("service_type must be a bare name such as 'soundboard'")
        if self.miss_threshold < 1:
            raise ConfigError("miss_threshold must be >= 1")

    @property
    def qualified_type(self) -> str:
        return f"_{self.service_type}._tcp.local."


@dataclass(slots=True)
class ResilienceConfig:
    health: HealthConfig = field(default_factory=HealthConfig)
    reconnection: ReconnectionConfig = field(default_factory=ReconnectionConfig)
    usb: UsbConfig = field(default_factory=UsbConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    metrics_path: Optional[str] = None
    log_level: str = "INFO"


_PREFIX = "RESILINK_"


def _read(
    environ: Mapping[str, str],
    name: str,
    convert: Callable[[str], Any],
    default: Any,
) -> Any:
    raw = environ.get(_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigError(f"invalid value for {_PREFIX}{name}: {raw!r}") from exc


def _to_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)


def load_config(environ: Optional[Mapping[str, str]] = None) -> ResilienceConfig:
    env = os.environ if environ is None else environ
    usb = UsbConfig(
        adb_path=_read(env, "ADB_PATH", str, "adb"),
        scan_interval=_read(env, "USB_SCAN_INTERVAL", float, 3.0),
        command_timeout=_read(env, "USB_COMMAND_TIMEOUT", float, 5.0),
        miss_threshold=_read(env, "USB_MISS_THRESHOLD", int, 2),
        local_port_base=_read(env, "USB_LOCAL_PORT", int, 3001),
        device_port=_read(env, "USB_DEVICE_PORT", int, 8080),
        use_reverse=_read(env, "USB_USE_REVERSE", _to_bool, False),
    )
    network = NetworkConfig(
        service_name=_read(env, "SERVICE_NAME", str, "Soundboard Server"),
        service_type=_read(env, "SERVICE_TYPE", str, "soundboard"),
        server_port=_read(env, "SERVER_PORT", int, 3001),
        refresh_interval=_read(env, "DISCOVERY_REFRESH_INTERVAL", float, 5.0),
        miss_threshold=_read(env, "DISCOVERY_MISS_THRESHOLD", int, 2),
        pairing_secret=_read(env, "PAIRING_SECRET", str, None),
        default_expiry_hours=_read(env, "PAIRING_EXPIRY_HOURS", float, 24.0),
    )
    health = HealthConfig(
        max_samples=_read(env, "HEALTH_MAX_SAMPLES", int, 50),
        retention_seconds=_read(env, "HEALTH_RETENTION_SECONDS", float, 300.0),
        degrade_error_threshold=_read(env, "HEALTH_DEGRADE_ERRORS", int, 5),
        archive_size=_read(env, "HEALTH_ARCHIVE_SIZE", int, 100),
    )
    return ResilienceConfig(
        health=health,
        reconnection=ReconnectionConfig(),
        usb=usb,
        network=network,
        metrics_path=_read(env, "METRICS_PATH", str, None),
        log_level=_read(env, "LOG_LEVEL", str, "INFO").upper(),
    )


__all__ = [
    "ConfigError",
    "HealthConfig",
    "NetworkConfig",
    "ReconnectionConfig",
    "ResilienceConfig",
    "UsbConfig",
    "load_config",
]
