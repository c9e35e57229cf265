"""CSV journal of resilience events and timings."""
from __future__ import annotations

import contextlib
import csv
import json
import logging
import threading
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from resilink.events import Event, EventBus, Subscription

logger = logging.getLogger(__name__)


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "key",
    "status",
    "value",
    "message",
    "extra",
)

# Payload entries promoted to their own column when an event is journaled.
_VALUE_KEYS = ("average_latency", "latency_ms", "estimated_delay_ms", "port", "duration_ms")
_STATUS_KEYS = ("predicted_stability", "strategy", "state", "authorization_state")


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    try:
        return json.dumps(extra, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(extra)


@dataclass(slots=True)
class MetricRecord:
    """One CSV row."""

    timestamp: str
    event: str
    key: Optional[str] = None
    status: Optional[str] = None
    value: Optional[float] = None
    message: Optional[str] = None
    extra: str = ""

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "key": self.key or "",
            "status": self.status or "",
            "value": self.value if self.value is not None else "",
            "message": self.message or "",
            "extra": self.extra,
        }
        return {name: row.get(name, "") for name in fields}


class MetricsLogger:
    """Append-only CSV journal.

    Rows are flushed as they are written so ``tail -f`` and the ``/events``
    consumers see them immediately. Attach it to an :class:`EventBus` with
    :meth:`attach` to journal every emitted event.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else DEFAULT_FIELDS
        if not self.fields:
            raise ValueError("fields must contain at least one column")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._layers: ContextVar[Tuple[Dict[str, Any], ...]] = ContextVar(f"metrics_scope_{id(self)}", default=())
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writeheader()
                handle.flush()

    def log(
        self,
        event: str,
        *,
        key: Optional[str] = None,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        record = MetricRecord(
            timestamp=self._timestamp(),
            event=event,
            key=key,
            status=status,
            value=value,
            message=message,
            extra=_normalize_extra(self._combined_extra(extra)),
        )
        self._write_row(record)

    def record_event(self, event: "Event") -> None:
        payload = dict(event.payload)
        status = next((str(payload[name]) for name in _STATUS_KEYS if payload.get(name) is not None), None)
        value: Optional[float] = None
        for name in _VALUE_KEYS:
            candidate = payload.get(name)
            if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
                value = float(candidate)
                break
        message = payload.pop("message", None)
        self.log(
            event.kind,
            key=event.key,
            status=status,
            value=value,
            message=str(message) if message is not None else None,
            extra=payload,
        )

    def attach(self, bus: "EventBus") -> "Subscription":
        def _journal(event: "Event") -> None:
            try:
                self.record_event(event)
            except OSError:
                # The journal is a side channel; the event itself was delivered.
                logger.debug("Journal write failed for %s", event.kind, exc_info=True)

        return bus.subscribe(_journal)

    @contextlib.contextmanager
    def scope(self, extra: Mapping[str, Any] | None = None, **extra_kwargs: Any) -> Iterator[None]:
        """Add ``extra`` to every row written by the current task until exit."""
        payload: Dict[str, Any] = dict(extra or {})
        if extra_kwargs:
            payload.update(extra_kwargs)
        token = self._layers.set(self._layers.get() + (payload,))
        try:
            yield
        finally:
            self._layers.reset(token)

    @contextlib.contextmanager
    def timer(
        self,
        event: str,
        *,
        key: Optional[str] = None,
        status: str = "ok",
        error_status: str = "error",
        extra: Optional[Mapping[str, Any]] = None,
        **extra_kwargs: Any,
    ) -> Iterator[Dict[str, Any]]:
        """Journal the duration of the block as one ``event`` row.

        The yielded dict lets the block override ``status`` and add columns
        to ``extra`` once it knows how the work went. Rows written inside the
        block inherit ``extra`` through :meth:`scope`.
        """
        start = perf_counter()
        payload = dict(extra or {})
        if extra_kwargs:
            payload.update(extra_kwargs)
        outcome: Dict[str, Any] = {"status": status}
        try:
            with self.scope(payload):
                yield outcome
        except Exception as exc:
            duration = perf_counter() - start
            self.log(
                event,
                key=key,
                status=error_status,
                value=duration,
                message=str(exc),
                extra={**payload, "exception": type(exc).__name__, "duration": duration},
            )
            raise
        else:
            duration = perf_counter() - start
            final_status = str(outcome.pop("status", status))
            self.log(event, key=key, status=final_status, value=duration, extra={**payload, **outcome, "duration": duration})

    def _write_row(self, record: MetricRecord) -> None:
        row = record.as_row(self.fields)
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writerow(row)
                handle.flush()

    def _timestamp(self) -> str:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        if not isinstance(dt, datetime):
            return str(dt)
        return _ensure_utc(dt).isoformat(timespec="milliseconds")

    def _combined_extra(self, extra: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
        payload: Dict[str, Any] = dict(self._static_extra)
        for layer in self._layers.get():
            payload.update(layer)
        if extra:
            payload.update(extra)
        return payload


__all__ = [
    "DEFAULT_FIELDS",
    "MetricRecord",
    "MetricsLogger",
]
