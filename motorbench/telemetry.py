"""Decoding and dispatch of the peripheral's notification stream.

Every notification is one UTF-8 JSON object discriminated by ``type``:

- ``data``: live telemetry, optionally carrying ``status``.
- ``status``: the status mask, as an integer or as named booleans.
- ``profiles`` / ``profile`` / ``cur_profile``: profile store sync.
- ``version``: firmware version reply.
- ``ack`` / ``ACK``: command acknowledgement.
- ``device_info`` / ``DEVICE_INFO``: firmware, battery, temperature, RSSI.

Objects without ``type`` but with a ``payload`` object are the legacy form
of ``data``. Anything else decodes to ``IgnoredMessage``.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .core.listeners import ListenerSet
from .core.models import TelemetrySample
from .core.status import DeviceStatus, pack_status_flags

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DecodeError:
    """A notification that could not be decoded."""

    reason: str
    raw: bytes = b""


@dataclass(frozen=True, slots=True)
class DataMessage:
    sample: TelemetrySample
    status_mask: Optional[int] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class StatusMessage:
    status: DeviceStatus
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class ProfilesMessage:
    profiles: Tuple[Mapping[str, Any], ...]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class ProfileMessage:
    profile: Mapping[str, Any]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class CurrentProfileMessage:
    name: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class VersionMessage:
    firmware: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class AckMessage:
    command: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class DeviceInfoMessage:
    firmware: Optional[str] = None
    battery: Any = None
    temperature: Any = None
    rssi: Optional[float] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class IgnoredMessage:
    type: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)


Message = Union[
    DataMessage,
    StatusMessage,
    ProfilesMessage,
    ProfileMessage,
    CurrentProfileMessage,
    VersionMessage,
    AckMessage,
    DeviceInfoMessage,
    IgnoredMessage,
]

MessageListener = Callable[[Message], Any]
StatusListener = Callable[[DeviceStatus], Any]
TelemetryListener = Callable[[TelemetrySample], Any]
WarningListener = Callable[[str], Any]


def status_mask_from(value: Any, container: Mapping[str, Any]) -> int:
    """Pack a status field into a mask.

    ``value`` is the ``status`` field itself. Integers pass through; a mapping
    is read as named booleans; anything else falls back to named booleans at
    the top level of ``container``.
    """

    if isinstance(value, bool):
        return pack_status_flags(container)
    if isinstance(value, int):
        return value & 0xFFFFFFFF
    if isinstance(value, float) and value.is_integer():
        return int(value) & 0xFFFFFFFF
    if isinstance(value, Mapping):
        return pack_status_flags(value)
    return pack_status_flags(container)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def decode(raw: bytes, *, now: Optional[Callable[[], float]] = None) -> Union[Message, DecodeError]:
    """Decode one notification. Never raises."""

    clock = now or time.time
    try:
        text = bytes(raw).decode("utf-8")
    except (UnicodeDecodeError, TypeError) as exc:
        return DecodeError(reason=f"invalid UTF-8: {exc}", raw=bytes(raw or b""))

    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        return DecodeError(reason=f"invalid JSON: {exc.msg}", raw=bytes(raw))

    if not isinstance(message, dict):
        return DecodeError(reason="notification is not a JSON object", raw=bytes(raw))

    try:
        return _decode_object(message, clock())
    except (TypeError, ValueError) as exc:
        return DecodeError(reason=f"malformed '{message.get('type')}' message: {exc}", raw=bytes(raw))


def _decode_object(message: Dict[str, Any], received_at: float) -> Message:
    kind = message.get("type")

    if kind == "data":
        status_mask = None
        if message.get("status") is not None:
            status_mask = status_mask_from(message["status"], message)
        return DataMessage(
            sample=TelemetrySample.from_wire(message, timestamp=received_at),
            status_mask=status_mask,
            raw=message,
        )

    if kind == "status":
        mask = status_mask_from(message.get("status"), message)
        return StatusMessage(status=DeviceStatus(mask), raw=message)

    if kind == "profiles":
        profiles = message.get("profiles")
        if not isinstance(profiles, list):
            raise ValueError("'profiles' must be a list")
        return ProfilesMessage(
            profiles=tuple(item for item in profiles if isinstance(item, Mapping)),
            raw=message,
        )

    if kind == "profile":
        body = message.get("profile")
        if not isinstance(body, Mapping):
            body = {key: value for key, value in message.items() if key != "type"}
        return ProfileMessage(profile=body, raw=message)

    if kind == "cur_profile":
        return CurrentProfileMessage(name=_optional_str(message.get("name")), raw=message)

    if kind == "version":
        return VersionMessage(firmware=_optional_str(message.get("firmware")), raw=message)

    if kind in ("ack", "ACK"):
        return AckMessage(command=_optional_str(message.get("command")), raw=message)

    if kind in ("device_info", "DEVICE_INFO"):
        body = message.get("payload")
        if not isinstance(body, Mapping):
            body = message
        rssi = body.get("rssi")
        return DeviceInfoMessage(
            firmware=_optional_str(body.get("firmware")),
            battery=body.get("battery"),
            temperature=body.get("temperature"),
            rssi=float(rssi) if rssi is not None else None,
            raw=message,
        )

    if kind is None and isinstance(message.get("payload"), Mapping):
        return DataMessage(
            sample=TelemetrySample.from_wire(message["payload"], timestamp=received_at),
            raw=message,
        )

    return IgnoredMessage(type=_optional_str(kind), raw=message)


class TelemetryDecoder:
    """Decodes notifications and fans them out to listeners.

    Status listeners run in registration order; the session registers the
    watchdog before any UI listener so safety decisions see a status first.
    """

    def __init__(self, *, now: Optional[Callable[[], float]] = None) -> None:
        self._now = now or time.time
        self._last_telemetry: Optional[TelemetrySample] = None
        self._last_status: Optional[DeviceStatus] = None
        self._firmware_version: Optional[str] = None
        self._decode_errors = 0

        self._message_listeners: ListenerSet[MessageListener] = ListenerSet("message")
        self._status_listeners: ListenerSet[StatusListener] = ListenerSet("status")
        self._telemetry_listeners: ListenerSet[TelemetryListener] = ListenerSet("telemetry")
        self._warning_listeners: ListenerSet[WarningListener] = ListenerSet("warning")

    @property
    def last_telemetry(self) -> Optional[TelemetrySample]:
        return self._last_telemetry

    @property
    def last_status(self) -> Optional[DeviceStatus]:
        return self._last_status

    @property
    def firmware_version(self) -> Optional[str]:
        return self._firmware_version

    @property
    def decode_errors(self) -> int:
        return self._decode_errors

    def add_message_listener(self, listener: MessageListener) -> Callable[[], None]:
        return self._message_listeners.add(listener)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        return self._status_listeners.add(listener)

    def add_telemetry_listener(self, listener: TelemetryListener) -> Callable[[], None]:
        return self._telemetry_listeners.add(listener)

    def add_warning_listener(self, listener: WarningListener) -> Callable[[], None]:
        return self._warning_listeners.add(listener)

    def clear_listeners(self) -> None:
        for listeners in (
            self._message_listeners,
            self._status_listeners,
            self._telemetry_listeners,
            self._warning_listeners,
        ):
            listeners.clear()

    def reset(self) -> None:
        """Forget last-known values (new session)."""

        self._last_telemetry = None
        self._last_status = None
        self._firmware_version = None

    def handle(self, raw: bytes) -> Optional[Message]:
        """Decode ``raw`` and dispatch it. Returns the decoded message."""

        LOGGER.debug("RX: %r", raw)
        result = decode(raw, now=self._now)
        if isinstance(result, DecodeError):
            self._decode_errors += 1
            LOGGER.warning("Dropping notification: %s", result.reason)
            return None

        self._dispatch(result)
        return result

    def _dispatch(self, message: Message) -> None:
        if isinstance(message, DataMessage):
            self._last_telemetry = message.sample
            self._telemetry_listeners.emit(message.sample)
            if message.status_mask is not None:
                self._apply_status(DeviceStatus(message.status_mask))
        elif isinstance(message, StatusMessage):
            self._apply_status(message.status)
        elif isinstance(message, VersionMessage):
            if message.firmware is not None:
                self._firmware_version = message.firmware
                LOGGER.info("Firmware version: %s", message.firmware)
        elif isinstance(message, AckMessage):
            LOGGER.info("ACK received for command: %s", message.command or "unknown")
        elif isinstance(message, DeviceInfoMessage):
            if message.firmware is not None:
                self._firmware_version = message.firmware
        elif isinstance(message, (ProfilesMessage, ProfileMessage, CurrentProfileMessage)):
            pass
        elif isinstance(message, IgnoredMessage):
            LOGGER.debug("Ignoring message of type %r", message.type)
            return
        else:  # pragma: no cover - the union above is closed
            raise AssertionError(f"unhandled message {message!r}")

        self._message_listeners.emit(message)

    def _apply_status(self, status: DeviceStatus) -> None:
        self._last_status = status
        self._status_listeners.emit(status)

        warnings: List[str] = status.warnings
        if warnings:
            self._warning_listeners.emit(", ".join(warnings))
