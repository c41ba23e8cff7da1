"""Parsers for the wire formats hubs publish on ``hub/+/data`` and ``hub/+/send``.

Hub firmware in the field speaks several incompatible dialects. Each parser
below recognizes exactly one of them and returns a typed record, or ``None``
when the message is not in its shape. Parsers never raise: a malformed
message is simply not matched, and the dispatcher logs and drops it.

Formats, in the order they are tried on ``hub/+/send``:

* ``disconnected:<mac>`` / ``desconnected:<mac>``  (device left the hub)
* ``delete:<mac>``                                  (clear a pending device)
* ``{"pending_devices": [{mac_address, data_count, first_time}, ...]}``
* ``{"data": [{"d": "f1,f2,f3,f4,f5", "t": "YYYY-MM-DD HH:mm:ss"}, ...]}``
* ``<mac>-<samplingRate>,<hr>,<spo2>,<temp>,<battery>``  (inline BLE sample)

The legacy ``hub/+/data`` feed carries ``{"d": "<device>-v1,...,v6", "t": ...}``.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

DISCONNECT_PREFIXES = ("disconnected:", "desconnected:")  # upstream firmware misspells it
DELETE_PREFIX = "delete:"

VITAL_FIELDS = 5  # envTemp, heartRate, respRate, bodyTemp, activity
LEGACY_MAX_VALUES = 6
INLINE_MIN_PARTS = 5

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# --------------------------------------------------------------------------
# Parsed shapes
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class DisconnectSignal:
    mac_address: str


@dataclass(frozen=True)
class DeleteSignal:
    mac_address: str


@dataclass(frozen=True)
class PendingDevice:
    mac_address: str
    data_count: Optional[int]
    first_time: Optional[datetime]


@dataclass(frozen=True)
class PendingDevicesReport:
    devices: Tuple[PendingDevice, ...]

    @property
    def mac_addresses(self) -> List[str]:
        return [d.mac_address for d in self.devices]


@dataclass(frozen=True)
class VitalSigns:
    """The five numeric fields of a structured ``d`` string, in wire order."""

    env_temp: float
    heart_rate: float
    resp_rate: float
    body_temp: float
    activity: float

    def as_list(self) -> List[float]:
        return [self.env_temp, self.heart_rate, self.resp_rate, self.body_temp, self.activity]


@dataclass(frozen=True)
class TelemetryRow:
    timestamp: str
    date_key: str
    vitals: VitalSigns


@dataclass(frozen=True)
class TelemetryBatch:
    rows: Tuple[TelemetryRow, ...]
    dropped: int = 0


@dataclass(frozen=True)
class LegacySample:
    device_id: str
    values: Tuple[str, ...]
    timestamp: str
    date_key: str


@dataclass(frozen=True)
class InlineSample:
    mac_address: str
    sampling_rate: float
    heart_rate: float
    spo2: float
    temperature: float
    battery: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mac": self.mac_address,
            "samplingRate": self.sampling_rate,
            "hr": self.heart_rate,
            "spo2": self.spo2,
            "temp": self.temperature,
            "battery": self.battery,
        }


ParsedPayload = Union[
    DisconnectSignal, DeleteSignal, PendingDevicesReport, TelemetryBatch, LegacySample, InlineSample
]


# --------------------------------------------------------------------------
# Raw message wrapper
# --------------------------------------------------------------------------

class RawMessage:
    """A received payload, decoded once and shared by every parser in a chain."""

    def __init__(self, payload: Union[bytes, bytearray, str]):
        self.payload = payload

    @cached_property
    def text(self) -> Optional[str]:
        if isinstance(self.payload, str):
            return self.payload.strip()
        if isinstance(self.payload, (bytes, bytearray)):
            try:
                return bytes(self.payload).decode("utf-8").strip()
            except UnicodeDecodeError:
                return None
        return None

    @cached_property
    def json_object(self) -> Optional[Dict[str, Any]]:
        """The payload as a JSON object, or None if it is not one."""
        text = self.text
        if not text or not text.startswith("{"):
            return None
        try:
            obj = json.loads(text)
        except ValueError:
            return None
        return obj if isinstance(obj, dict) else None

    def preview(self, length: int = 80) -> str:
        text = self.text
        if text is None:
            return repr(self.payload[:length])
        return text[:length]


# --------------------------------------------------------------------------
# Field helpers
# --------------------------------------------------------------------------

def normalize_mac(value: Any) -> str:
    """Lower-case and trim an address; anything that is not a string becomes ''."""
    return value.strip().lower() if isinstance(value, str) else ""


def to_number(value: Any) -> Optional[float]:
    """Coerce a wire value to a finite float, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def format_number(value: float) -> str:
    """Render a parsed number for CSV: integral values lose their trailing ``.0``."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def parse_date_key(timestamp: Any) -> Optional[str]:
    """Return the ``YYYY-MM-DD`` prefix of a timestamp, or None if it has none."""
    if not isinstance(timestamp, str):
        return None
    trimmed = timestamp.strip()
    if len(trimmed) < 10:
        return None
    date_part = trimmed[:10]
    if not _DATE_KEY_RE.match(date_part):
        return None
    try:
        datetime.strptime(date_part, "%Y-%m-%d")
    except ValueError:
        return None
    return date_part


def parse_first_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored as naive wall-clock time, like the hub reports it
    return parsed.replace(tzinfo=None)


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_d(value: Any) -> Optional[VitalSigns]:
    """Parse ``"25.00,90,70,35.00,90"`` into VitalSigns.

    Exactly five comma-separated numeric fields are required.
    """
    if not isinstance(value, str):
        return None
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != VITAL_FIELDS:
        return None
    numbers = [to_number(p) for p in parts]
    if any(n is None for n in numbers):
        return None
    return VitalSigns(*numbers)


# --------------------------------------------------------------------------
# Shape parsers
# --------------------------------------------------------------------------

def _strip_prefix_identifier(text: Optional[str], prefixes: Sequence[str]) -> Optional[str]:
    if not text:
        return None
    for prefix in prefixes:
        if text.startswith(prefix):
            identifier = normalize_mac(text[len(prefix):])
            return identifier or None
    return None


def parse_disconnect(message: RawMessage) -> Optional[DisconnectSignal]:
    mac = _strip_prefix_identifier(message.text, DISCONNECT_PREFIXES)
    return DisconnectSignal(mac) if mac else None


def parse_delete(message: RawMessage) -> Optional[DeleteSignal]:
    mac = _strip_prefix_identifier(message.text, (DELETE_PREFIX,))
    return DeleteSignal(mac) if mac else None


def _as_count(value: Any) -> Optional[int]:
    """Only genuine JSON integers count; strings, booleans and fractions become None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None


def parse_pending_devices(message: RawMessage) -> Optional[PendingDevicesReport]:
    obj = message.json_object
    if obj is None or not isinstance(obj.get("pending_devices"), list):
        return None

    by_mac: Dict[str, PendingDevice] = {}
    for entry in obj["pending_devices"]:
        if not isinstance(entry, dict):
            continue
        mac = normalize_mac(entry.get("mac_address"))
        if not mac:
            continue
        data_count = _as_count(entry.get("data_count"))
        by_mac[mac] = PendingDevice(
            mac_address=mac,
            data_count=data_count,
            first_time=parse_first_time(entry.get("first_time")),
        )
    return PendingDevicesReport(devices=tuple(by_mac.values()))


def parse_telemetry_batch(message: RawMessage) -> Optional[TelemetryBatch]:
    """Parse the current firmware's ``{"data": [{d, t}, ...]}`` batch.

    Rows with a bad date or a bad ``d`` string are dropped individually so a
    single corrupt sample does not cost the rest of the batch.
    """
    obj = message.json_object
    if obj is None or not isinstance(obj.get("data"), list):
        return None

    rows: List[TelemetryRow] = []
    dropped = 0
    for item in obj["data"]:
        if not isinstance(item, dict):
            dropped += 1
            continue
        d_value, t_value = item.get("d"), item.get("t")
        if not isinstance(d_value, str) or not isinstance(t_value, str):
            dropped += 1
            continue
        date_key = parse_date_key(t_value)
        vitals = parse_d(d_value)
        if date_key is None or vitals is None:
            dropped += 1
            continue
        rows.append(TelemetryRow(timestamp=t_value.strip(), date_key=date_key, vitals=vitals))

    if dropped:
        logger.debug(f"Telemetry batch: kept {len(rows)} rows, dropped {dropped}")
    return TelemetryBatch(rows=tuple(rows), dropped=dropped)


def parse_legacy(message: RawMessage, now: Optional[datetime] = None) -> Optional[LegacySample]:
    """Parse the older ``{"d": "<device>-v1,...,v6", "t": ...}`` feed.

    Missing trailing values are padded with empty cells; older firmware
    omits optional fields rather than sending blanks.
    """
    obj = message.json_object
    if obj is None:
        return None
    d_value = obj.get("d")
    if d_value is None or d_value == "":
        return None

    now = now or datetime.now()
    t_value = obj.get("t")
    if t_value is not None and str(t_value).strip():
        timestamp = str(t_value).strip()
    else:
        timestamp = format_timestamp(now)

    first_token = timestamp.split(" ")[0]
    # The whole first token must be a bare date, otherwise the file is today's
    if len(first_token) == 10 and parse_date_key(first_token):
        date_key = first_token
    else:
        date_key = now.strftime("%Y-%m-%d")

    raw = str(d_value).strip().replace("\r", "").replace("\n", "")
    device_id, dash, rest = raw.partition("-")
    device_id = device_id.strip()
    rest = rest.strip()
    values = [v.strip() for v in rest.split(",")] if dash and rest else []
    values = values[:LEGACY_MAX_VALUES]
    values += [""] * (LEGACY_MAX_VALUES - len(values))

    if not device_id:
        return None
    return LegacySample(device_id=device_id, values=tuple(values), timestamp=timestamp, date_key=date_key)


def parse_inline(message: RawMessage) -> Optional[InlineSample]:
    """Parse the compact ``<mac>-<samplingRate>,<hr>,<spo2>,<temp>,<battery>`` form."""
    text = message.text
    if not text or text.startswith("{"):
        return None
    parts = [p.strip() for p in text.split(",")]
    if len(parts) < INLINE_MIN_PARTS:
        return None

    # rpartition keeps dashed platform UUIDs intact
    mac, dash, rate = parts[0].rpartition("-")
    mac = normalize_mac(mac)
    if not dash or not mac:
        return None

    numbers = [to_number(v) for v in (rate, parts[1], parts[2], parts[3], parts[4])]
    if any(n is None for n in numbers):
        return None
    sampling_rate, heart_rate, spo2, temperature, battery = numbers
    return InlineSample(
        mac_address=mac,
        sampling_rate=sampling_rate,
        heart_rate=heart_rate,
        spo2=spo2,
        temperature=temperature,
        battery=battery,
    )


# --------------------------------------------------------------------------
# Parser chains
# --------------------------------------------------------------------------

@dataclass
class PayloadParserChain:
    """Ordered list of shape parsers; the first one that matches wins.

    A new wire format is supported by inserting its parser at the right
    position, nothing else in the pipeline needs to change.
    """

    parsers: List[Tuple[str, Callable[[RawMessage], Optional[ParsedPayload]]]] = field(default_factory=list)

    def parse(self, payload: Union[bytes, str, RawMessage]) -> Optional[ParsedPayload]:
        message = payload if isinstance(payload, RawMessage) else RawMessage(payload)
        if message.text is None:
            return None
        for name, parser in self.parsers:
            try:
                result = parser(message)
            except Exception as e:
                # A parser bug must not take the pipeline down
                logger.error(f"Parser '{name}' failed on payload {message.preview()!r}: {e}", exc_info=True)
                continue
            if result is not None:
                return result
        return None

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.parsers]


send_topic_parser = PayloadParserChain([
    ("disconnect", parse_disconnect),
    ("delete", parse_delete),
    ("pending_devices", parse_pending_devices),
    ("telemetry_batch", parse_telemetry_batch),
    ("inline", parse_inline),
])

data_topic_parser = PayloadParserChain([
    ("disconnect", parse_disconnect),
    ("legacy", parse_legacy),
])
