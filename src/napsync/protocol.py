"""Wire format for messages exchanged between the wrist unit and the controller.

Frame format (all integers little-endian):
    [SOF: 0xAA] [LENGTH: 2B] [CRC8: 1B] [VERSION] [KIND] [SEQ: 8B] [SENT_AT: 8B f64] [PAYLOAD...] [CRC32: 4B]

- SOF: Always 0xAA
- LENGTH: len(VERSION..PAYLOAD) + 4 (for the CRC32 trailer), uint16
- CRC8: CRC-8 (poly 0x07) computed over the 2-byte LENGTH field
- VERSION: Protocol version; decoders accept any version >= 1 and ignore
  payload bytes past the layout they know, so later versions can append fields
- KIND: Message kind (0x01=CLASSIFICATION_EVENT, 0x02=SESSION_EVENT, ...)
- SEQ: Per-sender sequence number (0 for unsequenced Ack/Heartbeat frames)
- SENT_AT: Sender wall-clock time, seconds since the epoch
- CRC32: Standard CRC-32 (zlib) over VERSION..PAYLOAD

Payload layouts:
    CLASSIFICATION_EVENT  <B d d         state, confidence, window end (NaN = none)
    SESSION_EVENT         <16s B B d d   session UUID, new state, end reason (0 = none),
                                         at, scheduled duration
    HEARTBEAT             (empty)
    ACK                   <Q             acknowledged sequence number
"""

from __future__ import annotations

import logging
import math
import struct
import uuid
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from napsync.analytics.classifier import ClassificationResult, SleepState
from napsync.exceptions import WireFormatError
from napsync.session import EndReason, NapState, SessionTransition

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Framing constants
# ---------------------------------------------------------------------------
PROTOCOL_VERSION = 1
SOF = 0xAA
SOF_SIZE = 1
LENGTH_SIZE = 2
CRC8_SIZE = 1
CRC32_SIZE = 4
HEADER_SIZE = SOF_SIZE + LENGTH_SIZE + CRC8_SIZE  # 4 bytes before the inner block

_INNER_HEADER = struct.Struct("<BBQd")  # version, kind, seq, sent_at
INNER_HEADER_SIZE = _INNER_HEADER.size  # 18
MIN_FRAME_SIZE = HEADER_SIZE + INNER_HEADER_SIZE + CRC32_SIZE
MAX_FRAME_LENGTH = 1024  # LENGTH values above this are treated as line noise

_CLASSIFICATION = struct.Struct("<Bdd")
_SESSION = struct.Struct("<16sBBdd")
_ACK = struct.Struct("<Q")

MAX_SEQUENCE = 2**64 - 1


class MessageKind(IntEnum):
    CLASSIFICATION_EVENT = 0x01
    SESSION_EVENT = 0x02
    HEARTBEAT = 0x03
    ACK = 0x04

    @property
    def sequenced(self) -> bool:
        """Whether frames of this kind need an Ack and ordered delivery."""
        return self in (MessageKind.CLASSIFICATION_EVENT, MessageKind.SESSION_EVENT)


# ---------------------------------------------------------------------------
# CRC implementations
# ---------------------------------------------------------------------------

# CRC-8 lookup table (polynomial 0x07)
_CRC8_TABLE = [
    0x00, 0x07, 0x0E, 0x09, 0x1C, 0x1B, 0x12, 0x15,
    0x38, 0x3F, 0x36, 0x31, 0x24, 0x23, 0x2A, 0x2D,
    0x70, 0x77, 0x7E, 0x79, 0x6C, 0x6B, 0x62, 0x65,
    0x48, 0x4F, 0x46, 0x41, 0x54, 0x53, 0x5A, 0x5D,
    0xE0, 0xE7, 0xEE, 0xE9, 0xFC, 0xFB, 0xF2, 0xF5,
    0xD8, 0xDF, 0xD6, 0xD1, 0xC4, 0xC3, 0xCA, 0xCD,
    0x90, 0x97, 0x9E, 0x99, 0x8C, 0x8B, 0x82, 0x85,
    0xA8, 0xAF, 0xA6, 0xA1, 0xB4, 0xB3, 0xBA, 0xBD,
    0xC7, 0xC0, 0xC9, 0xCE, 0xDB, 0xDC, 0xD5, 0xD2,
    0xFF, 0xF8, 0xF1, 0xF6, 0xE3, 0xE4, 0xED, 0xEA,
    0xB7, 0xB0, 0xB9, 0xBE, 0xAB, 0xAC, 0xA5, 0xA2,
    0x8F, 0x88, 0x81, 0x86, 0x93, 0x94, 0x9D, 0x9A,
    0x27, 0x20, 0x29, 0x2E, 0x3B, 0x3C, 0x35, 0x32,
    0x1F, 0x18, 0x11, 0x16, 0x03, 0x04, 0x0D, 0x0A,
    0x57, 0x50, 0x59, 0x5E, 0x4B, 0x4C, 0x45, 0x42,
    0x6F, 0x68, 0x61, 0x66, 0x73, 0x74, 0x7D, 0x7A,
    0x89, 0x8E, 0x87, 0x80, 0x95, 0x92, 0x9B, 0x9C,
    0xB1, 0xB6, 0xBF, 0xB8, 0xAD, 0xAA, 0xA3, 0xA4,
    0xF9, 0xFE, 0xF7, 0xF0, 0xE5, 0xE2, 0xEB, 0xEC,
    0xC1, 0xC6, 0xCF, 0xC8, 0xDD, 0xDA, 0xD3, 0xD4,
    0x69, 0x6E, 0x67, 0x60, 0x75, 0x72, 0x7B, 0x7C,
    0x51, 0x56, 0x5F, 0x58, 0x4D, 0x4A, 0x43, 0x44,
    0x19, 0x1E, 0x17, 0x10, 0x05, 0x02, 0x0B, 0x0C,
    0x21, 0x26, 0x2F, 0x28, 0x3D, 0x3A, 0x33, 0x34,
    0x4E, 0x49, 0x40, 0x47, 0x52, 0x55, 0x5C, 0x5B,
    0x76, 0x71, 0x78, 0x7F, 0x6A, 0x6D, 0x64, 0x63,
    0x3E, 0x39, 0x30, 0x37, 0x22, 0x25, 0x2C, 0x2B,
    0x06, 0x01, 0x08, 0x0F, 0x1A, 0x1D, 0x14, 0x13,
    0xAE, 0xA9, 0xA0, 0xA7, 0xB2, 0xB5, 0xBC, 0xBB,
    0x96, 0x91, 0x98, 0x9F, 0x8A, 0x8D, 0x84, 0x83,
    0xDE, 0xD9, 0xD0, 0xD7, 0xC2, 0xC5, 0xCC, 0xCB,
    0xE6, 0xE1, 0xE8, 0xEF, 0xFA, 0xFD, 0xF4, 0xF3,
]


def crc8(data: bytes | bytearray) -> int:
    """CRC-8 with polynomial 0x07, computed over the given bytes."""
    crc = 0
    for b in data:
        crc = _CRC8_TABLE[crc ^ b]
    return crc


def crc32(data: bytes | bytearray) -> int:
    """Standard CRC-32 (zlib-compatible)."""
    return zlib.crc32(bytes(data)) & 0xFFFFFFFF


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationEvent:
    state: SleepState
    confidence: float
    window_end_time: float | None

    @classmethod
    def from_result(cls, result: ClassificationResult) -> ClassificationEvent:
        return cls(result.state, result.confidence, result.window_end_time)


@dataclass(frozen=True)
class SessionEvent:
    session_id: uuid.UUID
    new_state: NapState
    reason: EndReason | None
    at: float
    scheduled_duration: float = 0.0

    @classmethod
    def from_transition(cls, t: SessionTransition) -> SessionEvent:
        return cls(t.session_id, t.new_state, t.reason, t.at, t.scheduled_duration)

    def to_transition(self) -> SessionTransition:
        return SessionTransition(
            session_id=self.session_id,
            previous=None,
            new_state=self.new_state,
            at=self.at,
            reason=self.reason,
            scheduled_duration=self.scheduled_duration,
        )


@dataclass(frozen=True)
class Heartbeat:
    pass


@dataclass(frozen=True)
class Ack:
    acked_sequence_number: int


Payload = Union[ClassificationEvent, SessionEvent, Heartbeat, Ack]

_KIND_FOR_PAYLOAD = {
    ClassificationEvent: MessageKind.CLASSIFICATION_EVENT,
    SessionEvent: MessageKind.SESSION_EVENT,
    Heartbeat: MessageKind.HEARTBEAT,
    Ack: MessageKind.ACK,
}


def kind_of(payload: Payload) -> MessageKind:
    try:
        return _KIND_FOR_PAYLOAD[type(payload)]
    except KeyError:
        raise TypeError(f"not a message payload: {payload!r}") from None


@dataclass(frozen=True)
class WatchMessage:
    """A decoded frame."""

    sequence_number: int
    kind: MessageKind
    payload: Payload
    sent_at: float
    version: int = PROTOCOL_VERSION

    def __post_init__(self) -> None:
        if not 0 <= self.sequence_number <= MAX_SEQUENCE:
            raise ValueError(f"sequence number out of range: {self.sequence_number}")
        if kind_of(self.payload) is not self.kind:
            raise ValueError(f"payload {type(self.payload).__name__} does not match {self.kind.name}")

    def __repr__(self) -> str:
        return f"WatchMessage(seq={self.sequence_number}, {self.kind.name}, {self.payload!r})"


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _opt_float(value: float | None) -> float:
    return math.nan if value is None else float(value)


def _from_opt_float(value: float) -> float | None:
    return None if math.isnan(value) else value


def encode_payload(payload: Payload) -> bytes:
    if isinstance(payload, ClassificationEvent):
        return _CLASSIFICATION.pack(
            int(payload.state), float(payload.confidence), _opt_float(payload.window_end_time)
        )
    if isinstance(payload, SessionEvent):
        return _SESSION.pack(
            payload.session_id.bytes,
            int(payload.new_state),
            int(payload.reason) if payload.reason is not None else 0,
            float(payload.at),
            float(payload.scheduled_duration),
        )
    if isinstance(payload, Ack):
        return _ACK.pack(payload.acked_sequence_number)
    if isinstance(payload, Heartbeat):
        return b""
    raise TypeError(f"not a message payload: {payload!r}")


def build_frame(inner: bytes) -> bytes:
    """Wrap an inner block with SOF, length, CRC-8 and CRC-32."""
    length = len(inner) + CRC32_SIZE
    length_bytes = struct.pack("<H", length)
    header_crc = crc8(length_bytes)
    payload_crc = struct.pack("<I", crc32(inner))
    return bytes([SOF]) + length_bytes + bytes([header_crc]) + inner + payload_crc


def encode_message(message: WatchMessage) -> bytes:
    """Serialize a :class:`WatchMessage` into a complete frame."""
    inner = _INNER_HEADER.pack(
        message.version, int(message.kind), message.sequence_number, float(message.sent_at)
    ) + encode_payload(message.payload)
    return build_frame(inner)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_payload(kind: MessageKind, data: bytes) -> Payload:
    try:
        if kind is MessageKind.CLASSIFICATION_EVENT:
            state, confidence, end = _CLASSIFICATION.unpack_from(data)
            return ClassificationEvent(SleepState(state), confidence, _from_opt_float(end))
        if kind is MessageKind.SESSION_EVENT:
            sid, state, reason, at, duration = _SESSION.unpack_from(data)
            return SessionEvent(
                uuid.UUID(bytes=sid),
                NapState(state),
                EndReason(reason) if reason else None,
                at,
                duration,
            )
        if kind is MessageKind.ACK:
            return Ack(_ACK.unpack_from(data)[0])
        return Heartbeat()
    except struct.error as e:
        raise WireFormatError(f"{kind.name} payload too short ({len(data)} bytes)") from e
    except ValueError as e:
        raise WireFormatError(f"bad {kind.name} payload: {e}") from e


def decode_inner(inner: bytes) -> WatchMessage:
    """Decode the CRC-checked block between the header and the CRC-32 trailer."""
    if len(inner) < INNER_HEADER_SIZE:
        raise WireFormatError(f"inner block too short ({len(inner)} bytes)")
    version, kind_raw, seq, sent_at = _INNER_HEADER.unpack_from(inner)
    if version < 1:
        raise WireFormatError(f"unsupported protocol version {version}")
    try:
        kind = MessageKind(kind_raw)
    except ValueError:
        raise WireFormatError(f"unknown message kind 0x{kind_raw:02X}") from None
    payload = _decode_payload(kind, inner[INNER_HEADER_SIZE:])
    return WatchMessage(
        sequence_number=seq, kind=kind, payload=payload, sent_at=sent_at, version=version
    )


def _checked_inner(frame: bytes) -> bytes:
    if len(frame) < MIN_FRAME_SIZE:
        raise WireFormatError(f"frame too short ({len(frame)} bytes)")
    if frame[0] != SOF:
        raise WireFormatError(f"bad start-of-frame 0x{frame[0]:02X}")
    length_field = struct.unpack_from("<H", frame, 1)[0]
    if frame[3] != crc8(frame[1:3]):
        raise WireFormatError("header CRC-8 mismatch")
    total = HEADER_SIZE + length_field
    if len(frame) < total:
        raise WireFormatError(f"incomplete frame ({len(frame)}/{total} bytes)")
    inner = frame[HEADER_SIZE:total - CRC32_SIZE]
    stored = struct.unpack_from("<I", frame, total - CRC32_SIZE)[0]
    if stored != crc32(inner):
        raise WireFormatError("payload CRC-32 mismatch")
    return inner


def decode_message(data: bytes | bytearray) -> WatchMessage:
    """Parse one complete frame; raises :class:`WireFormatError` on any defect."""
    return decode_inner(_checked_inner(bytes(data)))


class FrameAssembler:
    """Reassemble frames from an arbitrarily chunked byte stream.

    Garbage and corrupt frames are skipped by resynchronising on the next
    SOF byte, so one damaged notification never wedges the stream.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes | bytearray) -> list[WatchMessage]:
        self._buf += data
        messages: list[WatchMessage] = []

        while True:
            idx = self._buf.find(bytes([SOF]))
            if idx == -1:
                self._buf.clear()
                break
            if idx:
                del self._buf[:idx]
            if len(self._buf) < HEADER_SIZE:
                break

            length_field = struct.unpack_from("<H", self._buf, 1)[0]
            if (
                self._buf[3] != crc8(self._buf[1:3])
                or length_field > MAX_FRAME_LENGTH
                or length_field < INNER_HEADER_SIZE + CRC32_SIZE
            ):
                del self._buf[0]
                continue

            total = HEADER_SIZE + length_field
            if len(self._buf) < total:
                break

            frame = bytes(self._buf[:total])
            try:
                inner = _checked_inner(frame)
            except WireFormatError as e:
                logger.debug("dropping corrupt frame: %s", e)
                self.dropped += 1
                del self._buf[0]
                continue

            del self._buf[:total]
            try:
                messages.append(decode_inner(inner))
            except WireFormatError as e:
                logger.debug("dropping undecodable frame: %s", e)
                self.dropped += 1

        return messages

    def reset(self) -> None:
        self._buf.clear()


# ---------------------------------------------------------------------------
# Human-readable formatting
# ---------------------------------------------------------------------------


def format_message(data: bytes | bytearray) -> str:
    """Format a frame as a human-readable string."""
    try:
        msg = decode_message(data)
    except WireFormatError as e:
        return f"[raw] {bytes(data).hex()} ({e})"

    parts = [f"v{msg.version}", msg.kind.name, f"seq={msg.sequence_number}", f"sent_at={msg.sent_at:.3f}"]
    p = msg.payload
    if isinstance(p, ClassificationEvent):
        end = "-" if p.window_end_time is None else f"{p.window_end_time:.3f}"
        parts.append(f"state={p.state.label} confidence={p.confidence:.3f} window_end={end}")
    elif isinstance(p, SessionEvent):
        reason = p.reason.name if p.reason else "-"
        parts.append(
            f"session={p.session_id} state={p.new_state.name} reason={reason} "
            f"at={p.at:.3f} duration={p.scheduled_duration:.0f}s"
        )
    elif isinstance(p, Ack):
        parts.append(f"acked={p.acked_sequence_number}")
    return " ".join(parts)


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert a hex string (with or without spaces) to bytes."""
    return bytes.fromhex(hex_str.replace(" ", ""))
