"""
Binary wire format shared with the handheld sensor app.

Inbound (device -> host) datagrams are big-endian:
- u32 message type tag
- for Rotation/Gyro/Accelerometer: u64 sequence id, then 4 or 3 f32 values

Outbound (host -> device) frames use the host's native byte order:
- handshake ack: b" Hey OVR =D 5" with byte 0 set to 3
- heartbeat:     i32 tag=1, i32 reserved=0
- haptic signal: i32 tag=2, f32 duration, f32 frequency, f32 amplitude
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from .errors import ProtocolError
from .geo import Quaternion, Vector3


class MessageType(IntEnum):
    """Inbound message tags. Values are fixed by the device firmware."""
    HEARTBEAT = 0
    ROTATION = 1
    GYRO = 2
    HANDSHAKE = 3
    ACCELEROMETER = 4


HEADER = struct.Struct(">I")
SEQUENCE_ID = struct.Struct(">Q")
ROTATION_PAYLOAD = struct.Struct(">4f")
VECTOR_PAYLOAD = struct.Struct(">3f")

HANDSHAKE_GREETING = b" Hey OVR =D 5"

HOST_TAG_HEARTBEAT = 1
HOST_TAG_SIGNAL = 2
HOST_HEARTBEAT = struct.Struct("=ii")
HOST_SIGNAL = struct.Struct("=ifff")

PAYLOAD_TYPES = (MessageType.ROTATION, MessageType.GYRO, MessageType.ACCELEROMETER)


@dataclass(frozen=True)
class DevicePacket:
    """Decoded inbound datagram."""
    message_type: Union[MessageType, int]
    sequence_id: Optional[int] = None
    value: Union[Quaternion, Vector3, None] = None

    @property
    def has_payload(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class HostFrame:
    """Decoded outbound frame, as the device would see it."""
    kind: str  # "handshake_ack" | "heartbeat" | "signal"
    duration: float = 0.0
    frequency: float = 0.0
    amplitude: float = 0.0


def minimum_size(message_type: int) -> int:
    """Smallest datagram that can carry `message_type`."""
    if message_type == MessageType.ROTATION:
        return HEADER.size + SEQUENCE_ID.size + ROTATION_PAYLOAD.size
    if message_type in (MessageType.GYRO, MessageType.ACCELEROMETER):
        return HEADER.size + SEQUENCE_ID.size + VECTOR_PAYLOAD.size
    return HEADER.size


class WireCodec:
    """
    Stateless encoder/decoder for the device protocol.

    Usage:
        packet = WireCodec.decode(datagram)
        if packet.message_type == MessageType.ROTATION:
            orientation = packet.value
    """

    @staticmethod
    def read_message_type(data: bytes) -> Union[MessageType, int]:
        """
        Read the leading message type tag.

        Unknown tags are returned as plain ints.

        Raises:
            ProtocolError: If the datagram is shorter than the header
        """
        if len(data) < HEADER.size:
            raise ProtocolError(f"datagram too small for header: {len(data)} bytes")
        (tag,) = HEADER.unpack_from(data, 0)
        try:
            return MessageType(tag)
        except ValueError:
            return tag

    @staticmethod
    def decode(data: bytes) -> DevicePacket:
        """
        Decode a full inbound datagram.

        Args:
            data: Raw datagram bytes

        Returns:
            DevicePacket; heartbeat, handshake and unknown tags carry no payload

        Raises:
            ProtocolError: If the datagram is shorter than its type requires
        """
        message_type = WireCodec.read_message_type(data)
        if message_type not in PAYLOAD_TYPES:
            return DevicePacket(message_type=message_type)

        required = minimum_size(message_type)
        if len(data) < required:
            raise ProtocolError(
                f"{MessageType(message_type).name.lower()} datagram too small: "
                f"{len(data)} < {required} bytes"
            )

        offset = HEADER.size
        (sequence_id,) = SEQUENCE_ID.unpack_from(data, offset)
        offset += SEQUENCE_ID.size

        value: Union[Quaternion, Vector3]
        if message_type == MessageType.ROTATION:
            value = Quaternion(*ROTATION_PAYLOAD.unpack_from(data, offset))
        else:
            value = Vector3(*VECTOR_PAYLOAD.unpack_from(data, offset))

        return DevicePacket(message_type=message_type, sequence_id=sequence_id, value=value)

    # Inbound encoders (device side; used by the simulated device)

    @staticmethod
    def encode_rotation(sequence_id: int, rotation: Quaternion) -> bytes:
        return (
            HEADER.pack(MessageType.ROTATION)
            + SEQUENCE_ID.pack(sequence_id)
            + ROTATION_PAYLOAD.pack(rotation.x, rotation.y, rotation.z, rotation.w)
        )

    @staticmethod
    def encode_vector(message_type: MessageType, sequence_id: int, vector: Vector3) -> bytes:
        if message_type not in (MessageType.GYRO, MessageType.ACCELEROMETER):
            raise ValueError(f"not a vector message type: {message_type!r}")
        return (
            HEADER.pack(message_type)
            + SEQUENCE_ID.pack(sequence_id)
            + VECTOR_PAYLOAD.pack(vector.x, vector.y, vector.z)
        )

    @staticmethod
    def encode_gyro(sequence_id: int, angular_velocity: Vector3) -> bytes:
        return WireCodec.encode_vector(MessageType.GYRO, sequence_id, angular_velocity)

    @staticmethod
    def encode_accelerometer(sequence_id: int, acceleration: Vector3) -> bytes:
        return WireCodec.encode_vector(MessageType.ACCELEROMETER, sequence_id, acceleration)

    @staticmethod
    def encode_device_heartbeat() -> bytes:
        return HEADER.pack(MessageType.HEARTBEAT)

    @staticmethod
    def encode_handshake() -> bytes:
        return HEADER.pack(MessageType.HANDSHAKE)

    # Outbound encoders (host side)

    @staticmethod
    def encode_handshake_ack() -> bytes:
        reply = bytearray(HANDSHAKE_GREETING)
        reply[0] = MessageType.HANDSHAKE
        return bytes(reply)

    @staticmethod
    def encode_heartbeat() -> bytes:
        return HOST_HEARTBEAT.pack(HOST_TAG_HEARTBEAT, 0)

    @staticmethod
    def encode_signal(duration: float, frequency: float, amplitude: float) -> bytes:
        return HOST_SIGNAL.pack(HOST_TAG_SIGNAL, float(duration), float(frequency), float(amplitude))

    @staticmethod
    def decode_host_frame(data: bytes) -> HostFrame:
        """
        Decode a host -> device frame.

        Raises:
            ProtocolError: If the frame matches none of the outbound layouts
        """
        if data == WireCodec.encode_handshake_ack():
            return HostFrame(kind="handshake_ack")
        if len(data) == HOST_HEARTBEAT.size:
            tag, _reserved = HOST_HEARTBEAT.unpack(data)
            if tag == HOST_TAG_HEARTBEAT:
                return HostFrame(kind="heartbeat")
        if len(data) == HOST_SIGNAL.size:
            tag, duration, frequency, amplitude = HOST_SIGNAL.unpack(data)
            if tag == HOST_TAG_SIGNAL:
                return HostFrame(
                    kind="signal",
                    duration=duration,
                    frequency=frequency,
                    amplitude=amplitude,
                )
        raise ProtocolError(f"unrecognized host frame ({len(data)} bytes)")
