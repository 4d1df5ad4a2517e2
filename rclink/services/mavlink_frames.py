"""
MAVLink v1 frame encoding for the RC override link.

Only the two messages the link ever emits are supported:

- HEARTBEAT (id 0) identifying us as a ground control station
- RC_CHANNELS_OVERRIDE (id 70) carrying the eight RC channel values

Frames are packed by pymavlink's MAVLink 1.0 dialect. The sequence number
belongs to the link session, so each call packs with a fresh sender whose
``seq`` is set to the session's value.
"""

from typing import Sequence

from pymavlink.dialects.v10 import ardupilotmega as mavlink1

MAVLINK_STX_V1 = 0xFE

# GCS identity (sysid 255 is the standard ground station id)
SOURCE_SYSTEM = 255
SOURCE_COMPONENT = 0  # MAV_COMP_ID_ALL

MSG_ID_HEARTBEAT = mavlink1.MAVLINK_MSG_ID_HEARTBEAT
MSG_ID_RC_CHANNELS_OVERRIDE = mavlink1.MAVLINK_MSG_ID_RC_CHANNELS_OVERRIDE

RC_CHANNEL_COUNT = 8

# 6-byte header + payload + 2-byte checksum
HEARTBEAT_FRAME_LEN = 17
RC_OVERRIDE_FRAME_LEN = 26


def _sender(seq: int) -> mavlink1.MAVLink:
    mav = mavlink1.MAVLink(None, srcSystem=SOURCE_SYSTEM, srcComponent=SOURCE_COMPONENT)
    mav.seq = seq & 0xFF
    return mav


def encode_heartbeat(seq: int) -> bytes:
    """Build a GCS HEARTBEAT frame (17 bytes)."""
    mav = _sender(seq)
    msg = mav.heartbeat_encode(
        type=mavlink1.MAV_TYPE_GCS,
        autopilot=mavlink1.MAV_AUTOPILOT_INVALID,
        base_mode=0,
        custom_mode=0,
        system_status=mavlink1.MAV_STATE_ACTIVE,
    )
    return bytes(msg.pack(mav))


def encode_rc_override(
    seq: int,
    channels: Sequence[int],
    target_system: int = 1,
    target_component: int = 1,
) -> bytes:
    """
    Build an RC_CHANNELS_OVERRIDE frame (26 bytes).

    Args:
        seq: Link sequence number (wrapped to 0-255).
        channels: Eight microsecond values, slot 0 first. 0 releases the channel.
        target_system: System id of the vehicle.
        target_component: Component id of the autopilot.
    """
    if len(channels) != RC_CHANNEL_COUNT:
        raise ValueError(f"Expected {RC_CHANNEL_COUNT} channel values, got {len(channels)}")
    mav = _sender(seq)
    msg = mav.rc_channels_override_encode(target_system, target_component, *channels)
    return bytes(msg.pack(mav))


def contains_heartbeat(data: bytes) -> bool:
    """
    Check inbound bytes for something that looks like a v1 HEARTBEAT.

    This is a signature scan (start marker with message id 0 five bytes later),
    not a parser: it is only used to log that the vehicle side is alive.
    """
    for i in range(len(data) - 5):
        if data[i] == MAVLINK_STX_V1 and data[i + 5] == MSG_ID_HEARTBEAT:
            return True
    return False
