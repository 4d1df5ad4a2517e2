"""
Tests for MAVLink v1 frame encoding

Checksums are recomputed with an independent implementation of the X.25
algorithm and frames are decoded with pymavlink's MAVLink 1.0 parser.
"""

import struct

import pytest
from pymavlink.dialects.v10 import ardupilotmega as mavlink1

from rclink.services.mavlink_frames import (
    HEARTBEAT_FRAME_LEN,
    RC_OVERRIDE_FRAME_LEN,
    contains_heartbeat,
    encode_heartbeat,
    encode_rc_override,
)


def reference_crc(data: bytes, crc_extra: int) -> int:
    """Byte-by-byte CRC-16/MCRF4XX as described by the MAVLink v1 docs"""
    crc = 0xFFFF
    for byte in bytes(data) + bytes([crc_extra]):
        tmp = byte ^ (crc & 0xFF)
        tmp ^= (tmp << 4) & 0xFF
        crc = ((crc >> 8) ^ (tmp << 8) ^ (tmp << 3) ^ (tmp >> 4)) & 0xFFFF
    return crc


def decode_v1(frame: bytes):
    """Decode a single frame with pymavlink (raises on a bad checksum)"""
    mav = mavlink1.MAVLink(None)
    messages = mav.parse_buffer(bytearray(frame))
    assert messages, "pymavlink did not decode the frame"
    assert len(messages) == 1
    return messages[0]


class TestHeartbeatEncoding:
    """HEARTBEAT frame layout"""

    def test_sequence_zero_fixture(self):
        """Header and payload of the seq=0 heartbeat are pinned byte for byte"""
        frame = encode_heartbeat(0)

        assert len(frame) == HEARTBEAT_FRAME_LEN == 17
        assert frame[:6] == bytes([0xFE, 0x09, 0x00, 0xFF, 0x00, 0x00])
        assert frame[6:15] == bytes([0x00, 0x00, 0x00, 0x00, 0x06, 0x08, 0x00, 0x04, 0x03])

        expected_crc = reference_crc(frame[1:15], 50)
        assert frame[15:] == struct.pack("<H", expected_crc)

    def test_sequence_is_written_to_header(self):
        """Sequence byte follows the argument and wraps at 256"""
        assert encode_heartbeat(42)[2] == 42
        assert encode_heartbeat(255)[2] == 255
        assert encode_heartbeat(256)[2] == 0

    def test_encoding_is_stateless(self):
        """Encoders keep no sequence state of their own"""
        assert encode_heartbeat(17) == encode_heartbeat(17)
        assert encode_heartbeat(17)[2] == 17

    def test_decodes_as_gcs_heartbeat(self):
        """pymavlink accepts the checksum and sees a GCS heartbeat"""
        msg = decode_v1(encode_heartbeat(9))

        assert msg.get_type() == "HEARTBEAT"
        assert msg.get_srcSystem() == 255
        assert msg.get_srcComponent() == 0
        assert msg.get_seq() == 9
        assert msg.type == 6
        assert msg.autopilot == 8
        assert msg.system_status == 4
        assert msg.mavlink_version == 3


class TestRcOverrideEncoding:
    """RC_CHANNELS_OVERRIDE frame layout"""

    @pytest.mark.parametrize(
        "seq,channels",
        [
            (0, [1500, 0, 1500, 0, 0, 0, 0, 0]),
            (128, [1000, 2000, 1000, 2000, 1234, 0, 65535, 1]),
            (255, [0] * 8),
        ],
    )
    def test_checksum_recomputes(self, seq, channels):
        """Trailing checksum equals the CRC over bytes 1-23 plus CRC_EXTRA 124"""
        frame = encode_rc_override(seq, channels, 1, 1)

        assert len(frame) == RC_OVERRIDE_FRAME_LEN == 26
        assert frame[0] == 0xFE
        assert frame[1] == 18
        assert frame[2] == seq
        assert frame[5] == 70
        assert struct.unpack("<H", frame[24:26])[0] == reference_crc(frame[1:24], 124)

    def test_payload_layout(self):
        """Eight little-endian channels followed by the target ids"""
        channels = [1100, 1200, 1300, 1400, 1500, 1600, 1700, 1800]
        frame = encode_rc_override(3, channels, target_system=7, target_component=9)

        assert list(struct.unpack("<8H", frame[6:22])) == channels
        assert frame[22] == 7
        assert frame[23] == 9
        assert frame[3:5] == bytes([255, 0])

    def test_decodes_with_pymavlink(self):
        """pymavlink's v1 parser validates the frame and reads the channels"""
        msg = decode_v1(encode_rc_override(200, [1500, 0, 1750, 0, 0, 0, 0, 0], 1, 1))

        assert msg.get_type() == "RC_CHANNELS_OVERRIDE"
        assert msg.get_seq() == 200
        assert msg.chan1_raw == 1500
        assert msg.chan2_raw == 0
        assert msg.chan3_raw == 1750
        assert msg.target_system == 1
        assert msg.target_component == 1


class TestChecksum:
    """Checksum folds in the per-message CRC_EXTRA"""

    def test_heartbeat_uses_its_crc_extra(self):
        frame = encode_heartbeat(0)
        trailer = struct.unpack("<H", frame[15:])[0]

        assert trailer == reference_crc(frame[1:15], 50)
        assert trailer != reference_crc(frame[1:15], 124)

    def test_override_uses_its_crc_extra(self):
        frame = encode_rc_override(0, [1500] * 8)
        trailer = struct.unpack("<H", frame[24:])[0]

        assert trailer == reference_crc(frame[1:24], 124)
        assert trailer != reference_crc(frame[1:24], 50)

    def test_wrong_channel_count_rejected(self):
        with pytest.raises(ValueError, match="8 channel values"):
            encode_rc_override(0, [1500] * 4)


class TestHeartbeatDetection:
    """Inbound heartbeat signature scan"""

    def test_detects_heartbeat_frame(self):
        assert contains_heartbeat(encode_heartbeat(0)) is True

    def test_detects_heartbeat_after_other_bytes(self):
        data = b"\x00\x13\x37" + encode_rc_override(1, [0] * 8) + encode_heartbeat(5)
        assert contains_heartbeat(data) is True

    def test_ignores_override_frame(self):
        assert contains_heartbeat(encode_rc_override(1, [1500] * 8)) is False

    def test_short_buffers(self):
        """Fewer than six bytes can never match"""
        assert contains_heartbeat(b"") is False
        assert contains_heartbeat(bytes([0xFE, 0, 0, 0, 0])) is False
        assert contains_heartbeat(bytes([0xFE, 9, 1, 1, 1, 0])) is True
