import pytest

from chamberbench.device.modbus import (
    FUNC_WRITE_SINGLE,
    FUNC_WRITE_SINGLE_ERROR,
    append_crc,
    build_write_register,
    check_crc,
    crc16,
    expected_length,
    parse_reply,
)
from chamberbench.device.relay import RELAY_PAIRS, device_relays, relay_frame
from chamberbench.types import ProtocolError

# (frame body, CRC bytes as sent on the wire)
CRC_VECTORS = [
    ("010600010100", "D99A"),
    ("010600050200", "98AB"),
    ("020600030100", "7869"),
    ("020600050200", "9898"),
    ("010600060100", "685B"),
    ("010600070100", "399B"),
    ("020600080200", "095B"),
]


class TestCRC:
    @pytest.mark.parametrize("body, crc", CRC_VECTORS)
    def test_known_frames(self, body, crc):
        frame = append_crc(bytes.fromhex(body))
        assert frame.hex().upper() == body + crc

    def test_check_crc(self):
        frame = append_crc(bytes.fromhex("010600010100"))
        assert check_crc(frame)
        corrupted = frame[:-1] + bytes([frame[-1] ^ 0xFF])
        assert not check_crc(corrupted)
        assert not check_crc(b"\x01\x06")

    def test_crc_of_empty_body(self):
        assert crc16(b"") == 0xFFFF


class TestFrames:
    def test_build_write_register(self):
        frame = build_write_register(1, 1, 0x0100)
        assert frame.hex().upper() == "010600010100D99A"

    def test_bad_slave(self):
        with pytest.raises(ValueError):
            build_write_register(0, 1, 0x0100)

    def test_relay_frame_on_off(self):
        assert relay_frame(1, 5, False).hex().upper() == "01060005020098AB"
        assert relay_frame(2, 3, True).hex().upper() == "0206000301007869"

    def test_relay_frame_unknown_relay(self):
        with pytest.raises(ValueError):
            relay_frame(3, 1, True)
        with pytest.raises(ValueError):
            relay_frame(1, 9, True)

    def test_sixteen_relay_pairs(self):
        assert len(RELAY_PAIRS) == 16
        assert RELAY_PAIRS[0] == (1, 1)
        assert RELAY_PAIRS[-1] == (2, 8)

    @pytest.mark.parametrize(
        "device_index, relays",
        [
            (0, ((1, 1), (2, 1), (1, 6))),
            (4, ((1, 5), (2, 5), (1, 6))),
            (5, ((1, 1), (2, 1), (1, 7))),
            (9, ((1, 5), (2, 5), (1, 7))),
        ],
    )
    def test_device_relays(self, device_index, relays):
        assert device_relays(device_index) == relays

    def test_device_relays_out_of_range(self):
        with pytest.raises(ValueError):
            device_relays(10)
        with pytest.raises(ValueError):
            device_relays(-1)


class TestParseReply:
    def test_echo(self):
        frame = build_write_register(2, 8, 0x0200)
        reply = parse_reply(frame)
        assert not reply.is_error
        assert reply.slave == 2
        assert reply.function == FUNC_WRITE_SINGLE
        assert reply.register == 8
        assert reply.value == 0x0200

    def test_exception_reply(self):
        frame = append_crc(bytes([1, FUNC_WRITE_SINGLE_ERROR, 0x02]))
        assert len(frame) == expected_length(FUNC_WRITE_SINGLE_ERROR)
        reply = parse_reply(frame)
        assert reply.is_error
        assert reply.exception_code == 0x02
        assert "illegal data address" in reply.describe_error()

    def test_bad_crc(self):
        frame = bytearray(build_write_register(1, 1, 0x0100))
        frame[-1] ^= 0x01
        with pytest.raises(ProtocolError, match="CRC"):
            parse_reply(bytes(frame))

    def test_unknown_function(self):
        frame = append_crc(bytes([1, 0x03, 0x00, 0x01, 0x00, 0x01]))
        with pytest.raises(ProtocolError, match="Unsupported function"):
            parse_reply(frame)

    def test_wrong_length(self):
        frame = build_write_register(1, 1, 0x0100)[:-1]
        with pytest.raises(ProtocolError):
            parse_reply(frame)

    def test_too_short(self):
        with pytest.raises(ProtocolError, match="too short"):
            parse_reply(b"\x01\x06")
