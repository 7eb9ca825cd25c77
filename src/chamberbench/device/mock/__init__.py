from .mock_instruments import MockChamber, MockLoadAnalyzer, MockPowerSource, MockRelayBank
from .mock_serial import (
    MockSerial,
    MockSerialFactory,
    chamber_responder,
    load_responder,
    relay_echo_responder,
)

__all__ = [
    "MockChamber",
    "MockLoadAnalyzer",
    "MockPowerSource",
    "MockRelayBank",
    "MockSerial",
    "MockSerialFactory",
    "chamber_responder",
    "load_responder",
    "relay_echo_responder",
]
