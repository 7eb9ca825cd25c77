"""Tests for client-server correspondence validation"""

import chamberbench.server.server  # noqa: F401  (registers the handlers)
from chamberbench.types import (
    CONSTS,
    HANDLER_REGISTRY,
    assert_valid_handler_client_correspondence,
    validate_handler_client_correspondence,
)


def test_handler_client_correspondence():
    """Test that all handlers and client methods correspond correctly"""
    assert_valid_handler_client_correspondence()


def test_no_validation_errors():
    assert validate_handler_client_correspondence() == []


def test_power_switch_has_both_client_methods():
    info = HANDLER_REGISTRY[CONSTS.BENCH.POWER_SWITCH]
    assert sorted(info.client_methods) == ["power_off", "power_on"]
