import os

import pytest

from chamberbench.system import load_port_mapping
from chamberbench.util import SETTINGS_DIR
from chamberbench.util.check_hw import resolve_port


@pytest.fixture(scope="session")
def port_mapping():
    """Port mapping of the bench under test, skipping when it is not attached."""
    ports = load_port_mapping(os.environ.get("CHAMBERBENCH_SETTINGS", SETTINGS_DIR))
    missing = [
        name
        for name in ("chamber", "power", "load", "relay")
        if not os.path.exists(resolve_port(getattr(ports, name)))
    ]
    if missing:
        pytest.skip(f"Bench not attached, missing ports for: {', '.join(missing)}")
    return ports
