# -*- coding: utf-8 -*-
"""# chamberbench

Environmental-chamber test bench controller.

Cycles a temperature chamber between high and low plateaus and, at each plateau,
sweeps a matrix of (input voltage x device-under-test x repeated read) measurements
by switching relays, commanding a programmable power source and sampling a load
analyzer over serial links. Every reading is judged against a tolerance band and
recorded as pass (`G`) or fail (`N`).

Packages:

- `chamberbench.device`: serial instruments (relay bank, power source, load
  analyzer, chamber) and their mocks.
- `chamberbench.meas`: run control, judgment policies, the sweep engine and the
  test-cycle state machines.
- `chamberbench.report`: CSV report generation.
- `chamberbench.server`: control server and client.
- `chamberbench.system`: the bench (instrument group), the broadcast hub and
  settings persistence.
- `chamberbench.cli`: command line interface.
"""

from ._version import __version__
