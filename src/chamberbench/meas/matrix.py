"""Measurement grid for one sweep, plus the accumulators built on top of it.

Indexing is `(voltage_index, device_index, read_index, channel_index)`.

- `MeasurementMatrix`: one sweep. Every cell starts unset (shown as `-.-`) and
  is written exactly once, as a reading, an `"error"` or a skip.
- `CycleAccumulator`: per-cell average over the sweeps of one plateau.
- `RunAggregate`: per device/voltage judgment over every sweep of a run.
"""

from __future__ import annotations

import datetime
import math
import types
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from chamberbench.meas.judgment import is_numeric
from chamberbench.types import CELL_ERROR, CELL_SKIPPED, JUDGE, CellAlreadyWrittenError

CELL_STATE = types.SimpleNamespace()
CELL_STATE.UNSET = 0
CELL_STATE.MEASURED = 1
CELL_STATE.ERROR = 2
CELL_STATE.SKIPPED = 3

COMPLETE_THRESHOLD = 95.0  # % of cells written for a table to count as completed


def truncate2(value: float) -> float:
    """Truncate (not round) to 2 decimals."""
    # round first so 220.07 * 100 = 22006.999... truncates to 220.07
    return math.trunc(round(value * 100, 6)) / 100


def format_volts(value: float) -> str:
    return f"{truncate2(value):.2f}V"


@dataclass(frozen=True)
class MeasurementCell:
    voltage: float | str  # reading, or CELL_ERROR
    judgment: str

    def display(self) -> str:
        if is_numeric(self.voltage):
            return f"{format_volts(self.voltage)}|{self.judgment}"
        return f"{self.voltage}|{self.judgment}"


class MeasurementMatrix:
    def __init__(
        self,
        n_voltages: int,
        n_devices: int,
        read_count: int,
        n_channels: int = 1,
        voltages: Optional[Sequence[float]] = None,
    ):
        if min(n_voltages, n_devices, read_count, n_channels) < 1:
            raise ValueError("All matrix dimensions must be >= 1")
        self.shape = (n_voltages, n_devices, read_count, n_channels)
        self.voltages = list(voltages) if voltages is not None else [None] * n_voltages
        self._state = np.full(self.shape, CELL_STATE.UNSET, dtype=np.int8)
        self._values = np.full(self.shape, np.nan, dtype=np.float64)
        self._good = np.zeros(self.shape, dtype=bool)

    # ------------------------------------------------------------------
    # shape

    @property
    def n_voltages(self) -> int:
        return self.shape[0]

    @property
    def n_devices(self) -> int:
        return self.shape[1]

    @property
    def read_count(self) -> int:
        return self.shape[2]

    @property
    def n_channels(self) -> int:
        return self.shape[3]

    @property
    def total_cells(self) -> int:
        return int(self._state.size)

    @property
    def completed_cells(self) -> int:
        return int(np.count_nonzero(self._state != CELL_STATE.UNSET))

    @property
    def completion_percentage(self) -> float:
        return 100.0 * self.completed_cells / self.total_cells

    # ------------------------------------------------------------------
    # masks for the accumulators

    @property
    def values(self) -> np.ndarray:
        """Readings, NaN where no numeric value was recorded."""
        return self._values.copy()

    @property
    def measured_mask(self) -> np.ndarray:
        return self._state == CELL_STATE.MEASURED

    @property
    def judged_mask(self) -> np.ndarray:
        """Cells that carry a judgment (a reading or an error)."""
        return (self._state == CELL_STATE.MEASURED) | (self._state == CELL_STATE.ERROR)

    @property
    def good_mask(self) -> np.ndarray:
        return self._good & self.judged_mask

    # ------------------------------------------------------------------
    # write-once cells

    def _claim(self, idx: tuple[int, int, int, int]):
        if self._state[idx] != CELL_STATE.UNSET:
            raise CellAlreadyWrittenError(f"Cell {idx} already written this sweep")

    def write(
        self,
        voltage_index: int,
        device_index: int,
        read_index: int,
        cell: MeasurementCell,
        channel_index: int = 0,
    ):
        idx = (voltage_index, device_index, read_index, channel_index)
        self._claim(idx)
        if is_numeric(cell.voltage):
            self._state[idx] = CELL_STATE.MEASURED
            self._values[idx] = float(cell.voltage)
        else:
            self._state[idx] = CELL_STATE.ERROR
        self._good[idx] = cell.judgment == JUDGE.GOOD

    def mark_skipped(self, voltage_index: int, device_index: int, read_index: int):
        """Fill every channel of an unselected device with the skip marker."""
        for ch in range(self.n_channels):
            self._claim((voltage_index, device_index, read_index, ch))
        self._state[voltage_index, device_index, read_index, :] = CELL_STATE.SKIPPED

    def is_unset(self, voltage_index, device_index, read_index, channel_index=0) -> bool:
        idx = (voltage_index, device_index, read_index, channel_index)
        return self._state[idx] == CELL_STATE.UNSET

    def cell(
        self, voltage_index, device_index, read_index, channel_index=0
    ) -> Optional[MeasurementCell]:
        """The written cell, or None for unset and skipped cells."""
        idx = (voltage_index, device_index, read_index, channel_index)
        judgment = JUDGE.GOOD if self._good[idx] else JUDGE.NOT_GOOD
        match self._state[idx]:
            case CELL_STATE.MEASURED:
                return MeasurementCell(float(self._values[idx]), judgment)
            case CELL_STATE.ERROR:
                return MeasurementCell(CELL_ERROR, judgment)
            case _:
                return None

    def display(self, voltage_index, device_index, read_index, channel_index=0) -> str:
        """Report form: `221.00V|G`, `error|N` or `-.-`."""
        cell = self.cell(voltage_index, device_index, read_index, channel_index)
        return CELL_SKIPPED if cell is None else cell.display()

    def table_value(self, voltage_index, device_index, read_index, channel_index=0) -> str:
        """Live-table form: `221.00V`, `error` or `-.-`."""
        cell = self.cell(voltage_index, device_index, read_index, channel_index)
        if cell is None:
            return CELL_SKIPPED
        if is_numeric(cell.voltage):
            return format_volts(cell.voltage)
        return CELL_ERROR

    def device_judgment(self, voltage_index: int, device_index: int) -> str:
        """G iff every judged cell of the device at this voltage is G."""
        judged = self.judged_mask[voltage_index, device_index]
        if not judged.any():
            return CELL_SKIPPED
        good = self.good_mask[voltage_index, device_index]
        return JUDGE.GOOD if np.array_equal(judged, good) else JUDGE.NOT_GOOD

    def count_judgments(self) -> tuple[int, int]:
        """(good, not good) over the whole sweep."""
        judged = int(np.count_nonzero(self.judged_mask))
        good = int(np.count_nonzero(self.good_mask))
        return good, judged - good

    def table_payload(self, voltage_index: int) -> dict:
        pct = self.completion_percentage
        good, bad = self.count_judgments()
        return {
            "timestamp": datetime.datetime.now().isoformat(timespec="seconds"),
            "voltage_index": voltage_index,
            "output_voltage": self.voltages[voltage_index],
            "total_devices": self.n_devices,
            "total_tests": self.read_count,
            "total_channels": self.n_channels,
            "completion_percentage": round(pct, 1),
            "completed_cells": self.completed_cells,
            "total_cells": self.total_cells,
            "table_data": [
                [
                    [
                        self.table_value(voltage_index, d, r, c)
                        for c in range(self.n_channels)
                    ]
                    for r in range(self.read_count)
                ]
                for d in range(self.n_devices)
            ],
            "summary": {
                "status": "completed" if pct >= COMPLETE_THRESHOLD else "in_progress",
                "good": good,
                "not_good": bad,
            },
        }


class CycleAccumulator:
    """Running per-cell average over the sweeps of one plateau.

    A cell's judgment is G when at least half of the sweeps that judged it
    said G.
    """

    def __init__(self, shape: tuple[int, int, int, int]):
        self.shape = tuple(shape)
        self.n_sweeps = 0
        self._sum = np.zeros(self.shape, dtype=np.float64)
        self._n_numeric = np.zeros(self.shape, dtype=np.int64)
        self._n_judged = np.zeros(self.shape, dtype=np.int64)
        self._n_good = np.zeros(self.shape, dtype=np.int64)

    def add(self, matrix: MeasurementMatrix):
        if matrix.shape != self.shape:
            raise ValueError(f"Matrix shape {matrix.shape} != accumulator {self.shape}")
        measured = matrix.measured_mask
        self._sum += np.where(measured, matrix.values, 0.0)
        self._n_numeric += measured
        self._n_judged += matrix.judged_mask
        self._n_good += matrix.good_mask
        self.n_sweeps += 1

    def average(self, idx: tuple[int, int, int, int]) -> Optional[float]:
        n = self._n_numeric[idx]
        if not n:
            return None
        return round(float(self._sum[idx] / n), 2)

    def judgment(self, idx: tuple[int, int, int, int]) -> str:
        n = self._n_judged[idx]
        if not n:
            return CELL_SKIPPED
        return JUDGE.GOOD if 2 * self._n_good[idx] >= n else JUDGE.NOT_GOOD

    def display(self, idx: tuple[int, int, int, int]) -> str:
        judgment = self.judgment(idx)
        if judgment == CELL_SKIPPED:
            return CELL_SKIPPED
        avg = self.average(idx)
        if avg is None:
            return f"{CELL_ERROR}|{judgment}"
        return f"{avg:.2f}V|{judgment}"


class RunAggregate:
    """Judgment per (voltage, device) across all sweeps of a run."""

    def __init__(self, n_voltages: int, device_selection: Sequence[bool]):
        self.device_selection = list(device_selection)
        shape = (n_voltages, len(self.device_selection))
        self._n_judged = np.zeros(shape, dtype=np.int64)
        self._n_good = np.zeros(shape, dtype=np.int64)
        self.n_sweeps = 0

    @property
    def n_voltages(self) -> int:
        return self._n_judged.shape[0]

    @property
    def n_devices(self) -> int:
        return self._n_judged.shape[1]

    def add(self, matrix: MeasurementMatrix):
        if matrix.shape[:2] != self._n_judged.shape:
            raise ValueError(
                f"Matrix shape {matrix.shape[:2]} != aggregate {self._n_judged.shape}"
            )
        self._n_judged += matrix.judged_mask.sum(axis=(2, 3))
        self._n_good += matrix.good_mask.sum(axis=(2, 3))
        self.n_sweeps += 1

    def voltage_judgment(self, voltage_index: int, device_index: int) -> str:
        n = self._n_judged[voltage_index, device_index]
        if not n:
            return CELL_SKIPPED
        good = self._n_good[voltage_index, device_index]
        return JUDGE.GOOD if good == n else JUDGE.NOT_GOOD

    def device_judgment(self, device_index: int) -> str:
        """G only if every tested voltage of the device is G."""
        if not self.device_selection[device_index]:
            return CELL_SKIPPED
        judgments = [
            self.voltage_judgment(v, device_index) for v in range(self.n_voltages)
        ]
        tested = [j for j in judgments if j != CELL_SKIPPED]
        if not tested:
            return CELL_SKIPPED
        return JUDGE.GOOD if all(j == JUDGE.GOOD for j in tested) else JUDGE.NOT_GOOD

    def device_totals(self, device_index: int) -> tuple[int, int, int]:
        """(total, passed, failed) judged cells of one device."""
        total = int(self._n_judged[:, device_index].sum())
        passed = int(self._n_good[:, device_index].sum())
        return total, passed, total - passed

    def totals(self) -> tuple[int, int, int]:
        total = int(self._n_judged.sum())
        passed = int(self._n_good.sum())
        return total, passed, total - passed

    def summary(self) -> dict:
        judgments = [self.device_judgment(d) for d in range(self.n_devices)]
        selected = sum(1 for s in self.device_selection if s)
        good = judgments.count(JUDGE.GOOD)
        not_good = judgments.count(JUDGE.NOT_GOOD)
        judged = good + not_good
        return {
            "total_devices": self.n_devices,
            "selected": selected,
            "not_selected": self.n_devices - selected,
            "good": good,
            "not_good": not_good,
            "pass_rate": 100.0 * good / judged if judged else 0.0,
        }
