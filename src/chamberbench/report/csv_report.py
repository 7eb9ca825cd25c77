"""CSV reports written into the run directory `Data/YYYYMMDD_HHMM`.

- per sweep: `{ts}_Cycle{n}_{phase}_Test{k}.csv`
- per plateau: `{ts}_Cycle{n}_{phase}_Average.csv`
- final: `{ts}_Final_Device_Report.csv`
- interrupted run: `interrupted_{reason}_{ts}.csv`

A failed write is logged and reported as None; it never changes the outcome of
the run.
"""

from __future__ import annotations

import csv
import datetime
import functools
import pathlib
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence

from loguru import logger

from chamberbench.types import (
    CELL_SKIPPED,
    JUDGE,
    STOP_REASON,
    StopPoint,
    TestConfiguration,
)
from chamberbench.util.defaults import DATA_DIR

if TYPE_CHECKING:
    from chamberbench.meas.judgment import JudgmentPolicy
    from chamberbench.meas.matrix import CycleAccumulator, MeasurementMatrix, RunAggregate

RUN_DIR_FORMAT = "%Y%m%d_%H%M"
FILE_TS_FORMAT = "%y%m%d_%H%M"

# reason -> (category, description, action required)
STOP_ANALYSIS = {
    STOP_REASON.USER_STOP: (
        "User stop",
        "The operator stopped the test",
        "Restart the test when ready",
    ),
    STOP_REASON.POWER_SWITCH_OFF: (
        "Power switch",
        "The machine was switched off during the test",
        "Switch the machine on and restart the test",
    ),
    STOP_REASON.CHAMBER_READ_FAILED: (
        "Chamber",
        "The chamber temperature could not be read",
        "Check the chamber serial connection",
    ),
    STOP_REASON.SYSTEM_FAILURE: (
        "System failure",
        "Unexpected error in the test process",
        "Check the server log",
    ),
    STOP_REASON.ERROR: (
        "Instrument",
        "An instrument operation failed after all retries",
        "Check the power source, load and relay connections",
    ),
    STOP_REASON.NO_TESTS_ENABLED: (
        "Configuration",
        "Neither high nor low temperature testing is enabled",
        "Enable at least one temperature test",
    ),
}


def pass_rate(passed: int, total: int) -> str:
    if not total:
        return "0.0%"
    return f"{100.0 * passed / total:.1f}%"


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _never_raises(fn: Callable[..., Optional[pathlib.Path]]):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> Optional[pathlib.Path]:
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Failed to write report ({}).", fn.__name__)
            return None

    return wrapper


def _write_rows(path: pathlib.Path, rows: Iterable[Sequence[Any]]) -> pathlib.Path:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerows(rows)
    logger.info("Report written: {}", path)
    return path


def _volts_label(volts: float) -> str:
    return f"{volts:g}V"


class ReportWriter:
    """Writes every CSV artifact of one run.

    Parameters
    ----------
    config : TestConfiguration
        Settings snapshot of the run (headers and product names).
    data_root : str | pathlib.Path
        Parent of the per-run directories.
    clock : Callable[[], datetime.datetime]
        Time source, for deterministic file names in tests.
    """

    def __init__(
        self,
        config: TestConfiguration,
        data_root: str | pathlib.Path = DATA_DIR,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.config = config
        self.data_root = pathlib.Path(data_root)
        self.clock = clock
        self.directory: Optional[pathlib.Path] = None
        self.written: list[pathlib.Path] = []

    def create_run_directory(self) -> pathlib.Path:
        self.directory = self.data_root / self.clock().strftime(RUN_DIR_FORMAT)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.info("Run directory: {}", self.directory)
        return self.directory

    def _path(self, filename: str) -> pathlib.Path:
        if self.directory is None:
            self.create_run_directory()
        return self.directory / filename

    def _ts(self) -> str:
        return self.clock().strftime(FILE_TS_FORMAT)

    def _record(self, path: pathlib.Path) -> pathlib.Path:
        self.written.append(path)
        return path

    def existing_reports(self) -> list[str]:
        if self.directory is None or not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.glob("*.csv"))

    # ------------------------------------------------------------------
    # shared blocks

    def _header_rows(self) -> list[list[Any]]:
        now = self.clock()
        rows = [
            ["Date", now.strftime("%Y-%m-%d")],
            ["Time", now.strftime("%H:%M:%S")],
            ["Model", self.config.product_info.model_name],
        ]
        for ch in range(self.config.n_channels):
            rows.append([f"Expected CH{ch + 1}", f"{self.config.expected_voltage(ch):g}"])
        return rows

    def _column_titles(self, read_count: int) -> list[str]:
        titles = []
        for r in range(read_count):
            for ch in range(self.config.n_channels):
                titles.append(
                    f"Read {r + 1}"
                    if self.config.n_channels == 1
                    else f"Read {r + 1} CH{ch + 1}"
                )
        return titles

    def _matrix_rows(self, matrix: MeasurementMatrix) -> list[list[Any]]:
        rows = [
            ["Voltage", "Device", "Product"]
            + self._column_titles(matrix.read_count)
            + ["Judgment"]
        ]
        for v in range(matrix.n_voltages):
            for d in range(matrix.n_devices):
                cells = [
                    matrix.display(v, d, r, ch)
                    for r in range(matrix.read_count)
                    for ch in range(matrix.n_channels)
                ]
                rows.append(
                    [
                        _volts_label(self.config.output_voltages[v]),
                        d + 1,
                        self.config.product_info.product_name(d),
                    ]
                    + cells
                    + [matrix.device_judgment(v, d)]
                )
        return rows

    # ------------------------------------------------------------------
    # reports

    @_never_raises
    def write_sweep_report(
        self,
        matrix: MeasurementMatrix,
        policy: JudgmentPolicy,
        cycle_index: int,
        phase_label: str,
        test_index: int,
        temperature: Optional[float] = None,
    ) -> Optional[pathlib.Path]:
        """One sweep (cycle and test indices are 1-based)."""
        path = self._path(f"{self._ts()}_Cycle{cycle_index}_{phase_label}_Test{test_index}.csv")
        good, bad = matrix.count_judgments()
        rows = self._header_rows()
        rows += [
            ["Chamber Temperature", "N/A" if temperature is None else f"{temperature:.2f}"],
            ["Judgment", policy.describe()],
            ["Cycle", cycle_index],
            ["Phase", phase_label],
            ["Test", test_index],
            [],
        ]
        rows += self._matrix_rows(matrix)
        rows += [
            [],
            ["Summary"],
            ["Good", good],
            ["Not Good", bad],
            ["Pass Rate", pass_rate(good, good + bad)],
        ]
        return self._record(_write_rows(path, rows))

    @_never_raises
    def write_cycle_report(
        self, accumulator: CycleAccumulator, cycle_index: int, phase_label: str
    ) -> Optional[pathlib.Path]:
        """Per-cell averages over the sweeps of one plateau."""
        path = self._path(f"{self._ts()}_Cycle{cycle_index}_{phase_label}_Average.csv")
        n_voltages, n_devices, read_count, n_channels = accumulator.shape
        rows = self._header_rows()
        rows += [
            ["Cycle", cycle_index],
            ["Phase", phase_label],
            ["Sweeps", accumulator.n_sweeps],
            [],
            ["Voltage", "Device", "Product"] + self._column_titles(read_count),
        ]
        for v in range(n_voltages):
            for d in range(n_devices):
                cells = [
                    accumulator.display((v, d, r, ch))
                    for r in range(read_count)
                    for ch in range(n_channels)
                ]
                rows.append(
                    [
                        _volts_label(self.config.output_voltages[v]),
                        d + 1,
                        self.config.product_info.product_name(d),
                    ]
                    + cells
                )
        return self._record(_write_rows(path, rows))

    @_never_raises
    def write_final_report(
        self, aggregate: RunAggregate, test_type: str, cycles_run: int
    ) -> Optional[pathlib.Path]:
        """Per device/voltage conclusion across every sweep of the run."""
        cfg = self.config
        now = self.clock()
        path = self._path(f"{self._ts()}_Final_Device_Report.csv")
        temps = []
        if cfg.high_temp.enabled:
            temps.append(f"High {cfg.high_temp.target_temp:g}C")
        if cfg.low_temp.enabled:
            temps.append(f"Low {cfg.low_temp.target_temp:g}C")

        rows: list[list[Any]] = [
            ["Document No.", self._ts()],
            ["Product Name", cfg.product_info.model_name],
            ["Product Number", ";".join(cfg.product_info.product_names)],
            ["Test Date", now.strftime("%Y-%m-%d")],
            ["Test Time", now.strftime("%H:%M:%S")],
            ["Test Temperature", " / ".join(temps) or "N/A"],
            ["Total Cycles", cycles_run],
            ["Test Type", test_type],
            ["Generated Date", now.isoformat(timespec="seconds")],
            ["Source Directory", str(self.directory)],
            [],
            ["INPUT", "Product Number"]
            + [ordinal(d + 1) for d in range(aggregate.n_devices)]
            + ["A.Q.L"],
        ]
        for v in range(aggregate.n_voltages):
            judgments = [aggregate.voltage_judgment(v, d) for d in range(aggregate.n_devices)]
            tested = [j for j in judgments if j != CELL_SKIPPED]
            aql = CELL_SKIPPED
            if tested:
                aql = JUDGE.GOOD if all(j == JUDGE.GOOD for j in tested) else JUDGE.NOT_GOOD
            rows.append(
                [_volts_label(cfg.output_voltages[v]), cfg.product_info.model_name]
                + judgments
                + [aql]
            )

        total, passed, failed = aggregate.totals()
        rows += [
            [],
            ["Test Results Summary"],
            ["Total Tests", total],
            ["Passed", passed],
            ["Failed", failed],
            ["Pass Rate", pass_rate(passed, total)],
            [],
            ["Device Details"],
            ["Device", "Conclusion", "Total", "Passed", "Failed", "Pass Rate", "Selected"],
        ]
        for d in range(aggregate.n_devices):
            d_total, d_passed, d_failed = aggregate.device_totals(d)
            rows.append(
                [
                    cfg.product_info.product_name(d),
                    aggregate.device_judgment(d),
                    d_total,
                    d_passed,
                    d_failed,
                    pass_rate(d_passed, d_total),
                    "Yes" if aggregate.device_selection[d] else "No",
                ]
            )
        summary = aggregate.summary()
        rows += [
            [],
            ["Summary"],
            ["Total Devices", summary["total_devices"]],
            ["Selected", summary["selected"]],
            ["Not Selected", summary["not_selected"]],
            ["Good", summary["good"]],
            ["Not Good", summary["not_good"]],
            ["Pass Rate", f"{summary['pass_rate']:.1f}%"],
        ]
        return self._record(_write_rows(path, rows))

    @_never_raises
    def write_interrupted_report(
        self,
        reason: str,
        stopped_at: Optional[StopPoint],
        error: str = "",
        matrix: Optional[MeasurementMatrix] = None,
    ) -> Optional[pathlib.Path]:
        path = self._path(f"interrupted_{reason}_{self._ts()}.csv")
        category, description, action = STOP_ANALYSIS.get(
            reason, ("Unknown", reason, "Check the server log")
        )
        point = stopped_at.to_dict() if stopped_at is not None else {}
        existing = self.existing_reports()

        def _index(key: str) -> Any:
            value = point.get(key)
            return "N/A" if value is None else value

        rows: list[list[Any]] = [
            ["Interrupted Test Report"],
            ["Generated", self.clock().isoformat(timespec="seconds")],
            ["Stop Reason", reason],
            ["Category", category],
            ["Description", description],
            ["Action Required", action],
            ["Cycle", _index("cycle_index")],
            ["Phase", point.get("phase", "N/A")],
            ["Test", _index("test_index")],
            ["Voltage Index", _index("voltage_index")],
            ["Device Index", _index("device_index")],
            ["Read Index", _index("read_index")],
            ["Channel Index", _index("channel_index")],
            ["Error", error],
            [],
            ["Settings"],
        ]
        rows += [[k, v] for k, v in self.config.settings_summary().items()]
        if matrix is not None:
            rows += [[], ["Partial Results"]]
            rows += self._matrix_rows(matrix)
        rows += [[], ["Existing Reports", len(existing)]]
        rows += [[name] for name in existing]
        return self._record(_write_rows(path, rows))
