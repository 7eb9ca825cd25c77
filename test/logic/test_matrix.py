import pytest

from chamberbench.meas import (
    CycleAccumulator,
    MeasurementCell,
    MeasurementMatrix,
    RunAggregate,
)
from chamberbench.meas.matrix import format_volts, truncate2
from chamberbench.types import CELL_ERROR, CELL_SKIPPED, JUDGE, CellAlreadyWrittenError

G, N = JUDGE.GOOD, JUDGE.NOT_GOOD


def _matrix(read_count=1, n_devices=3):
    return MeasurementMatrix(3, n_devices, read_count, voltages=[18.0, 24.0, 30.0])


class TestFormatting:
    @pytest.mark.parametrize(
        "value, text",
        [(220.07, "220.07V"), (220.079, "220.07V"), (-15.456, "-15.45V"), (5.0, "5.00V")],
    )
    def test_truncated_not_rounded(self, value, text):
        assert format_volts(value) == text

    def test_truncate2(self):
        assert truncate2(0.119) == 0.11
        assert truncate2(221.999) == 221.99


class TestMeasurementMatrix:
    def test_starts_unset(self):
        m = _matrix()
        assert m.completed_cells == 0
        assert m.total_cells == 9
        assert m.display(0, 0, 0) == CELL_SKIPPED
        assert m.is_unset(2, 2, 0)

    def test_write_once(self):
        m = _matrix()
        m.write(0, 0, 0, MeasurementCell(220.0, G))
        with pytest.raises(CellAlreadyWrittenError):
            m.write(0, 0, 0, MeasurementCell(221.0, G))
        with pytest.raises(CellAlreadyWrittenError):
            m.mark_skipped(0, 0, 0)
        assert m.display(0, 0, 0) == "220.00V|G"

    def test_skip_is_final(self):
        m = _matrix()
        m.mark_skipped(1, 2, 0)
        assert not m.is_unset(1, 2, 0)
        assert m.display(1, 2, 0) == CELL_SKIPPED
        with pytest.raises(CellAlreadyWrittenError):
            m.write(1, 2, 0, MeasurementCell(220.0, G))

    def test_error_cell(self):
        m = _matrix()
        m.write(0, 1, 0, MeasurementCell(CELL_ERROR, N))
        assert m.display(0, 1, 0) == "error|N"
        assert m.table_value(0, 1, 0) == CELL_ERROR

    def test_device_judgment(self):
        m = _matrix(read_count=3)
        m.write(0, 0, 0, MeasurementCell(220.0, G))
        m.write(0, 0, 1, MeasurementCell(220.0, G))
        m.write(0, 0, 2, MeasurementCell(150.0, N))
        m.write(0, 1, 0, MeasurementCell(220.0, G))
        assert m.device_judgment(0, 0) == N
        assert m.device_judgment(0, 1) == G
        assert m.device_judgment(0, 2) == CELL_SKIPPED
        assert m.count_judgments() == (3, 1)

    def test_table_payload(self):
        m = _matrix()
        m.write(1, 0, 0, MeasurementCell(24.5, G))
        m.mark_skipped(1, 1, 0)
        payload = m.table_payload(1)
        assert payload["voltage_index"] == 1
        assert payload["output_voltage"] == 24.0
        assert payload["total_devices"] == 3
        assert payload["total_tests"] == 1
        assert payload["completed_cells"] == 2
        assert payload["total_cells"] == 9
        assert payload["completion_percentage"] == pytest.approx(22.2)
        assert payload["table_data"][0] == [["24.50V"]]
        assert payload["table_data"][1] == [[CELL_SKIPPED]]
        assert payload["table_data"][2] == [[CELL_SKIPPED]]
        assert payload["summary"]["status"] == "in_progress"
        assert payload["summary"]["good"] == 1

    def test_completed_status(self):
        m = MeasurementMatrix(1, 2, 1)
        m.write(0, 0, 0, MeasurementCell(1.0, G))
        m.mark_skipped(0, 1, 0)
        assert m.table_payload(0)["summary"]["status"] == "completed"

    def test_bad_shape(self):
        with pytest.raises(ValueError):
            MeasurementMatrix(3, 10, 0)


class TestAccumulators:
    def test_cycle_average_and_majority(self):
        acc = CycleAccumulator((3, 3, 1, 1))
        for value, judgment in [(220.0, G), (222.0, G), (150.0, N)]:
            m = _matrix()
            m.write(0, 0, 0, MeasurementCell(value, judgment))
            m.mark_skipped(0, 1, 0)
            m.write(0, 2, 0, MeasurementCell(CELL_ERROR, N))
            acc.add(m)
        assert acc.n_sweeps == 3
        assert acc.average((0, 0, 0, 0)) == pytest.approx(197.33)
        assert acc.judgment((0, 0, 0, 0)) == G
        assert acc.display((0, 1, 0, 0)) == CELL_SKIPPED
        assert acc.display((0, 2, 0, 0)) == "error|N"

    def test_cycle_shape_mismatch(self):
        acc = CycleAccumulator((3, 3, 2, 1))
        with pytest.raises(ValueError):
            acc.add(_matrix())

    def test_run_aggregate_any_n_fails_device(self):
        agg = RunAggregate(3, [True, True, False])
        for judgments in [(G, G), (G, N)]:
            m = _matrix()
            m.write(0, 0, 0, MeasurementCell(220.0, judgments[0]))
            m.write(0, 1, 0, MeasurementCell(220.0, judgments[1]))
            m.mark_skipped(0, 2, 0)
            agg.add(m)
        assert agg.voltage_judgment(0, 0) == G
        assert agg.voltage_judgment(0, 1) == N
        assert agg.device_judgment(0) == G
        assert agg.device_judgment(1) == N
        assert agg.device_judgment(2) == CELL_SKIPPED
        assert agg.device_totals(1) == (2, 1, 1)
        assert agg.totals() == (4, 3, 1)
        summary = agg.summary()
        assert summary["selected"] == 2
        assert summary["good"] == 1
        assert summary["not_good"] == 1
        assert summary["pass_rate"] == 50.0
