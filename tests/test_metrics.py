"""
Tests for barcode metrics accumulation and the metrics file.
"""

import csv

import pytest

from bamdecode.barcodes import BarcodeTable
from bamdecode.metrics import MetricsAggregator, write_metrics_file
from bamdecode.models import LaneInfo


@pytest.fixture
def aggregator():
    table = BarcodeTable.from_sequences(["AAAA", "CCCC"])
    return MetricsAggregator(table, LaneInfo("FC1", "1", "run1"))


class TestMetricsAggregator:

    @pytest.mark.unit
    def test_counts(self, aggregator):
        aggregator.record("AAAA", True, 0)
        aggregator.record("AAAA", True, 1)
        aggregator.record("aaaa", False, 0)
        aggregator.record("CCCC", True, 0, is_control=True)
        aggregator.record("", True, 4)
        aggregator.record("", False, 1)

        a = aggregator.get("AAAA")
        assert a.reads == 3
        assert a.matched_reads == 3
        assert a.quality_fail_reads == 1
        assert a.pf_reads == 2
        assert a.perfect_matches == 2
        assert a.one_mismatch_matches == 1

        c = aggregator.get("CCCC")
        assert c.reads == 1
        assert c.control_reads == 1

        u = aggregator.get("")
        assert u.reads == 2
        assert u.matched_reads == 0
        assert u.perfect_matches == 0
        assert u.quality_fail_reads == 1

        assert aggregator.total_reads == 6
        assert aggregator.matched_reads == 4

    @pytest.mark.unit
    def test_unknown_barcode(self, aggregator):
        with pytest.raises(KeyError):
            aggregator.record("GGGG", True, 0)

    @pytest.mark.unit
    def test_every_unit_counted_once(self, aggregator):
        for barcode in ["AAAA", "", "CCCC", "AAAA", ""]:
            aggregator.record(barcode, True, 0)
        assert sum(m.reads for m in aggregator.metrics()) == 5

    @pytest.mark.unit
    def test_lane_summary_excludes_controls_and_undetermined(self, aggregator):
        aggregator.record("AAAA", True, 0)
        aggregator.record("CCCC", False, 1)
        aggregator.record("CCCC", True, 0, is_control=True)
        aggregator.record("", True, 3)

        lane = aggregator.lane_summary()
        assert lane.reads == 2
        assert lane.matched_reads == 2
        assert lane.quality_fail_reads == 1
        assert lane.barcode_name == "FC1_1"

    @pytest.mark.unit
    def test_finalize(self, aggregator):
        for _ in range(3):
            aggregator.record("AAAA", True, 0)
        aggregator.record("CCCC", True, 0)
        aggregator.record("CCCC", False, 0)
        aggregator.record("", True, 2)

        rows = aggregator.finalize()
        assert [r.display_barcode for r in rows] == ["AAAA", "CCCC", "undetermined", "LANE_SUMMARY"]

        a, c, u, lane = rows
        assert a.pct_matches == pytest.approx(3 / 6)
        assert c.ratio_this_barcode_to_best_barcode_pct == pytest.approx(2 / 3)
        assert u.pf_pct_matches == pytest.approx(1 / 5)
        # mean pf reads per real barcode is (3 + 1) / 2
        assert a.pf_normalized_matches == pytest.approx(1.5)
        assert c.pf_normalized_matches == pytest.approx(0.5)
        assert u.pf_normalized_matches == 0.0
        assert lane.reads == 5
        assert lane.pct_matches == pytest.approx(5 / 6)

    @pytest.mark.unit
    def test_finalize_without_reads(self, aggregator):
        rows = aggregator.finalize()
        assert all(r.pct_matches == 0.0 for r in rows)


class TestMetricsFile:

    @pytest.mark.unit
    def test_write_metrics_file(self, aggregator, temp_dir):
        aggregator.record("AAAA", True, 0)
        aggregator.record("", True, 4)
        path = temp_dir / "metrics.txt"
        write_metrics_file(str(path), aggregator, "bamdecode in.bam")

        lines = path.read_text().splitlines()
        assert lines[0] == "# bamdecode in.bam"
        assert lines[1].startswith("# Written")

        rows = list(csv.DictReader([l for l in lines if not l.startswith("#")], delimiter="\t"))
        assert [r["BARCODE"] for r in rows] == ["AAAA", "CCCC", "undetermined", "LANE_SUMMARY"]
        assert rows[0]["READS"] == "1"
        assert rows[0]["PERFECT_MATCHES"] == "1"
        assert rows[0]["PCT_MATCHES"] == "0.500000"
        assert rows[2]["MATCHED_READS"] == "0"
