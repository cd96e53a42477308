#!/usr/bin/env python3

"""
Per-barcode and per-lane decoding metrics.

Counters are updated once per read unit (a single read, or a read pair sharing one
barcode determination). Derived percentages follow the usual Illumina barcode metric
definitions: PCT_MATCHES is the share of all units, RATIO_THIS_BARCODE_TO_BEST_BARCODE_PCT
is relative to the busiest real barcode, and PF_NORMALIZED_MATCHES is relative to the
mean number of passing-filter units per real barcode.
"""

import csv
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from .barcodes import BarcodeTable
from .constants import SampleId
from .models import LaneInfo, NamedBarcode


@dataclass
class BarcodeMetric:
    barcode: str
    barcode_name: str = ""
    library_name: str = ""
    sample_name: str = ""
    description: str = ""
    reads: int = 0
    matched_reads: int = 0
    quality_fail_reads: int = 0
    perfect_matches: int = 0
    one_mismatch_matches: int = 0
    control_reads: int = 0
    pct_matches: float = 0.0
    ratio_this_barcode_to_best_barcode_pct: float = 0.0
    pf_pct_matches: float = 0.0
    pf_normalized_matches: float = 0.0

    @classmethod
    def for_barcode(cls, barcode: NamedBarcode) -> "BarcodeMetric":
        return cls(barcode=barcode.sequence,
                   barcode_name=barcode.name,
                   library_name=barcode.library_name,
                   sample_name=barcode.sample_name,
                   description=barcode.description)

    @property
    def pf_reads(self) -> int:
        return self.reads - self.quality_fail_reads

    @property
    def is_undetermined(self) -> bool:
        return self.barcode == ""

    @property
    def display_barcode(self) -> str:
        return self.barcode if self.barcode else SampleId.UNDETERMINED


METRIC_COLUMNS = [
    ("BARCODE", "display_barcode"),
    ("BARCODE_NAME", "barcode_name"),
    ("LIBRARY_NAME", "library_name"),
    ("SAMPLE_NAME", "sample_name"),
    ("DESCRIPTION", "description"),
    ("READS", "reads"),
    ("PF_READS", "pf_reads"),
    ("MATCHED_READS", "matched_reads"),
    ("QUALITY_FAIL_READS", "quality_fail_reads"),
    ("PERFECT_MATCHES", "perfect_matches"),
    ("ONE_MISMATCH_MATCHES", "one_mismatch_matches"),
    ("CONTROL_READS", "control_reads"),
    ("PCT_MATCHES", "pct_matches"),
    ("RATIO_THIS_BARCODE_TO_BEST_BARCODE_PCT", "ratio_this_barcode_to_best_barcode_pct"),
    ("PF_PCT_MATCHES", "pf_pct_matches"),
    ("PF_NORMALIZED_MATCHES", "pf_normalized_matches"),
]


class MetricsAggregator:
    """Accumulates barcode metrics for one lane"""

    def __init__(self, table: BarcodeTable, lane_info: Optional[LaneInfo] = None):
        self.lane_info = lane_info or LaneInfo()
        self._metrics: Dict[str, BarcodeMetric] = {}
        for barcode in table.entries():
            self._metrics[barcode.sequence] = BarcodeMetric.for_barcode(barcode)
        self._lane = BarcodeMetric(barcode=SampleId.LANE_SUMMARY)

    def record(self, barcode: str, is_quality_pass: bool, mismatches: int, is_control: bool = False):
        """
        Count one read unit against a barcode ("" for undetermined).

        Raises:
            KeyError: If the barcode is not in the table
        """
        key = barcode.upper()
        metric = self._metrics.get(key)
        if metric is None:
            raise KeyError(f"Barcode {barcode} is not in the barcode table")

        matched = key != ""
        targets = [metric]
        if matched and not is_control:
            targets.append(self._lane)

        for m in targets:
            m.reads += 1
            if not is_quality_pass:
                m.quality_fail_reads += 1
            if matched:
                m.matched_reads += 1
                if mismatches == 0:
                    m.perfect_matches += 1
                elif mismatches == 1:
                    m.one_mismatch_matches += 1
        if is_control:
            metric.control_reads += 1

    def get(self, barcode: str) -> BarcodeMetric:
        return self._metrics[barcode.upper()]

    @property
    def total_reads(self) -> int:
        return sum(m.reads for m in self._metrics.values())

    @property
    def matched_reads(self) -> int:
        return sum(m.matched_reads for m in self._metrics.values())

    def metrics(self) -> List[BarcodeMetric]:
        """Metrics in table order, undetermined last"""
        return list(self._metrics.values())

    def lane_summary(self) -> BarcodeMetric:
        self._lane.barcode_name = self.lane_info.label()
        return self._lane

    def finalize(self) -> List[BarcodeMetric]:
        """Compute the derived percentages and return all rows including the lane summary"""
        metrics = self.metrics()
        real = [m for m in metrics if not m.is_undetermined]

        total_reads = sum(m.reads for m in metrics)
        total_pf_reads = sum(m.pf_reads for m in metrics)
        total_pf_reads_assigned = sum(m.pf_reads for m in real)
        best_reads = max((m.reads for m in real), default=0)
        mean_pf_reads = total_pf_reads_assigned / len(real) if real else 0

        for m in metrics:
            m.pct_matches = m.reads / total_reads if total_reads else 0.0
            m.pf_pct_matches = m.pf_reads / total_pf_reads if total_pf_reads else 0.0
            m.ratio_this_barcode_to_best_barcode_pct = m.reads / best_reads if best_reads else 0.0
            if not m.is_undetermined and mean_pf_reads:
                m.pf_normalized_matches = m.pf_reads / mean_pf_reads

        lane = self.lane_summary()
        lane.pct_matches = lane.reads / total_reads if total_reads else 0.0
        lane.pf_pct_matches = lane.pf_reads / total_pf_reads if total_pf_reads else 0.0

        return metrics + [lane]


def _format_value(value) -> str:
    if isinstance(value, float):
        return f"{value:.6f}"
    return str(value)


def write_metrics_file(filename: str, aggregator: MetricsAggregator, command_line: str = ""):
    """Write the finalized metrics as a tab-separated table with '#' provenance lines"""
    rows = aggregator.finalize()
    with open(filename, "w", newline="") as f:
        if command_line:
            f.write(f"# {command_line}\n")
        f.write(f"# Written {datetime.now().isoformat()} for lane {aggregator.lane_info.label()}\n")
        writer = csv.writer(f, delimiter="\t", lineterminator="\n")
        writer.writerow([header for header, _ in METRIC_COLUMNS])
        for m in rows:
            writer.writerow([_format_value(getattr(m, attr)) for _, attr in METRIC_COLUMNS])
    logging.info(f"Wrote metrics for {len(rows) - 2} barcodes to {filename}")
