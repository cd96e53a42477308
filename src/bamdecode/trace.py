#!/usr/bin/env python3

"""
Diagnostic trace events for read units flowing through the decoder.

Events are buffered and written as tab-separated rows to
<output dir>/trace/bamdecode_trace_<timestamp>.tsv. Level 1 records the lifecycle of
every unit; level 2 adds mate disagreements and candidate scores.
"""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import BarcodeSource, Destination
from .models import BarcodeMatch


class TraceLogger:
    """Buffered TSV writer for per-unit trace events."""

    def __init__(self, enabled: bool, verbosity: int, output_dir: str,
                 start_timestamp: Optional[str] = None, buffer_size: int = 1000):
        self.enabled = enabled
        self.verbosity = verbosity
        self.event_counter = 0
        self.buffer = []
        self.buffer_size = buffer_size
        self.file_handle = None
        self.filepath = None

        if self.enabled:
            trace_dir = Path(output_dir) / "trace"
            trace_dir.mkdir(parents=True, exist_ok=True)

            if start_timestamp is None:
                start_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.filepath = trace_dir / f"bamdecode_trace_{start_timestamp}.tsv"
            self.file_handle = open(self.filepath, 'w', newline='')
            self.writer = csv.writer(self.file_handle, delimiter='\t')
            self.writer.writerow(['timestamp', 'event_seq', 'unit_id', 'event_type'])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self.enabled and self.file_handle:
            if self.buffer:
                self.flush()
            self.file_handle.close()
            self.file_handle = None
            logging.debug(f"Trace log written to {self.filepath}")

    def flush(self):
        if self.file_handle and self.buffer:
            self.writer.writerows(self.buffer)
            self.file_handle.flush()
            self.buffer = []

    def _log_event(self, unit_id: str, event_type: str, *fields):
        if not self.enabled:
            return

        self.event_counter += 1
        row = [datetime.now().isoformat(), self.event_counter, unit_id, event_type] + list(fields)
        self.buffer.append(row)

        if len(self.buffer) >= self.buffer_size:
            self.flush()

    @staticmethod
    def unit_id(query_name: str, unit_num: int) -> str:
        return f"{query_name}#{unit_num:08d}"

    # Standard events (verbosity level 1)

    def log_unit_received(self, unit_id: str, paired: bool, qc_fail: bool):
        self._log_event(unit_id, 'UNIT_RECEIVED', 'paired' if paired else 'single',
                        'qc_fail' if qc_fail else 'pf')

    def log_barcode_extracted(self, unit_id: str, observed: str, source: BarcodeSource):
        self._log_event(unit_id, 'BARCODE_EXTRACTED', observed or '-', source.to_string())

    def log_barcode_classified(self, unit_id: str, match: BarcodeMatch):
        self._log_event(unit_id, 'BARCODE_CLASSIFIED', match.token, match.mismatches,
                        match.no_calls, 'pf' if match.quality_pass else 'qc_fail')

    def log_unit_output(self, unit_id: str, destination: Destination, token: str, path: str):
        self._log_event(unit_id, 'UNIT_OUTPUT', destination.to_string(), token, path)

    # Detailed events (verbosity level 2)

    def log_barcode_disagreement(self, unit_id: str, primary: str, mate: str):
        if self.verbosity >= 2:
            self._log_event(unit_id, 'BARCODE_DISAGREEMENT', primary, mate)

    def log_candidate_scored(self, unit_id: str, match: BarcodeMatch):
        if self.verbosity >= 2:
            self._log_event(unit_id, 'CANDIDATE_SCORED', match.mismatches,
                            match.mismatches_to_second_best)
