#!/usr/bin/env python3

"""
The record router: pair records into units, extract each unit's barcode read,
classify it, rewrite names and read groups, and hand the unit to its sink.
"""

import itertools
import logging
import traceback
from typing import Iterable, Iterator, List, Optional, Tuple

from .barcodes import BarcodeTable
from .constants import BarcodeSource, Defaults, Destination, Tags
from .decoder import IndexDecoder
from .metrics import MetricsAggregator
from .models import (BarcodeMatch, DecodeParameters, ExtractedBarcode, ReadUnit,
                     RecordStructureError, WorkerException)
from .output import OutputManager
from .trace import TraceLogger


def iter_read_units(records: Iterable) -> Iterator[ReadUnit]:
    """
    Group records into units. A record flagged paired takes the next record as its mate.

    Raises:
        RecordStructureError: If a mate is missing, has a different name or is not flagged paired
    """
    it = iter(records)
    for record in it:
        if not record.is_paired:
            yield ReadUnit(record, None)
            continue

        mate = next(it, None)
        if mate is None:
            raise RecordStructureError(
                f"Paired read {record.query_name} has no mate at end of input")
        if mate.query_name != record.query_name or not mate.is_paired:
            raise RecordStructureError(
                f"The paired reads are not together: {record.query_name} {mate.query_name}")
        yield ReadUnit(record, mate)


def _tag_value(record, tag: str) -> str:
    if record is None or not record.has_tag(tag):
        return ""
    value = record.get_tag(tag)
    return str(value) if value is not None else ""


def extract_barcode(unit: ReadUnit, barcode_tag: str, barcode_length: int) -> ExtractedBarcode:
    """
    Determine the single barcode read for a unit.

    The primary record's barcode wins when mates disagree; the mate's is used when the
    primary has none. A unit with no barcode at all yields "" and is treated as
    passing the quality filter so it lands in the undetermined pass output.

    Raises:
        RecordStructureError: If the barcode read is shorter than the table's barcodes
    """
    primary = _tag_value(unit.record, barcode_tag)
    mate = _tag_value(unit.mate, barcode_tag)
    quality_pass = not unit.record.is_qcfail

    if primary:
        observed, source = primary, BarcodeSource.PRIMARY
    elif mate:
        observed, source = mate, BarcodeSource.MATE
    else:
        return ExtractedBarcode("", True, BarcodeSource.MISSING, False)

    if len(observed) < barcode_length:
        raise RecordStructureError(
            f"Barcode read {observed} of read {unit.record.query_name} is shorter than "
            f"the barcode length {barcode_length}")

    mates_disagree = bool(primary and mate and primary != mate)
    return ExtractedBarcode(observed[:barcode_length], quality_pass, source, mates_disagree)


def rewrite_unit(unit: ReadUnit, token: str):
    """Append '.token' to the name and read group of every record in the unit"""
    for record in unit.records:
        record.query_name = f"{record.query_name}.{token}"
        if record.has_tag(Tags.READ_GROUP):
            record.set_tag(Tags.READ_GROUP, f"{record.get_tag(Tags.READ_GROUP)}.{token}", value_type="Z")


def select_destination(unit: ReadUnit) -> Destination:
    if unit.record.has_tag(Tags.CONTROL):
        return Destination.CONTROL
    if unit.record.is_qcfail:
        return Destination.FILTERED
    return Destination.PASSED


# Global decoder for worker processes
_decoder: Optional[IndexDecoder] = None


def init_worker(table: BarcodeTable, parameters: DecodeParameters, debug: bool = False):
    """Initialize worker process with its own decoder and cache"""
    global _decoder
    try:
        level = logging.DEBUG if debug else logging.INFO
        logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
        _decoder = IndexDecoder(table, parameters)
    except Exception as e:
        logging.error(f"Failed to initialize worker: {e}")
        raise


def classify_chunk(chunk: List[Tuple[str, bool]]) -> List[BarcodeMatch]:
    """Classify (observed, is_quality_pass) pairs in a worker process"""
    try:
        return [_decoder.classify(observed, quality_pass) for observed, quality_pass in chunk]
    except Exception as e:
        logging.error(traceback.format_exc())
        raise WorkerException(e)


def split_chunks(items: List, num_chunks: int) -> List[List]:
    size = max(1, -(-len(items) // max(1, num_chunks)))
    return [items[i:i + size] for i in range(0, len(items), size)]


class Demultiplexer:
    """
    Drives units through Extract, Classify, Rewrite and Dispatch in input order.

    Classification can be farmed out to a multiprocessing pool; everything else,
    including metrics and writes, stays on the calling thread.
    """

    def __init__(self, decoder: IndexDecoder, metrics: MetricsAggregator,
                 output_manager: OutputManager, barcode_tag: str = Tags.BARCODE,
                 trace_logger: Optional[TraceLogger] = None):
        self.decoder = decoder
        self.metrics = metrics
        self.output_manager = output_manager
        self.barcode_tag = barcode_tag
        self.trace_logger = trace_logger
        self.total_units = 0
        self.matched_units = 0
        self.disagreements = 0

    def _classify_batch(self, extracted: List[ExtractedBarcode], pool=None,
                        num_chunks: int = 1) -> List[BarcodeMatch]:
        if pool is None:
            return [self.decoder.classify(e.observed, e.quality_pass) if e.observed
                    else self.decoder.undetermined() for e in extracted]

        work = [(e.observed, e.quality_pass) for e in extracted if e.observed]
        scored = iter([m for chunk in pool.map(classify_chunk, split_chunks(work, num_chunks))
                       for m in chunk])
        return [next(scored) if e.observed else self.decoder.undetermined() for e in extracted]

    def _route(self, unit: ReadUnit, extracted: ExtractedBarcode, match: BarcodeMatch):
        self.total_units += 1
        trace = self.trace_logger
        unit_id = TraceLogger.unit_id(unit.record.query_name, self.total_units)

        if trace:
            trace.log_unit_received(unit_id, unit.mate is not None, unit.record.is_qcfail)
            trace.log_barcode_extracted(unit_id, extracted.observed, extracted.source)
        if extracted.mates_disagree:
            self.disagreements += 1
            if trace:
                trace.log_barcode_disagreement(unit_id, _tag_value(unit.record, self.barcode_tag),
                                               _tag_value(unit.mate, self.barcode_tag))
        if trace:
            if extracted.observed:
                trace.log_candidate_scored(unit_id, match)
            trace.log_barcode_classified(unit_id, match)

        if match.matched:
            self.matched_units += 1

        token = match.token
        destination = select_destination(unit)
        self.metrics.record(match.barcode, match.quality_pass, match.mismatches,
                            is_control=destination is Destination.CONTROL)

        rewrite_unit(unit, token)
        self.output_manager.write(destination, token, unit.records)

        if trace:
            trace.log_unit_output(unit_id, destination, token,
                                  self.output_manager.path_for(destination, token))

    def _read_batch(self, units: Iterator[ReadUnit], batch_size: int):
        """
        Pull up to batch_size units and their barcodes. A malformed unit ends the batch
        early and is returned as the error, so the units before it are still routed.
        """
        batch = []
        extracted = []
        try:
            for unit in itertools.islice(units, batch_size):
                extracted.append(extract_barcode(unit, self.barcode_tag, self.decoder.barcode_length))
                batch.append(unit)
        except RecordStructureError as e:
            return batch, extracted, e
        return batch, extracted, None

    def decode_records(self, records: Iterable, pool=None, num_chunks: int = 1,
                       batch_size: int = Defaults.BATCH_SIZE) -> Iterator[Tuple[int, int]]:
        """
        Process all records, yielding (units, matched units) after each batch.

        Raises:
            RecordStructureError: On malformed pairs or short barcode reads, after every
                unit preceding the offending read has been written
            WorkerException: If classification failed in a worker process
        """
        units = iter_read_units(records)
        while True:
            batch, extracted, error = self._read_batch(units, batch_size)
            if batch:
                matches = self._classify_batch(extracted, pool, num_chunks)

                matched_before = self.matched_units
                for unit, e, match in zip(batch, extracted, matches):
                    self._route(unit, e, match)

                if self.trace_logger:
                    self.trace_logger.flush()
                yield len(batch), self.matched_units - matched_before

            if error is not None:
                raise error
            if len(batch) < batch_size:
                break

    def log_summary(self):
        if self.disagreements:
            logging.warning(f"{self.disagreements:,} read pairs had mates with different barcodes; "
                            f"the first read's barcode was used")
