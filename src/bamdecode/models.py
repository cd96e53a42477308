#!/usr/bin/env python3

"""
Data models for barcode decoding: barcode entries, parameters, match results
and the read units that flow through the router.
"""

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional

from .constants import BarcodeSource, Defaults, SampleId


class ConfigurationError(ValueError):
    """Invalid barcode table, parameters or options, detected before any record is read."""
    pass


class RecordStructureError(Exception):
    """Malformed input detected mid-run: short barcode read or pair desynchronization."""
    pass


class WorkerException(Exception):
    pass


@dataclass(frozen=True)
class NamedBarcode:
    sequence: str
    name: str = ""
    library_name: str = ""
    sample_name: str = ""
    description: str = ""
    project: str = ""
    flow_cell_id: str = ""
    lane: str = ""
    insert_size: Optional[int] = None
    sequencing_center: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def is_undetermined(self) -> bool:
        return self.sequence == ""

    @property
    def token(self) -> str:
        """Suffix appended to read names and read group ids for this barcode."""
        return self.sequence.upper() if self.sequence else SampleId.UNDETERMINED


UNDETERMINED_BARCODE = NamedBarcode(sequence="", name=SampleId.UNDETERMINED)


@dataclass(frozen=True)
class DecodeParameters:
    max_mismatches: int = Defaults.MAX_MISMATCHES
    min_mismatch_delta: int = Defaults.MIN_MISMATCH_DELTA
    max_no_calls: int = Defaults.MAX_NO_CALLS

    def __post_init__(self):
        for name in ("max_mismatches", "min_mismatch_delta", "max_no_calls"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ConfigurationError(f"{name} must not be negative, got {value}")


class BarcodeMatch(NamedTuple):
    barcode: str
    matched: bool
    mismatches: int
    mismatches_to_second_best: int
    no_calls: int
    quality_pass: bool

    @property
    def token(self) -> str:
        return self.barcode.upper() if self.matched else SampleId.UNDETERMINED


class ExtractedBarcode(NamedTuple):
    observed: str
    quality_pass: bool
    source: BarcodeSource
    mates_disagree: bool


class ReadUnit(NamedTuple):
    """A primary record and its mate (None for unpaired reads)."""
    record: object
    mate: Optional[object]

    @property
    def records(self) -> List[object]:
        return [self.record] if self.mate is None else [self.record, self.mate]


@dataclass
class LaneInfo:
    flow_cell_id: str = SampleId.UNKNOWN
    lane: str = SampleId.UNKNOWN
    run_folder: str = SampleId.UNKNOWN

    def label(self) -> str:
        return f"{self.flow_cell_id}_{self.lane}"
