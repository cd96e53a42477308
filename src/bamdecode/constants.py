#!/usr/bin/env python3

"""
Constants and enums shared across the decoding pipeline.
"""

from enum import Enum


NO_CALL = "N"
VALID_BASES = set("ACGTN")


class SampleId:
    UNDETERMINED = "undetermined"
    UNKNOWN = "unknown"
    LANE_SUMMARY = "LANE_SUMMARY"


class Tags:
    """SAM tags read or written by the router"""
    BARCODE = "BC"
    READ_GROUP = "RG"
    CONTROL = "XC"
    RUN_FOLDER = "rf"


class Defaults:
    MAX_MISMATCHES = 1
    MIN_MISMATCH_DELTA = 1
    MAX_NO_CALLS = 2
    BATCH_SIZE = 1000
    CACHE_SIZE = 100000


class OutputFormat:
    BAM = "bam"
    SAM = "sam"

    @staticmethod
    def write_mode(output_format: str) -> str:
        # pysam only writes a SAM header when "h" is in the mode
        return "wb" if output_format == OutputFormat.BAM else "wh"


class Destination(Enum):
    """Which kind of sink a read unit is dispatched to."""
    CONTROL = 1
    FILTERED = 2
    PASSED = 3

    def to_string(self) -> str:
        """Convert destination to lowercase string for trace logging."""
        return self.name.lower()


class BarcodeSource(Enum):
    """Where the observed barcode of a read unit came from."""
    PRIMARY = 1
    MATE = 2
    MISSING = 3

    def to_string(self) -> str:
        return self.name.lower()
