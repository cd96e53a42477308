"""
Shared pytest fixtures for bamdecode tests.
"""

import pytest
import tempfile
from pathlib import Path

import pysam


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory(prefix="bamdecode_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def header_dict():
    """Header of an unaligned lane file: one read group FCID.LANE with a run folder."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "RG": [{"ID": "FC1.1", "PL": "ILLUMINA", "PU": "FC1.1", "rf": "run1"}],
        "PG": [{"ID": "basecaller", "PN": "basecaller", "VN": "1.0"}],
    }


@pytest.fixture
def alignment_header(header_dict):
    return pysam.AlignmentHeader.from_dict(header_dict)


@pytest.fixture
def make_record(alignment_header):
    """Factory for unmapped records with an optional barcode read in the BC tag."""
    def _make(name, barcode=None, paired=False, first=True, qcfail=False, control=False,
              read_group="FC1.1", sequence="ACGTACGTAC"):
        record = pysam.AlignedSegment(alignment_header)
        record.query_name = name
        record.query_sequence = sequence
        record.query_qualities = pysam.qualitystring_to_array("I" * len(sequence))
        flag = 0x4
        if paired:
            flag |= 0x1 | 0x8 | (0x40 if first else 0x80)
        if qcfail:
            flag |= 0x200
        record.flag = flag
        record.reference_id = -1
        record.reference_start = -1
        record.next_reference_id = -1
        record.next_reference_start = -1
        if read_group is not None:
            record.set_tag("RG", read_group, value_type="Z")
        if barcode is not None:
            record.set_tag("BC", barcode, value_type="Z")
        if control:
            record.set_tag("XC", 1, value_type="i")
        return record
    return _make


@pytest.fixture
def make_pair(make_record):
    """Factory for a read pair; mate_barcode defaults to the same barcode."""
    def _make(name, barcode=None, mate_barcode="same", **kwargs):
        if mate_barcode == "same":
            mate_barcode = barcode
        return [make_record(name, barcode, paired=True, first=True, **kwargs),
                make_record(name, mate_barcode, paired=True, first=False, **kwargs)]
    return _make


@pytest.fixture
def write_sam(header_dict):
    """Write records with the shared header (SAM unless mode says otherwise); returns the path."""
    def _write(path, records, mode="wh"):
        with pysam.AlignmentFile(str(path), mode, header=header_dict) as f:
            for record in records:
                f.write(record)
        return path
    return _write


@pytest.fixture
def read_records():
    """Read every record of a SAM or BAM file into a list."""
    def _read(path):
        with pysam.AlignmentFile(str(path), "r", check_sq=False) as f:
            return list(f.fetch(until_eof=True))
    return _read


@pytest.fixture
def barcode_file(temp_dir):
    """Barcode file with metadata and an end-user read group tag."""
    path = temp_dir / "barcodes.txt"
    path.write_text(
        "barcode_sequence\tbarcode_name\tlibrary_name\tsample_name\tdescription\tpr:project\thn:host\n"
        "AAAA\tbc1\tLib1\tSampleA\tfirst sample\tProjX\thostA\n"
        "CCCC\tbc2\tLib2\tSampleB\tsecond sample\tProjX\thostB\n"
        "GGGG\tbc3\tLib3\tSampleC\t\tProjY\t\n"
    )
    return path


# Markers for test organization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
