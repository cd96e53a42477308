#!/usr/bin/env python3

"""
The barcode table: the fixed, validated set of expected barcodes and their
sample metadata, loaded from the command line or a tab-delimited barcode file.
"""

import csv
import dataclasses
import itertools
import logging
from collections import Counter
from typing import Dict, Iterator, List, Optional, Sequence

import edlib

from .constants import VALID_BASES
from .models import ConfigurationError, DecodeParameters, NamedBarcode, UNDETERMINED_BARCODE


REQUIRED_COLUMN = "barcode_sequence"

# barcode file column -> NamedBarcode field
COLUMN_FIELDS = {
    "barcode_sequence": "sequence",
    "barcode_name": "name",
    "library_name": "library_name",
    "sample_name": "sample_name",
    "description": "description",
    "project": "project",
    "pr:project": "project",
    "fcid": "flow_cell_id",
    "flow_cell_id": "flow_cell_id",
    "lane": "lane",
    "insert_size": "insert_size",
    "sequencing_center": "sequencing_center",
}


class BarcodeTable:
    """Ordered, validated barcodes plus the implicit undetermined entry"""

    def __init__(self, barcodes: Sequence[NamedBarcode]):
        if not barcodes:
            raise ConfigurationError("No barcodes given: at least one barcode is required")

        named = []
        by_sequence: Dict[str, NamedBarcode] = {}
        lengths = set()
        for position, barcode in enumerate(barcodes, start=1):
            sequence = barcode.sequence.strip().upper()
            if not sequence:
                raise ConfigurationError(f"Barcode {position} has an empty sequence")
            invalid = set(sequence) - VALID_BASES
            if invalid:
                raise ConfigurationError(
                    f"Barcode {sequence} contains invalid characters: {''.join(sorted(invalid))}")
            if sequence in by_sequence:
                raise ConfigurationError(f"Duplicate barcode sequence: {sequence}")

            entry = dataclasses.replace(barcode, sequence=sequence, name=barcode.name or str(position))
            named.append(entry)
            by_sequence[sequence] = entry
            lengths.add(len(sequence))

        if len(lengths) > 1:
            raise ConfigurationError(
                f"Barcodes must all be the same length, found lengths {sorted(lengths)}")

        self._barcodes = named
        self._by_sequence = by_sequence
        self._barcode_length = lengths.pop()

    @classmethod
    def from_sequences(cls, sequences: Sequence[str]) -> "BarcodeTable":
        return cls([NamedBarcode(sequence=s) for s in sequences])

    @property
    def barcode_length(self) -> int:
        return self._barcode_length

    @property
    def named_barcodes(self) -> List[NamedBarcode]:
        return list(self._barcodes)

    @property
    def undetermined(self) -> NamedBarcode:
        return UNDETERMINED_BARCODE

    def entries(self) -> List[NamedBarcode]:
        """All barcodes in table order followed by the undetermined entry"""
        return self._barcodes + [UNDETERMINED_BARCODE]

    def lookup(self, sequence: str) -> Optional[NamedBarcode]:
        """Exact-match lookup; the empty sequence resolves to the undetermined entry"""
        if not sequence:
            return UNDETERMINED_BARCODE
        return self._by_sequence.get(sequence.upper())

    def sequences(self) -> List[str]:
        return [b.sequence for b in self._barcodes]

    def __len__(self):
        return len(self._barcodes)

    def __iter__(self) -> Iterator[NamedBarcode]:
        return iter(self._barcodes)


def _normalize_column(name: str) -> str:
    return name.strip().lstrip("#").strip().lower()


def _tag_for_column(column: str) -> Optional[str]:
    """Read group tag for an end-user column: 'xx:label' or a bare two-character name"""
    column = column.strip().lstrip("#").strip()
    if ":" in column:
        tag = column.split(":", 1)[0]
        return tag if len(tag) == 2 else None
    return column if len(column) == 2 else None


def _barcode_from_row(row: Dict[str, str]) -> NamedBarcode:
    values = {}
    tags = {}
    for column, value in row.items():
        if column is None:
            raise ValueError(f"More values than columns: {value}")
        value = (value or "").strip()
        key = _normalize_column(column)
        if key in COLUMN_FIELDS:
            values[COLUMN_FIELDS[key]] = value
            continue
        tag = _tag_for_column(column)
        if tag is None:
            logging.debug(f"Ignoring barcode file column {column}")
        elif value:
            tags[tag] = value

    insert_size = values.pop("insert_size", "")
    if insert_size:
        try:
            values["insert_size"] = int(insert_size)
        except ValueError:
            raise ValueError(f"insert_size must be an integer, got {insert_size!r}")

    return NamedBarcode(tags=tags, **values)


def read_barcode_file(filename: str) -> BarcodeTable:
    """
    Read a tab-separated barcode file and return a BarcodeTable.

    The first row is a header containing at least barcode_sequence. Recognized optional
    columns are barcode_name, library_name, sample_name, description, project (or
    pr:project), fcid (or flow_cell_id), lane, insert_size and sequencing_center. Other
    columns named like 'xx:label', or with a two-character name, are added to the read
    group records of that barcode as tag xx.

    Raises:
        ConfigurationError: If the file is missing columns, empty or otherwise invalid
    """
    barcodes = []
    with open(filename, "r", newline="") as f:
        reader = csv.DictReader(f, delimiter="\t")
        if reader.fieldnames is None:
            raise ConfigurationError(f"Barcode file is empty: {filename}")

        columns = {_normalize_column(c) for c in reader.fieldnames}
        if REQUIRED_COLUMN not in columns:
            raise ConfigurationError(
                f"Missing required column in barcode file {filename}: {REQUIRED_COLUMN}")

        for row_num, row in enumerate(reader, start=1):
            if not any((v or "").strip() for k, v in row.items() if k is not None):
                continue
            try:
                barcodes.append(_barcode_from_row(row))
            except (KeyError, ValueError, TypeError) as e:
                raise ConfigurationError(f"Error processing row {row_num} of {filename}: {e}")

    if not barcodes:
        raise ConfigurationError(f"No barcodes found in barcode file {filename}")

    table = BarcodeTable(barcodes)
    logging.info(f"Loaded {len(table)} barcodes of length {table.barcode_length} from {filename}")
    return table


def check_barcode_distances(table: BarcodeTable, parameters: DecodeParameters) -> Optional[int]:
    """
    Log the minimum edit distance between barcodes and warn if the configured
    tolerance could confuse two of them. Edit distance is a lower bound on the
    mismatch count, so the warning errs on the side of caution.
    """
    sequences = table.sequences()
    if len(sequences) <= 1:
        return None

    distances = Counter()
    for seq1, seq2 in itertools.combinations(sequences, 2):
        distances[edlib.align(seq1, seq2, mode="NW", task="distance")["editDistance"]] += 1
    min_distance = min(distances)
    logging.info(f"Minimum edit distance is {min_distance} for {len(sequences)} barcodes")

    required = 2 * parameters.max_mismatches + parameters.min_mismatch_delta
    if min_distance < required:
        logging.warning(f"{distances[min_distance]} barcode pair(s) are within edit distance {min_distance}, "
                        f"less than the {required} needed to always separate reads with "
                        f"{parameters.max_mismatches} mismatch(es)")
    return min_distance
