"""
Tests for barcode table construction and barcode file parsing.
"""

import logging

import pytest

from bamdecode.barcodes import BarcodeTable, check_barcode_distances, read_barcode_file
from bamdecode.models import ConfigurationError, DecodeParameters, NamedBarcode


class TestBarcodeTable:

    @pytest.mark.unit
    def test_sequences_are_uppercased_and_named_by_position(self):
        table = BarcodeTable.from_sequences(["acgt", "TTGG"])
        assert table.sequences() == ["ACGT", "TTGG"]
        assert [b.name for b in table] == ["1", "2"]
        assert table.barcode_length == 4
        assert len(table) == 2

    @pytest.mark.unit
    def test_undetermined_entry_comes_last(self):
        table = BarcodeTable.from_sequences(["ACGT", "TTGG"])
        entries = table.entries()
        assert len(entries) == 3
        assert entries[-1].is_undetermined
        assert entries[-1].token == "undetermined"

    @pytest.mark.unit
    def test_lookup(self):
        table = BarcodeTable.from_sequences(["ACGT", "TTGG"])
        assert table.lookup("acgt").sequence == "ACGT"
        assert table.lookup("").is_undetermined
        assert table.lookup("CCCC") is None

    @pytest.mark.unit
    @pytest.mark.parametrize("sequences", [
        ["ACGT", "acgt"],
        ["ACGT", "ACG"],
        [],
        ["ACGT", ""],
        ["ACXT"],
    ])
    def test_invalid_tables_are_rejected(self, sequences):
        with pytest.raises(ConfigurationError):
            BarcodeTable.from_sequences(sequences)

    @pytest.mark.unit
    def test_explicit_names_are_kept(self):
        table = BarcodeTable([NamedBarcode("ACGT", name="first"), NamedBarcode("TTGG")])
        assert [b.name for b in table] == ["first", "2"]


class TestBarcodeFile:

    @pytest.mark.unit
    def test_read_barcode_file(self, barcode_file):
        table = read_barcode_file(str(barcode_file))
        assert table.sequences() == ["AAAA", "CCCC", "GGGG"]

        first = table.lookup("AAAA")
        assert first.name == "bc1"
        assert first.library_name == "Lib1"
        assert first.sample_name == "SampleA"
        assert first.description == "first sample"
        assert first.project == "ProjX"
        assert first.tags == {"hn": "hostA"}

        third = table.lookup("GGGG")
        assert third.description == ""
        assert third.tags == {}

    @pytest.mark.unit
    def test_missing_sequence_column(self, temp_dir):
        path = temp_dir / "bad.txt"
        path.write_text("barcode_name\tlibrary_name\nbc1\tLib1\n")
        with pytest.raises(ConfigurationError, match="barcode_sequence"):
            read_barcode_file(str(path))

    @pytest.mark.unit
    def test_header_only_file(self, temp_dir):
        path = temp_dir / "empty.txt"
        path.write_text("barcode_sequence\n\n")
        with pytest.raises(ConfigurationError, match="No barcodes"):
            read_barcode_file(str(path))

    @pytest.mark.unit
    def test_bad_insert_size_names_the_row(self, temp_dir):
        path = temp_dir / "bad.txt"
        path.write_text("barcode_sequence\tinsert_size\nAAAA\t300\nCCCC\twide\n")
        with pytest.raises(ConfigurationError, match="row 2"):
            read_barcode_file(str(path))

    @pytest.mark.unit
    def test_duplicate_rows(self, temp_dir):
        path = temp_dir / "dup.txt"
        path.write_text("barcode_sequence\nAAAA\naaaa\n")
        with pytest.raises(ConfigurationError, match="Duplicate"):
            read_barcode_file(str(path))


class TestBarcodeDistances:

    @pytest.mark.unit
    def test_minimum_distance_is_logged(self, caplog):
        table = BarcodeTable.from_sequences(["AAAA", "CCCC", "AAAT"])
        with caplog.at_level(logging.INFO):
            assert check_barcode_distances(table, DecodeParameters()) == 1
        assert "Minimum edit distance is 1" in caplog.text
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.unit
    def test_well_separated_barcodes_do_not_warn(self, caplog):
        table = BarcodeTable.from_sequences(["AAAAAA", "CCCCCC", "GGGGGG"])
        with caplog.at_level(logging.INFO):
            assert check_barcode_distances(table, DecodeParameters()) == 6
        assert not any(r.levelno == logging.WARNING for r in caplog.records)

    @pytest.mark.unit
    def test_single_barcode(self):
        assert check_barcode_distances(BarcodeTable.from_sequences(["ACGT"]), DecodeParameters()) is None
