#!/usr/bin/env python3

"""
Barcode classification: match an observed barcode read against the barcode
table, allowing a bounded number of mismatches and no-calls.
"""

from typing import Sequence

from cachetools import LRUCache

from .barcodes import BarcodeTable
from .constants import Defaults, NO_CALL
from .models import BarcodeMatch, DecodeParameters


def count_mismatches(observed: str, expected: str) -> int:
    """Hamming distance where a no-call never matches anything, not even another no-call"""
    mismatches = 0
    for o, e in zip(observed, expected):
        if o != e or o == NO_CALL:
            mismatches += 1
    return mismatches


def classify(observed: str, is_quality_pass: bool, barcodes: Sequence[str],
             max_mismatches: int, min_mismatch_delta: int, max_no_calls: int) -> BarcodeMatch:
    """
    Find the barcode closest to an observed barcode read.

    Every candidate is scored, even when the read fails the quality filter or has too
    many no-calls, so that the returned mismatch counts are meaningful diagnostics.
    Ties for the best candidate go to the earliest barcode but leave the read unmatched
    whenever min_mismatch_delta > 0.

    Args:
        observed: Barcode read, exactly as long as the barcodes
        is_quality_pass: False if the read failed the vendor quality check
        barcodes: Uppercased barcode sequences in table order

    Returns:
        BarcodeMatch with barcode set to the winning sequence, or "" if unmatched

    Raises:
        ValueError: If the observed read length differs from the barcode length
    """
    barcode_length = len(barcodes[0]) if barcodes else 0
    if len(observed) != barcode_length:
        raise ValueError(f"Barcode read {observed!r} has length {len(observed)}, "
                         f"expected {barcode_length}")

    observed = observed.upper()
    no_calls = observed.count(NO_CALL)

    best_barcode = None
    best = barcode_length + 1
    second_best = barcode_length + 1
    for barcode in barcodes:
        mismatches = count_mismatches(observed, barcode)
        if mismatches < best:
            second_best = best
            best = mismatches
            best_barcode = barcode
        elif mismatches < second_best:
            second_best = mismatches

    quality_pass = is_quality_pass and no_calls <= max_no_calls
    matched = (quality_pass and
               best_barcode is not None and
               best <= max_mismatches and
               second_best - best >= min_mismatch_delta)

    return BarcodeMatch(
        barcode=best_barcode if matched else "",
        matched=matched,
        mismatches=best,
        mismatches_to_second_best=second_best,
        no_calls=no_calls,
        quality_pass=quality_pass
    )


class IndexDecoder:
    """Classifies barcode reads against a fixed table with fixed thresholds"""

    def __init__(self, table: BarcodeTable, parameters: DecodeParameters,
                 cache_size: int = Defaults.CACHE_SIZE):
        self.table = table
        self.parameters = parameters
        self._sequences = table.sequences()
        self._cache = LRUCache(maxsize=cache_size)

    @property
    def barcode_length(self) -> int:
        return self.table.barcode_length

    def classify(self, observed: str, is_quality_pass: bool) -> BarcodeMatch:
        key = (observed, is_quality_pass)
        match = self._cache.get(key)
        if match is None:
            p = self.parameters
            match = classify(observed, is_quality_pass, self._sequences,
                             p.max_mismatches, p.min_mismatch_delta, p.max_no_calls)
            self._cache[key] = match
        return match

    def undetermined(self) -> BarcodeMatch:
        """Result for a read unit with no barcode read at all; never scored or filtered"""
        return BarcodeMatch(
            barcode="",
            matched=False,
            mismatches=self.barcode_length,
            mismatches_to_second_best=self.barcode_length,
            no_calls=0,
            quality_pass=True
        )
