#!/usr/bin/env python3

"""
bamdecode: decode barcode reads in an unaligned BAM/SAM file, tag each read with its
sample, write per-barcode or merged outputs and a barcode metrics file.
"""

import argparse
import logging
import os
import sys
import timeit
from datetime import datetime
from multiprocessing import Pool

import pysam
from tqdm import tqdm

from . import __version__
from .barcodes import BarcodeTable, check_barcode_distances, read_barcode_file
from .constants import Defaults, OutputFormat, Tags
from .decoder import IndexDecoder
from .demultiplex import Demultiplexer, init_worker
from .metrics import MetricsAggregator, write_metrics_file
from .models import ConfigurationError, DecodeParameters, RecordStructureError, WorkerException
from .output import create_output_manager
from .trace import TraceLogger


def version():
    # 0.1 initial release: single and split output, metrics, trace diagnostics
    return f"bamdecode version {__version__}"


def parse_args(argv):
    parser = argparse.ArgumentParser(
        description="bamdecode: Assign reads in an unaligned BAM/SAM file to samples by barcode read.")

    parser.add_argument("input_file", help="Unaligned BAM or SAM file with barcode reads in a tag")

    barcodes = parser.add_mutually_exclusive_group(required=True)
    barcodes.add_argument("--barcode", action="append", metavar="SEQ",
                          help="Expected barcode sequence (repeat for each barcode)")
    barcodes.add_argument("--barcode-file",
                          help="Tab-separated barcode file with at least a barcode_sequence column")

    output = parser.add_mutually_exclusive_group(required=True)
    output.add_argument("--output", metavar="FILE",
                        help="Single output file (.sam for SAM, otherwise BAM); QC-failed and "
                             "control reads go to companion files beside it")
    output.add_argument("--output-dir", metavar="DIR",
                        help="Directory for one pass and one non-pass file per barcode")
    parser.add_argument("--output-format", choices=[OutputFormat.BAM, OutputFormat.SAM],
                        default=OutputFormat.BAM, help="Format of files written with --output-dir (default: bam)")

    parser.add_argument("--metrics-file", required=True, help="Barcode metrics output file")
    parser.add_argument("--barcode-tag-name", default=Tags.BARCODE,
                        help=f"Tag holding the barcode read (default: {Tags.BARCODE})")
    parser.add_argument("--max-mismatches", type=int, default=Defaults.MAX_MISMATCHES,
                        help=f"Maximum mismatches for a barcode to match (default: {Defaults.MAX_MISMATCHES})")
    parser.add_argument("--min-mismatch-delta", type=int, default=Defaults.MIN_MISMATCH_DELTA,
                        help="Minimum difference between mismatches of the best and second best "
                             f"barcode (default: {Defaults.MIN_MISMATCH_DELTA})")
    parser.add_argument("--max-no-calls", type=int, default=Defaults.MAX_NO_CALLS,
                        help=f"Maximum no-calls in a barcode read (default: {Defaults.MAX_NO_CALLS})")

    parser.add_argument("-t", "--threads", type=int, default=1,
                        help="Number of worker processes for barcode classification (default: 1)")
    parser.add_argument("-d", "--diagnostics", nargs='?', const=1, type=int, choices=[1, 2],
                        help="Enable diagnostic trace logging: 1=standard (default), 2=detailed")
    parser.add_argument("-D", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("-v", "--version", action="version", version=version())

    return parser.parse_args(argv[1:])


def load_barcodes(args) -> BarcodeTable:
    if args.barcode_file:
        if not os.path.exists(args.barcode_file):
            raise ConfigurationError(f"Barcode file not found: {args.barcode_file}")
        return read_barcode_file(args.barcode_file)
    table = BarcodeTable.from_sequences(args.barcode)
    logging.info(f"Using {len(table)} barcodes of length {table.barcode_length}")
    return table


def trace_dir(args) -> str:
    if args.output_dir:
        return args.output_dir
    return os.path.dirname(os.path.abspath(args.output))


def run_decoder(demultiplexer: Demultiplexer, records, pool=None, num_chunks: int = 1):
    pbar = tqdm(desc="Processing reads", unit="read")

    total_processed = 0
    total_matched = 0
    for batch_total, batch_matched in demultiplexer.decode_records(records, pool, num_chunks):
        total_processed += batch_total
        total_matched += batch_matched
        pbar.update(batch_total)

        if total_processed > 0:
            match_rate = total_matched / total_processed
            pbar.set_description(f"Processing reads [Match rate: {match_rate:.1%}]")

    pbar.close()

    match_rate = total_matched / total_processed if total_processed else 0.0
    logging.info(f"Processed {total_processed:,} read units, match rate: {match_rate:.1%}")


def bamdecode(args, command_line: str = ""):
    parameters = DecodeParameters(args.max_mismatches, args.min_mismatch_delta, args.max_no_calls)
    table = load_barcodes(args)
    check_barcode_distances(table, parameters)
    decoder = IndexDecoder(table, parameters)

    if not os.path.exists(args.input_file):
        raise ConfigurationError(f"Input file not found: {args.input_file}")

    start_time = timeit.default_timer()

    with pysam.AlignmentFile(args.input_file, "r", check_sq=False) as infile:
        output_manager = create_output_manager(
            table, infile.header.to_dict(),
            output_file=args.output, output_dir=args.output_dir, output_format=args.output_format,
            version=__version__, command_line=command_line)
        metrics = MetricsAggregator(table, output_manager.lane_info)
        logging.info(f"Decoding lane {output_manager.lane_info.label()} "
                     f"with {parameters.max_mismatches} max mismatches")

        start_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        with output_manager, TraceLogger(enabled=bool(args.diagnostics),
                                         verbosity=args.diagnostics or 0,
                                         output_dir=trace_dir(args),
                                         start_timestamp=start_timestamp) as trace_logger:
            demultiplexer = Demultiplexer(decoder, metrics, output_manager, args.barcode_tag_name,
                                          trace_logger if args.diagnostics else None)
            # unaligned files have no @SQ lines, so read sequentially rather than by region
            records = infile.fetch(until_eof=True)

            if args.threads > 1:
                logging.info(f"Will run {args.threads} worker processes")
                with Pool(processes=args.threads, initializer=init_worker,
                          initargs=(table, parameters, args.debug)) as pool:
                    run_decoder(demultiplexer, records, pool, args.threads)
            else:
                run_decoder(demultiplexer, records)

    demultiplexer.log_summary()
    write_metrics_file(args.metrics_file, metrics, command_line)

    elapsed = timeit.default_timer() - start_time
    logging.info(f"Elapsed time: {elapsed:.2f} seconds")


def main(argv=None):
    if argv is None:
        argv = sys.argv
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        bamdecode(args, " ".join(argv))
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        sys.exit(1)
    except RecordStructureError as e:
        logging.error(f"Malformed input: {e}")
        sys.exit(1)
    except WorkerException as e:
        logging.error(f"Unexpected error in worker (see details above): {e}")
        sys.exit(1)


if __name__ == "__main__":
    main(sys.argv)
