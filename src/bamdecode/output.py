#!/usr/bin/env python3

"""
Output sinks for decoded records.

Two layouts are supported: a single merged output file (with companion files for
quality-failed and control reads) or a directory tree with one pass/fail pair of
files per barcode. Every sink is opened up front and closed when the manager exits,
whether or not decoding succeeded.
"""

import copy
import logging
import os
from typing import Dict, List, Optional

import pysam

from .barcodes import BarcodeTable
from .constants import Destination, OutputFormat, SampleId, Tags
from .models import ConfigurationError, LaneInfo, NamedBarcode

PROGRAM_NAME = "bamdecode"


def lane_info_from_header(header: Dict) -> LaneInfo:
    """
    Find flow cell, lane and run folder from the read groups of an input header.

    Read group ids are expected to look like FCID.LANE; the run folder comes from an
    'rf' attribute, which is removed from the header since it is not carried forward.
    """
    info = LaneInfo()
    for rg in header.get("RG", []):
        rg_id = str(rg.get("ID", ""))
        if "." in rg_id:
            fields = rg_id.split(".")
            info.flow_cell_id, info.lane = fields[0], fields[1]
        run_folder = rg.pop(Tags.RUN_FOLDER, None)
        if run_folder:
            info.run_folder = str(run_folder)
    return info


def read_groups_for_barcode(read_groups: List[Dict], barcode: NamedBarcode) -> List[Dict]:
    """Clone input read groups for one barcode, suffixing ids and adding sample metadata"""
    result = []
    for rg in read_groups:
        new_rg = dict(rg)
        new_rg["ID"] = f"{rg['ID']}.{barcode.token}"
        if barcode.library_name:
            new_rg["LB"] = barcode.library_name
        if barcode.sample_name:
            new_rg["SM"] = barcode.sample_name
        if barcode.description:
            new_rg["DS"] = barcode.description
        if barcode.insert_size is not None and barcode.insert_size > -1:
            new_rg["PI"] = barcode.insert_size
        if barcode.sequencing_center:
            new_rg["CN"] = barcode.sequencing_center
        for tag, value in barcode.tags.items():
            if value:
                new_rg[tag] = value
        result.append(new_rg)
    return result


def add_program_record(header: Dict, version: str, command_line: str) -> Dict:
    programs = header.setdefault("PG", [])
    existing = {pg.get("ID") for pg in programs}
    program_id = PROGRAM_NAME
    suffix = 0
    while program_id in existing:
        suffix += 1
        program_id = f"{PROGRAM_NAME}.{suffix}"

    record = {"ID": program_id, "PN": PROGRAM_NAME, "VN": version}
    if command_line:
        record["CL"] = command_line
    if programs:
        record["PP"] = programs[-1]["ID"]
    programs.append(record)
    return header


class OutputManager:
    """
    Owns every output sink for a run.

    Subclasses decide the layout; the base class handles header construction and the
    open/close lifecycle. Use as a context manager so that sinks are always closed.
    """

    def __init__(self, table: BarcodeTable, input_header: Dict, output_format: str,
                 version: str = "", command_line: str = ""):
        self.table = table
        self.output_format = output_format
        self.version = version
        self.command_line = command_line

        self.base_header = copy.deepcopy(input_header)
        self.lane_info = lane_info_from_header(self.base_header)
        input_read_groups = self.base_header.get("RG", [])

        self.read_groups: Dict[str, List[Dict]] = {}
        for barcode in table.entries():
            self.read_groups[barcode.token] = read_groups_for_barcode(input_read_groups, barcode)

        self._writers: Dict[str, pysam.AlignmentFile] = {}
        self.paths: Dict[str, str] = {}

    def __enter__(self):
        try:
            self._open_sinks()
        except Exception:
            self.close_all()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        # a close failure must not mask the error already unwinding
        self.close_all(raise_errors=exc_type is None)

    def make_header(self, read_groups: List[Dict]) -> Dict:
        header = copy.deepcopy(self.base_header)
        header["RG"] = copy.deepcopy(read_groups)
        if not header["RG"]:
            del header["RG"]
        return add_program_record(header, self.version, self.command_line)

    def all_read_groups(self) -> List[Dict]:
        return [rg for barcode in self.table.entries() for rg in self.read_groups[barcode.token]]

    def _open(self, key: str, path: str, read_groups: List[Dict]):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logging.debug(f"Opening output file {path}")
        self._writers[key] = pysam.AlignmentFile(path, OutputFormat.write_mode(self.output_format),
                                                 header=self.make_header(read_groups))
        self.paths[key] = path

    def _open_sinks(self):
        raise NotImplementedError

    def sink_key(self, destination: Destination, token: str) -> str:
        raise NotImplementedError

    def path_for(self, destination: Destination, token: str) -> str:
        return self.paths[self.sink_key(destination, token)]

    def write(self, destination: Destination, token: str, records: List):
        """Write all records of a unit to one sink"""
        writer = self._writers[self.sink_key(destination, token)]
        for record in records:
            writer.write(record)

    def close_all(self, raise_errors: bool = True):
        """Close every sink, continuing past failures so no file is left open"""
        errors = []
        for key, writer in self._writers.items():
            try:
                writer.close()
            except Exception as e:
                logging.error(f"Error closing output file {self.paths.get(key, key)}: {e}")
                errors.append(e)
        self._writers.clear()
        if errors and raise_errors:
            raise errors[0]


class SingleOutputManager(OutputManager):
    """One merged output plus companion files for quality-failed and control reads"""

    def __init__(self, output_file: str, table: BarcodeTable, input_header: Dict, **kwargs):
        output_format = OutputFormat.SAM if output_file.lower().endswith(".sam") else OutputFormat.BAM
        super().__init__(table, input_header, output_format, **kwargs)
        self.output_file = output_file

    def _companion_path(self, suffix: str) -> str:
        stem, ext = os.path.splitext(self.output_file)
        return f"{stem}_{suffix}{ext or '.' + self.output_format}"

    def _open_sinks(self):
        lane = self.lane_info.label()
        read_groups = self.all_read_groups()
        self._open(Destination.PASSED.name, self.output_file, read_groups)
        self._open(Destination.FILTERED.name, self._companion_path(f"{lane}_non_pf"), read_groups)
        self._open(Destination.CONTROL.name, self._companion_path(f"Controls_{lane}"), read_groups)

    def sink_key(self, destination: Destination, token: str) -> str:
        return destination.name


class SplitOutputManager(OutputManager):
    """One pass and one fail file per barcode, including undetermined, plus a control file"""

    def __init__(self, output_dir: str, table: BarcodeTable, input_header: Dict,
                 output_format: str = OutputFormat.BAM, **kwargs):
        super().__init__(table, input_header, output_format, **kwargs)
        self.output_dir = output_dir
        self._check_flow_cells()

    def _check_flow_cells(self):
        fcid = self.lane_info.flow_cell_id
        if fcid == SampleId.UNKNOWN:
            return
        for barcode in self.table:
            if barcode.flow_cell_id and barcode.flow_cell_id != fcid:
                raise ConfigurationError(
                    f"FCID \"{barcode.flow_cell_id}\" from barcode file differs from FCID in "
                    f"current sample: \"{fcid}\"")

    def barcode_filename(self, barcode: NamedBarcode, filter_label: str) -> str:
        info = self.lane_info
        if barcode.is_undetermined:
            return os.path.join(self.output_dir, "Undetermined", info.run_folder,
                                f"Undetermined_{info.label()}_{filter_label}.{self.output_format}")

        project = barcode.project or SampleId.UNKNOWN
        library = barcode.library_name or barcode.name
        fcid = barcode.flow_cell_id or info.flow_cell_id
        lane = barcode.lane or info.lane
        safe_library = "".join(c if c.isalnum() or c in "._-" else "_" for c in library)
        return os.path.join(self.output_dir, project, info.run_folder,
                            f"{safe_library}_{fcid}_{lane}_{barcode.sequence}_{filter_label}.{self.output_format}")

    def control_filename(self) -> str:
        info = self.lane_info
        return os.path.join(self.output_dir, "Undetermined", info.run_folder,
                            f"Controls_{info.label()}.{self.output_format}")

    def _open_sinks(self):
        os.makedirs(self.output_dir, exist_ok=True)
        for barcode in self.table.entries():
            read_groups = self.read_groups[barcode.token]
            self._open(self.sink_key(Destination.PASSED, barcode.token),
                       self.barcode_filename(barcode, "pf"), read_groups)
            self._open(self.sink_key(Destination.FILTERED, barcode.token),
                       self.barcode_filename(barcode, "non_pf"), read_groups)
        self._open(Destination.CONTROL.name, self.control_filename(), self.all_read_groups())
        logging.info(f"Opened {len(self._writers)} output files under {self.output_dir}")

    def sink_key(self, destination: Destination, token: str) -> str:
        if destination is Destination.CONTROL:
            return destination.name
        return f"{destination.name}:{token}"


def create_output_manager(table: BarcodeTable, input_header: Dict,
                          output_file: Optional[str] = None, output_dir: Optional[str] = None,
                          output_format: str = OutputFormat.BAM,
                          version: str = "", command_line: str = "") -> OutputManager:
    if (output_file is None) == (output_dir is None):
        raise ConfigurationError("Exactly one of an output file or an output directory is required")
    if output_file is not None:
        return SingleOutputManager(output_file, table, input_header,
                                   version=version, command_line=command_line)
    return SplitOutputManager(output_dir, table, input_header, output_format,
                              version=version, command_line=command_line)
