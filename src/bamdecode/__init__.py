"""bamdecode: Barcode decoding and demultiplexing for unaligned BAM files."""

__version__ = "0.1.0"

# Re-export key functions and classes that might be useful for programmatic access
from .barcodes import BarcodeTable, read_barcode_file
from .decoder import IndexDecoder, classify
from .metrics import MetricsAggregator, write_metrics_file
from .models import ConfigurationError, DecodeParameters, NamedBarcode, RecordStructureError

__all__ = [
    "BarcodeTable",
    "read_barcode_file",
    "IndexDecoder",
    "classify",
    "MetricsAggregator",
    "write_metrics_file",
    "ConfigurationError",
    "DecodeParameters",
    "NamedBarcode",
    "RecordStructureError",
]
