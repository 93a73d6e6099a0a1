"""
Result export.
"""

from rnaseq_pipeline.export.table_writer import TableWriter, safe_filename
from rnaseq_pipeline.export.json_writer import JSONWriter, NumpyEncoder

__all__ = [
    "TableWriter",
    "safe_filename",
    "JSONWriter",
    "NumpyEncoder",
]
