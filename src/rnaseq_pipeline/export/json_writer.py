"""
JSON output of run summaries and the mean-variance trend.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from rnaseq_pipeline.differential.voom import VoomResult


class NumpyEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy and pandas types."""

    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return None if np.isnan(obj) else float(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, (pd.Series, pd.Index)):
            return obj.tolist()
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


class JSONWriter:
    """Writes run metadata as JSON."""

    def __init__(
        self,
        output_dir: Path,
        pretty_print: bool = True,
        include_metadata: bool = True,
    ):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.pretty_print = pretty_print
        self.include_metadata = include_metadata

    def _add_metadata(self, data: dict) -> dict:
        """Add generation metadata."""
        if self.include_metadata:
            from rnaseq_pipeline import __version__

            data["_metadata"] = {
                "generated_at": datetime.now().isoformat(),
                "generator": f"rnaseq-pipeline {__version__}",
            }
        return data

    def _write_json(self, data: Any, filename: str) -> Path:
        """Write JSON file."""
        path = self.output_dir / filename
        with open(path, "w") as f:
            if self.pretty_print:
                json.dump(data, f, indent=2, cls=NumpyEncoder)
            else:
                json.dump(data, f, cls=NumpyEncoder)
        return path

    def write_summary(
        self,
        summary: dict[str, Any],
        filename: str = "summary.json",
    ) -> Path:
        """Write run metrics."""
        return self._write_json(self._add_metadata(dict(summary)), filename)

    def write_trend(
        self,
        voom: VoomResult,
        filename: str = "voom_trend.json",
    ) -> Path:
        """Write the mean-variance trend and per-gene points."""
        usable = voom.sx.notna()
        data = {
            "trend": {"x": voom.trend_x, "y": voom.trend_y},
            "genes": {
                "gene_id": [str(g) for g in voom.sx.index[usable]],
                "sx": voom.sx[usable].to_numpy(),
                "sy": voom.sy[usable].to_numpy(),
            },
        }
        return self._write_json(self._add_metadata(data), filename)
