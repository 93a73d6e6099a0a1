"""
Delimited text output of fits, decisions and gene set results.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

import pandas as pd

from rnaseq_pipeline.differential.decide import DecisionTable
from rnaseq_pipeline.differential.ebayes import FitResult
from rnaseq_pipeline.genesets.camera import GeneSetResult
from rnaseq_pipeline.ingest.annotation import GeneAnnotation
from rnaseq_pipeline.normalization.cpm import NormalizedMatrix


def safe_filename(name: str) -> str:
    """Replace characters that do not belong in a file name."""
    return re.sub(r"[^\w.\-]+", "_", name).strip("_") or "unnamed"


class TableWriter:
    """Writes pipeline results as delimited text files."""

    def __init__(
        self,
        output_dir: Path,
        sep: str = "\t",
        float_format: str = "%.6g",
    ):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.sep = sep
        self.float_format = float_format

    def write_matrix(
        self,
        matrix: pd.DataFrame,
        filename: str,
        index_label: Optional[str] = None,
    ) -> Path:
        """Write a labelled matrix.

        Parameters
        ----------
        matrix : pd.DataFrame
            Matrix to write
        filename : str
            Output filename
        index_label : str, optional
            Label for index column

        Returns
        -------
        Path
            Path to written file
        """
        path = self.output_dir / filename
        matrix.to_csv(
            path,
            sep=self.sep,
            index=True,
            index_label=index_label,
            float_format=self.float_format,
        )
        return path

    def _annotate(self, table: pd.DataFrame, annotation: Optional[GeneAnnotation]) -> pd.DataFrame:
        if annotation is None:
            return table
        extra = annotation.annotate(list(table.index))
        return pd.concat([extra.set_axis(table.index), table], axis=1)

    def write_fit(
        self,
        fit: FitResult,
        decisions: Optional[DecisionTable] = None,
        annotation: Optional[GeneAnnotation] = None,
        filename: str = "results.txt",
    ) -> Path:
        """Write the per-gene results table.

        Columns: AveExpr, Coef.<c>, t.<c>, P.value.<c>, P.value.adj.<c>,
        F, F.p.value and, with decisions, Res.<c>.
        """
        table = fit.to_dataframe()
        if decisions is not None:
            res = decisions.decisions.reindex(table.index)
            res.columns = [f"Res.{c}" for c in res.columns]
            table = pd.concat([table, res], axis=1)
        table = self._annotate(table, annotation)
        return self.write_matrix(table, filename, index_label="gene_id")

    def write_decisions(
        self,
        decisions: DecisionTable,
        filename: str = "decisions.txt",
    ) -> Path:
        """Write the gene x contrast decision matrix."""
        return self.write_matrix(decisions.decisions, filename, index_label="gene_id")

    def write_top_tables(
        self,
        fit: FitResult,
        annotation: Optional[GeneAnnotation] = None,
        prefix: str = "top_",
    ) -> dict[str, Path]:
        """Write one ranked table per contrast."""
        paths = {}
        for contrast in fit.contrast_names:
            table = self._annotate(fit.top_table(contrast), annotation)
            paths[contrast] = self.write_matrix(
                table, f"{prefix}{safe_filename(contrast)}.txt", index_label="gene_id"
            )
        return paths

    def write_gene_sets(
        self,
        results: dict[str, GeneSetResult],
        prefix: str = "genesets_",
    ) -> dict[str, Path]:
        """Write one gene set table per contrast."""
        return {
            contrast: self.write_matrix(
                result.table, f"{prefix}{safe_filename(contrast)}.txt", index_label="set"
            )
            for contrast, result in results.items()
        }

    def write_log_cpm(
        self,
        normalized: NormalizedMatrix,
        filename: str = "log_cpm.txt",
    ) -> Path:
        """Write the normalized log-CPM matrix."""
        return self.write_matrix(normalized.log_cpm, filename, index_label="gene_id")

    def write_sample_info(
        self,
        normalized: NormalizedMatrix,
        filename: str = "samples.txt",
    ) -> Path:
        """Write library sizes and normalization factors."""
        info = pd.DataFrame({
            "lib_size": normalized.lib_size,
            "norm_factors": normalized.norm_factors,
            "effective_lib_size": normalized.effective_lib_size,
        })
        return self.write_matrix(info, filename, index_label="sample")
