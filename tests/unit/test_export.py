"""Tests for table and JSON export."""

import json

import numpy as np
import pandas as pd


class TestTableWriter:
    """Test delimited table output."""

    def test_results_table(self, temp_dir, pipeline_result):
        from rnaseq_pipeline.export import TableWriter

        writer = TableWriter(temp_dir)
        path = writer.write_fit(pipeline_result.fit, pipeline_result.decisions)

        table = pd.read_csv(path, sep="\t", index_col=0)
        assert path.name == "results.txt"
        assert table.index.name == "gene_id"
        assert len(table) == pipeline_result.fit.n_genes
        for column in ("AveExpr", "Coef.BasalvsLP", "t.LPvsML", "P.value.adj.BasalvsML",
                       "F", "F.p.value", "Res.BasalvsLP"):
            assert column in table.columns
        assert set(table["Res.BasalvsLP"].unique()) <= {-1, 0, 1}

    def test_annotation_columns_first(self, temp_dir, pipeline_result):
        from rnaseq_pipeline.export import TableWriter
        from rnaseq_pipeline.ingest import GeneAnnotation

        genes = pipeline_result.fit.gene_ids
        annotation = GeneAnnotation.from_frame(pd.DataFrame({
            "gene_id": genes[:10],
            "SYMBOL": [f"Sym{i}" for i in range(10)],
        }))

        path = TableWriter(temp_dir).write_fit(pipeline_result.fit, annotation=annotation)
        table = pd.read_csv(path, sep="\t", index_col=0)

        assert table.columns[0] == "SYMBOL"
        assert table.loc[genes[3], "SYMBOL"] == "Sym3"
        assert table["SYMBOL"].isna().sum() == len(genes) - 10

    def test_decisions_and_top_tables(self, temp_dir, pipeline_result):
        from rnaseq_pipeline.export import TableWriter

        writer = TableWriter(temp_dir)
        decisions_path = writer.write_decisions(pipeline_result.decisions)
        top_paths = writer.write_top_tables(pipeline_result.fit)

        decisions = pd.read_csv(decisions_path, sep="\t", index_col=0)
        assert list(decisions.columns) == ["BasalvsLP", "BasalvsML", "LPvsML"]
        assert sorted(p.name for p in top_paths.values()) == [
            "top_BasalvsLP.txt", "top_BasalvsML.txt", "top_LPvsML.txt",
        ]
        top = pd.read_csv(top_paths["BasalvsLP"], sep="\t", index_col=0)
        assert list(top.columns) == ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]

    def test_sample_info(self, temp_dir, pipeline_result):
        from rnaseq_pipeline.export import TableWriter

        path = TableWriter(temp_dir).write_sample_info(pipeline_result.normalized)
        info = pd.read_csv(path, sep="\t", index_col=0)

        assert list(info.columns) == ["lib_size", "norm_factors", "effective_lib_size"]
        np.testing.assert_allclose(
            info["effective_lib_size"], info["lib_size"] * info["norm_factors"], rtol=1e-5
        )

    def test_safe_filename(self):
        from rnaseq_pipeline.export import safe_filename

        assert safe_filename("(LP+ML)/2-Basal") == "LP_ML_2-Basal"
        assert safe_filename("///") == "unnamed"


class TestJSONWriter:
    """Test JSON output."""

    def test_summary_with_numpy_values(self, temp_dir):
        from rnaseq_pipeline.export import JSONWriter

        path = JSONWriter(temp_dir).write_summary({
            "n_kept_genes": np.int64(1850),
            "s2_prior": np.float64(0.04),
            "missing": np.float32("nan"),
            "norm_factors": np.array([0.9, 1.1]),
        })

        with open(path) as f:
            data = json.load(f)
        assert data["n_kept_genes"] == 1850
        assert data["missing"] is None
        assert data["norm_factors"] == [0.9, 1.1]
        assert data["_metadata"]["generator"].startswith("rnaseq-pipeline")

    def test_without_metadata(self, temp_dir):
        from rnaseq_pipeline.export import JSONWriter

        path = JSONWriter(temp_dir, include_metadata=False).write_summary({"a": 1})

        with open(path) as f:
            assert json.load(f) == {"a": 1}

    def test_trend(self, temp_dir, pipeline_result):
        from rnaseq_pipeline.export import JSONWriter

        path = JSONWriter(temp_dir).write_trend(pipeline_result.voom)

        with open(path) as f:
            data = json.load(f)
        assert len(data["trend"]["x"]) == len(data["trend"]["y"])
        assert len(data["genes"]["gene_id"]) == pipeline_result.counts.n_genes
