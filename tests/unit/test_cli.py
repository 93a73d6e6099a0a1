"""Unit tests for the command-line interface.

Tests parser construction, argument handling, and command dispatch on
small local inputs (no network access).
"""

from __future__ import annotations

import json

import pytest
import pandas as pd
import yaml

from rnaseq_pipeline.cli import _parse_contrasts, build_parser, main


# ===========================================================================
# Parser construction
# ===========================================================================

class TestBuildParser:
    """Tests for argument parser construction."""

    def test_parser_has_all_subcommands(self):
        parser = build_parser()
        subparsers_action = None
        for action in parser._subparsers._actions:
            if hasattr(action, "_parser_class"):
                subparsers_action = action
                break
        assert subparsers_action is not None
        assert set(subparsers_action.choices.keys()) == {"download", "run", "normalize"}

    def test_no_command_returns_zero(self):
        """No subcommand should print help and return 0."""
        assert main([]) == 0

    def test_run_args(self):
        parser = build_parser()
        args = parser.parse_args([
            "run", "--counts", "data", "--samples", "samples.tsv",
            "--contrast", "BasalvsLP=Basal - LP", "--contrast", "LP - ML",
            "--treat-lfc", "1", "--batch-col", "none", "-o", "out",
        ])
        assert args.counts == "data"
        assert args.contrast == ["BasalvsLP=Basal - LP", "LP - ML"]
        assert args.treat_lfc == 1.0
        assert args.batch_col == ["none"]
        assert args.output == "out"

    def test_column_args(self):
        args = build_parser().parse_args(
            ["normalize", "--counts", "data", "--count-column", "Count", "--gene-column", "0"]
        )
        assert args.count_column == "Count"
        assert args.gene_column == 0

    def test_download_defaults(self):
        args = build_parser().parse_args(["download"])
        assert args.accession == "GSE63310"
        assert args.dest == "data"
        assert args.overwrite is False

    def test_normalize_requires_counts(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["normalize"])


class TestParseContrasts:
    """Tests for contrast arguments."""

    def test_named_and_bare(self):
        contrasts = _parse_contrasts(["BasalvsLP = Basal - LP", "(LP + ML)/2 - Basal"])
        assert contrasts == {
            "BasalvsLP": "Basal - LP",
            "(LP+ML)/2-Basal": "(LP + ML)/2 - Basal",
        }

    def test_none(self):
        assert _parse_contrasts(None) == {}


# ===========================================================================
# Command execution
# ===========================================================================

class TestCommands:
    """Tests for subcommand execution."""

    def test_run(self, temp_dir, counts_dir, samples_file):
        out = temp_dir / "results"
        code = main([
            "run", "--counts", str(counts_dir), "--samples", str(samples_file),
            "--contrast", "BasalvsLP=Basal - LP", "--treat-lfc", "1", "-o", str(out),
        ])

        assert code == 0
        assert (out / "results.txt").exists()
        assert (out / "results_treat.txt").exists()

    def test_run_from_yaml(self, temp_dir, counts_dir, samples_file):
        from rnaseq_pipeline.genesets import write_gmt

        gmt = write_gmt({"BASAL_UP": [f"g{i:04d}" for i in range(50)]}, temp_dir / "sets.gmt")
        config_path = temp_dir / "analysis.yaml"
        with open(config_path, "w") as f:
            yaml.safe_dump({
                "counts": str(counts_dir),
                "samples": str(samples_file),
                "gene_sets": str(gmt),
                "config": {
                    "contrasts": {"BasalvsML": "Basal - ML"},
                    "filter": {"min_samples": 3},
                },
            }, f)
        out = temp_dir / "yaml_out"

        code = main(["run", "--config", str(config_path), "-o", str(out)])

        assert code == 0
        assert (out / "genesets_BasalvsML.txt").exists()
        with open(out / "config.json") as f:
            saved = json.load(f)
        assert saved["contrasts"] == {"BasalvsML": "Basal - ML"}

    def test_run_yaml_sections_only(self, temp_dir, counts_dir, samples_file):
        config_path = temp_dir / "sections.yaml"
        with open(config_path, "w") as f:
            yaml.safe_dump({
                "counts": str(counts_dir),
                "samples": str(samples_file),
                "config": {
                    "contrasts": {"BasalvsLP": "Basal - LP"},
                    "decision": {"p_value": 0.01},
                    "fit": {"treat_lfc": 1.0},
                },
            }, f)
        out = temp_dir / "sections_out"

        code = main(["run", "--config", str(config_path), "-o", str(out)])

        assert code == 0
        assert (out / "results_treat.txt").exists()
        with open(out / "config.json") as f:
            saved = json.load(f)
        assert saved["decision"]["p_value"] == 0.01
        assert saved["fit"]["treat_lfc"] == 1.0

    def test_run_missing_inputs(self, temp_dir):
        assert main(["run", "-o", str(temp_dir)]) == 1

    def test_run_missing_config_file(self, temp_dir):
        assert main(["run", "--config", str(temp_dir / "missing.yaml")]) == 1

    def test_run_bad_contrast_returns_error(self, temp_dir, counts_dir, samples_file):
        code = main([
            "run", "--counts", str(counts_dir), "--samples", str(samples_file),
            "--contrast", "Stem - LP", "-o", str(temp_dir / "bad"),
        ])
        assert code == 1

    def test_normalize(self, temp_dir, counts_dir):
        out = temp_dir / "norm"
        code = main(["normalize", "--counts", str(counts_dir), "-o", str(out)])

        assert code == 0
        log_cpm = pd.read_csv(out / "log_cpm.txt", sep="\t", index_col=0)
        assert log_cpm.shape == (2000, 9)
        samples = pd.read_csv(out / "samples.txt", sep="\t", index_col=0)
        assert list(samples.index) == [f"S{i}" for i in range(1, 10)]
