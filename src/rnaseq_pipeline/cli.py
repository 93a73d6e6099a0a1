"""
Command-line interface for the RNA-seq differential expression pipeline.

Usage:
    rnaseq-pipeline download --accession GSE63310 --dest data/
    rnaseq-pipeline run --counts data/ --samples samples.tsv --contrast BasalvsLP="Basal - LP"
    rnaseq-pipeline run --config analysis.yaml --download
    rnaseq-pipeline normalize --counts data/ --output normalized/
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("rnaseq_pipeline")


def _setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def _parse_contrasts(values: Optional[list[str]]) -> dict[str, str]:
    """Turn NAME=EXPR (or bare EXPR) arguments into a contrast mapping."""
    contrasts = {}
    for value in values or []:
        if "=" in value:
            name, expression = value.split("=", 1)
            contrasts[name.strip()] = expression.strip()
        else:
            contrasts["".join(value.split())] = value.strip()
    return contrasts


def _column_arg(value: str) -> int | str:
    """Column given as a zero-based position or a header name."""
    try:
        return int(value)
    except ValueError:
        return value


def _ingest_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides = {}
    if args.gene_column is not None:
        overrides["gene_column"] = args.gene_column
    if args.count_column is not None:
        overrides["count_column"] = args.count_column
    if args.pattern is not None:
        overrides["pattern"] = args.pattern
    return overrides


def _build_run_config(args: argparse.Namespace, definition: dict[str, Any]):
    """Merge the YAML config section with command-line overrides."""
    from rnaseq_pipeline.core.config import Config

    d = dict(definition.get("config", {}) or {})
    for section in ("ingest", "filter", "design", "fit", "genesets"):
        d[section] = dict(d.get(section, {}) or {})

    contrasts = _parse_contrasts(args.contrast)
    if contrasts:
        d["contrasts"] = contrasts
    if args.p_value is not None:
        d["p_value"] = args.p_value
    if args.lfc is not None:
        d["lfc"] = args.lfc
    if args.treat_lfc is not None:
        d["treat_lfc"] = args.treat_lfc
    if args.output:
        d["output_dir"] = args.output
    d["ingest"].update(_ingest_overrides(args))
    if args.cpm_threshold is not None:
        d["filter"]["cpm_threshold"] = args.cpm_threshold
    if args.min_samples is not None:
        d["filter"]["min_samples"] = args.min_samples
    if args.keep_lib_sizes:
        d["filter"]["keep_lib_sizes"] = True
    if args.group_col is not None:
        d["design"]["group_col"] = args.group_col
    if args.batch_col is not None:
        d["design"]["batch_cols"] = [c for c in args.batch_col if c.lower() != "none"]
    if args.estimate_cor:
        d["genesets"]["inter_gene_cor"] = None
    if args.verbose:
        d["verbose"] = True

    return Config.from_dict(d)


def cmd_download(args: argparse.Namespace) -> int:
    """Download and unpack a GEO raw count archive."""
    from rnaseq_pipeline.ingest import fetch_geo_counts

    files = fetch_geo_counts(args.dest, accession=args.accession, overwrite=args.overwrite)
    logger.info("Downloaded %d files to %s", len(files), args.dest)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full differential expression analysis."""
    import yaml
    from rnaseq_pipeline.genesets import read_gmt
    from rnaseq_pipeline.ingest import (
        CountFileLoader,
        GeneAnnotation,
        SampleDesign,
        fetch_geo_counts,
    )
    from rnaseq_pipeline.pipeline import Pipeline

    definition: dict[str, Any] = {}
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            logger.error("Config file not found: %s", config_path)
            return 1
        with open(config_path) as f:
            definition = yaml.safe_load(f) or {}

    config = _build_run_config(args, definition)

    counts_dir = args.counts or definition.get("counts")
    samples_path = args.samples or definition.get("samples")
    if not counts_dir or not samples_path:
        logger.error("Both a count directory (--counts) and a sample table (--samples) are required")
        return 1

    if args.download:
        fetch_geo_counts(counts_dir, accession=args.accession)

    counts = CountFileLoader(config.ingest).load_directory(counts_dir)
    samples = SampleDesign.from_table(samples_path, group_col=config.design.group_col)

    gene_sets = None
    gmt_path = args.gene_sets or definition.get("gene_sets")
    if gmt_path:
        gene_sets = read_gmt(gmt_path)

    annotation = None
    annotation_path = args.annotation or definition.get("annotation")
    if annotation_path:
        annotation = GeneAnnotation.from_table(annotation_path, id_col=args.annotation_id_col)

    pipeline = Pipeline(config=config, output_dir=config.output_dir or Path("results"))
    result = pipeline.run(counts, samples, gene_sets=gene_sets, annotation=annotation)

    logger.info("Decisions (adj. p < %g):\n%s", config.p_value, result.decisions.summary())
    if result.treat_decisions is not None:
        logger.info(
            "treat decisions (|logFC| > %g):\n%s",
            config.treat_lfc, result.treat_decisions.summary(),
        )
    logger.info("Results written to %s", pipeline.output_dir)
    return 0


def cmd_normalize(args: argparse.Namespace) -> int:
    """Compute library sizes, normalization factors and log-CPM only."""
    from rnaseq_pipeline.core.config import IngestConfig, NormalizationConfig
    from rnaseq_pipeline.export import TableWriter
    from rnaseq_pipeline.ingest import CountFileLoader
    from rnaseq_pipeline.normalization import Normalizer

    ingest = IngestConfig(**_ingest_overrides(args))
    counts = CountFileLoader(ingest).load_directory(args.counts)
    config = NormalizationConfig(method=args.method, prior_count=args.prior_count)
    normalized = Normalizer(config).normalize(counts)

    writer = TableWriter(Path(args.output or "."))
    log_cpm_path = writer.write_log_cpm(normalized)
    samples_path = writer.write_sample_info(normalized)
    logger.info("log-CPM saved to %s, sample factors to %s", log_cpm_path, samples_path)
    return 0


def _add_ingest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--gene-column", type=_column_arg,
                        help="Gene id column of count files (zero-based position or header name)")
    parser.add_argument("--count-column", type=_column_arg,
                        help="Count column of count files (position or header name; default 'Count' header)")
    parser.add_argument("--pattern", help="Glob selecting count files (default '*.txt*')")


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    from rnaseq_pipeline.ingest import DEFAULT_ACCESSION

    parser = argparse.ArgumentParser(
        prog="rnaseq-pipeline",
        description="RNA-seq differential expression with voom, linear models and empirical Bayes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-file", type=str, help="Log file path")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- download ---
    p_dl = subparsers.add_parser("download", help="Download a GEO raw count archive")
    p_dl.add_argument("--accession", default=DEFAULT_ACCESSION, help="GEO series accession")
    p_dl.add_argument("--dest", default="data", help="Target directory")
    p_dl.add_argument("--overwrite", action="store_true", help="Download even if present")
    p_dl.set_defaults(func=cmd_download)

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run the full analysis")
    p_run.add_argument("--config", help="YAML file with a 'config' section and input paths")
    p_run.add_argument("--counts", help="Directory of per-sample count files")
    p_run.add_argument("--samples", help="Sample table (sample, group, lane columns)")
    p_run.add_argument("--download", action="store_true",
                       help="Download the GEO archive into the count directory first")
    p_run.add_argument("--accession", default=DEFAULT_ACCESSION, help="GEO series for --download")
    p_run.add_argument("--contrast", action="append",
                       help="Contrast as NAME=EXPR or EXPR (repeatable; all pairs when omitted)")
    p_run.add_argument("--p-value", type=float, help="Adjusted p-value cutoff")
    p_run.add_argument("--lfc", type=float, help="Minimum |log2 fold change| for decisions")
    p_run.add_argument("--treat-lfc", type=float, help="Also test against this log2 fold-change threshold")
    p_run.add_argument("--cpm-threshold", type=float, help="CPM threshold of the expression filter")
    p_run.add_argument("--min-samples", type=int, help="Samples that must pass the CPM threshold")
    p_run.add_argument("--keep-lib-sizes", action="store_true",
                       help="Keep unfiltered library sizes after filtering")
    p_run.add_argument("--group-col", help="Group column of the sample table")
    p_run.add_argument("--batch-col", action="append",
                       help="Batch column of the sample table (repeatable; 'none' for no batch)")
    p_run.add_argument("--gene-sets", help="GMT file of gene sets")
    p_run.add_argument("--estimate-cor", action="store_true",
                       help="Estimate inter-gene correlation per gene set")
    p_run.add_argument("--annotation", help="Gene annotation table")
    p_run.add_argument("--annotation-id-col", default="gene_id", help="Gene id column of the annotation")
    p_run.add_argument("--output", "-o", help="Output directory (default 'results')")
    _add_ingest_args(p_run)
    p_run.set_defaults(func=cmd_run)

    # --- normalize ---
    p_norm = subparsers.add_parser("normalize", help="Compute log-CPM and normalization factors")
    p_norm.add_argument("--counts", required=True, help="Directory of per-sample count files")
    p_norm.add_argument("--method", default="TMM", choices=["TMM", "none"])
    p_norm.add_argument("--prior-count", type=float, default=0.25)
    p_norm.add_argument("--output", "-o", help="Output directory")
    _add_ingest_args(p_norm)
    p_norm.set_defaults(func=cmd_normalize)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    from rnaseq_pipeline.exceptions import RNASeqPipelineError

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    _setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        return args.func(args)
    except RNASeqPipelineError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except OSError as e:
        logger.error("I/O failure: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
