"""Pytest configuration and fixtures."""

import pytest
import numpy as np
import pandas as pd
from pathlib import Path
import tempfile

from rnaseq_pipeline.ingest import CountMatrix, SampleDesign

GROUPS = ["LP", "ML", "Basal", "Basal", "ML", "LP", "Basal", "ML", "LP"]
LANES = ["L004", "L004", "L004", "L006", "L006", "L006", "L006", "L008", "L008"]
SAMPLES = [f"S{i}" for i in range(1, 10)]

N_GENES = 2000
N_UP = 100  # genes 0-99 up in Basal
N_DOWN = 100  # genes 100-199 down in Basal
N_SILENT = 150  # last genes never expressed


def simulate_counts(
    n_genes: int = N_GENES,
    lib_sizes=None,
    seed: int = 42,
) -> pd.DataFrame:
    """Negative binomial counts with Basal-specific changes and silent genes."""
    rng = np.random.RandomState(seed)
    if lib_sizes is None:
        lib_sizes = rng.uniform(1.5e6, 2.5e6, len(SAMPLES))
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)

    proportions = rng.gamma(shape=0.6, scale=1.0, size=n_genes)
    proportions[-N_SILENT:] = 0.0
    proportions /= proportions.sum()

    fold = np.ones((n_genes, len(SAMPLES)))
    basal = np.array([g == "Basal" for g in GROUPS])
    fold[:N_UP, basal] = 4.0
    fold[N_UP:N_UP + N_DOWN, basal] = 0.25

    mu = proportions[:, None] * fold * lib_sizes[None, :]
    dispersion = 0.05
    lam = rng.gamma(shape=1 / dispersion, scale=mu * dispersion + 1e-12)
    counts = rng.poisson(lam)

    return pd.DataFrame(
        counts,
        index=[f"g{i:04d}" for i in range(n_genes)],
        columns=SAMPLES,
    )


@pytest.fixture
def sample_table():
    """Sample sheet with group and lane, as in the mouse mammary experiment."""
    return pd.DataFrame({"group": GROUPS, "lane": LANES}, index=pd.Index(SAMPLES, name="sample"))


@pytest.fixture
def sample_design(sample_table):
    return SampleDesign(sample_table)


@pytest.fixture
def count_frame():
    """Simulated raw counts (2000 genes x 9 samples)."""
    return simulate_counts()


@pytest.fixture
def count_matrix(count_frame):
    return CountMatrix(count_frame)


@pytest.fixture
def small_counts():
    """Nine samples with libraries of 10,000-18,000 reads, including silent genes."""
    lib_sizes = [10000, 12000, 11000, 13000, 15000, 14000, 16000, 18000, 17000]
    return CountMatrix(simulate_counts(n_genes=1000, lib_sizes=lib_sizes, seed=7))


@pytest.fixture
def gene_sets():
    """Gene sets: one shifted up in Basal, one unchanged, one unmatched."""
    rng = np.random.RandomState(0)
    random_members = rng.choice(np.arange(500, N_GENES - N_SILENT), size=50, replace=False)
    return {
        "BASAL_UP": [f"g{i:04d}" for i in range(50)],
        "RANDOM": [f"g{i:04d}" for i in sorted(random_members)],
        "NOT_MEASURED": ["unknown_1", "unknown_2"],
    }


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def counts_dir(temp_dir, count_frame):
    """Directory with one tab-delimited count file per sample."""
    data_dir = temp_dir / "counts"
    data_dir.mkdir()
    for sample in count_frame.columns:
        table = pd.DataFrame({
            "GeneID": count_frame.index,
            "Count": count_frame[sample].to_numpy(),
        })
        table.to_csv(data_dir / f"{sample}.txt", sep="\t", index=False)
    return data_dir


@pytest.fixture
def samples_file(temp_dir, sample_table):
    """Sample table written as TSV."""
    path = temp_dir / "samples.tsv"
    sample_table.reset_index().to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def pipeline_result(count_matrix, sample_design):
    """In-memory run with all three pairwise contrasts and a treat threshold."""
    from rnaseq_pipeline import Config, Pipeline

    config = Config(
        contrasts={
            "BasalvsLP": "Basal - LP",
            "BasalvsML": "Basal - ML",
            "LPvsML": "LP - ML",
        },
        treat_lfc=1.0,
    )
    return Pipeline(config).run(count_matrix, sample_design)
