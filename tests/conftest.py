from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import logging

import numpy as np
import pandas as pd
import pytest
import anndata as ad


N_PER_TYPE = 40
CELL_TYPES = ("A", "B", "C")
N_HOUSEKEEPING = 270
N_MARKERS_PER_TYPE = 10
MARKER_MEAN = 20.0
SIZE = 5.0


def _nb(rng: np.random.Generator, mean: np.ndarray, size: float) -> np.ndarray:
    return rng.negative_binomial(size, size / (size + mean))


def simulate_counts(seed: int = 0) -> ad.AnnData:
    """Negative binomial counts with cell-type-specific marker genes."""
    rng = np.random.default_rng(seed)

    n_cells = N_PER_TYPE * len(CELL_TYPES)
    labels = np.repeat(CELL_TYPES, N_PER_TYPE)
    depth = rng.lognormal(0.0, 0.3, size=n_cells)

    hk_means = np.exp(rng.uniform(np.log(0.5), np.log(50.0), size=N_HOUSEKEEPING))
    housekeeping = _nb(rng, np.outer(depth, hk_means), SIZE)

    markers = np.zeros((n_cells, N_MARKERS_PER_TYPE * len(CELL_TYPES)), dtype=np.int64)
    marker_names = []
    for t, cell_type in enumerate(CELL_TYPES):
        in_type = labels == cell_type
        cols = slice(t * N_MARKERS_PER_TYPE, (t + 1) * N_MARKERS_PER_TYPE)
        mean = np.outer(depth[in_type], np.full(N_MARKERS_PER_TYPE, MARKER_MEAN))
        markers[in_type, cols] = _nb(rng, mean, SIZE)
        marker_names += [f"Marker{cell_type}{i}" for i in range(N_MARKERS_PER_TYPE)]

    counts = np.hstack([markers, housekeeping]).astype(np.float64)
    genes = marker_names + [f"Gene{i:03d}" for i in range(N_HOUSEKEEPING)]

    return ad.AnnData(
        X=counts,
        obs=pd.DataFrame(
            {"cell_type": pd.Categorical(labels)},
            index=[f"cell{i:03d}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=genes),
    )


@pytest.fixture
def counts_adata() -> ad.AnnData:
    return simulate_counts()


@pytest.fixture
def marker_genes() -> list[str]:
    return [
        f"Marker{cell_type}{i}"
        for cell_type in CELL_TYPES
        for i in range(N_MARKERS_PER_TYPE)
    ]


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("scfeatsel.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def small_config() -> dict:
    return {
        "data": {"label_key": "cell_type"},
        "cleaning": {"is_counts": True, "min_detected_genes": 50},
        "brennecke": {"fdr": 0.01, "min_biol_disp": 0.5},
        "m3drop": {"mt_method": "fdr", "mt_threshold": 0.01},
        "danb": {"method": "fdr", "qval_threshold": 0.01},
        "correlation": {"direction": "both", "chunk_size": 64},
        "pca": {"components": [0, 1]},
        "scanpy_hvg": {"enabled": True, "n_top_genes": 50},
        "evaluation": {"ntop": 40},
        "output": {"figure_format": "png", "heatmap_genes": 20},
    }
