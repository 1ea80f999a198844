from __future__ import annotations

import numpy as np
import pytest

from scfeatsel import pca


def test_loading_scores_rank_markers(counts_adata, marker_genes, logger):
    table = pca.pca_loading_scores(counts_adata, components=(0, 1), logger=logger)

    assert list(table.columns) == ["score", "PC1", "PC2"]
    assert table["score"].is_monotonic_decreasing
    np.testing.assert_allclose(
        table["score"], table["PC1"].abs() + table["PC2"].abs()
    )
    assert len(set(table.index[:40]) & set(marker_genes)) >= 20

    assert "pca_score" in counts_adata.var.columns
    assert counts_adata.uns["pca_loading"]["components"] == [0, 1]
    # Scoring works on a log-transformed copy
    assert counts_adata.X.max() > 20


def test_single_component(counts_adata, logger):
    table = pca.pca_loading_scores(counts_adata, components=[2], n_comps=5, logger=logger)
    assert list(table.columns) == ["score", "PC3"]
    np.testing.assert_allclose(table["score"], table["PC3"].abs())


def test_component_errors(counts_adata, logger):
    with pytest.raises(ValueError, match="non-empty"):
        pca.pca_loading_scores(counts_adata, components=[], logger=logger)
    with pytest.raises(ValueError, match="requested but only"):
        pca.pca_loading_scores(counts_adata, components=[0, 4], n_comps=3, logger=logger)


def test_run_pca_clips_components(counts_adata, logger):
    small = counts_adata[:10].copy()
    small = pca.run_pca(small, n_comps=50, logger=logger)
    assert small.obsm["X_pca"].shape == (10, 9)
