from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from scfeatsel import correlation


@pytest.fixture
def three_genes():
    return ad.AnnData(
        X=np.array(
            [
                [1.0, 2.0, 5.0],
                [2.0, 4.0, 4.0],
                [3.0, 6.0, 3.0],
                [4.0, 8.0, 2.0],
                [5.0, 10.0, 1.0],
            ]
        ),
        var=pd.DataFrame(index=["up", "up2", "down"]),
    )


@pytest.mark.parametrize(
    "direction, expected",
    [
        ("both", {"up": 1.0, "up2": 1.0, "down": 1.0}),
        ("pos", {"up": 1.0, "up2": 1.0, "down": -1.0}),
        ("neg", {"up": 1.0, "up2": 1.0, "down": 1.0}),
    ],
)
def test_correlation_directions(three_genes, logger, direction, expected):
    table = correlation.correlation_scores(three_genes, direction=direction, logger=logger)
    for gene, score in expected.items():
        assert table.loc[gene, "score"] == pytest.approx(score)


def test_correlation_partner_and_var_column(three_genes, logger):
    table = correlation.correlation_scores(three_genes, direction="pos", logger=logger)
    assert table.loc["up", "partner"] == "up2"
    assert table.loc["up2", "partner"] == "up"
    np.testing.assert_allclose(
        three_genes.var["correlation_score"], table.loc[three_genes.var_names, "score"]
    )


def test_chunked_scores_match_single_block(counts_adata, logger):
    single = correlation.correlation_scores(counts_adata, chunk_size=10_000, logger=logger)
    chunked = correlation.correlation_scores(
        counts_adata, chunk_size=7, show_progress=True, logger=logger
    )
    np.testing.assert_allclose(
        single.loc[counts_adata.var_names, "score"],
        chunked.loc[counts_adata.var_names, "score"],
    )


def test_markers_have_top_scores(counts_adata, marker_genes, logger):
    table = correlation.correlation_scores(counts_adata, logger=logger)
    assert table["score"].is_monotonic_decreasing
    assert len(set(table.index[:35]) & set(marker_genes)) >= 28


def test_constant_gene_scores_zero(logger):
    adata = ad.AnnData(
        X=np.array([[1.0, 3.0, 2.0], [2.0, 3.0, 1.0], [3.0, 3.0, 5.0]]),
        var=pd.DataFrame(index=["a", "flat", "c"]),
    )
    table = correlation.correlation_scores(adata, logger=logger)
    assert table.loc["flat", "score"] == pytest.approx(0.0)


def test_correlation_argument_errors(three_genes, logger):
    with pytest.raises(ValueError, match="Unknown correlation direction"):
        correlation.correlation_scores(three_genes, direction="abs", logger=logger)
    with pytest.raises(ValueError, match="chunk_size"):
        correlation.correlation_scores(three_genes, chunk_size=0, logger=logger)
    with pytest.raises(ValueError, match="At least 2 genes"):
        correlation.correlation_scores(three_genes[:, :1].copy(), logger=logger)
