from __future__ import annotations

import numpy as np
import pytest
import anndata as ad

from scfeatsel import nbumi


@pytest.fixture
def nbumi_fit(counts_adata, logger):
    return nbumi.fit_nbumi_model(counts_adata, logger=logger)


def test_fit_requires_integer_counts(logger):
    adata = ad.AnnData(X=np.array([[0.5, 1.0], [2.0, 3.0]]))
    with pytest.raises(ValueError, match="integer counts"):
        nbumi.fit_nbumi_model(adata, logger=logger)


def test_fit_rejects_large_non_integer_counts(logger):
    adata = ad.AnnData(X=np.array([[200000.4, 150000.3], [300000.2, 100000.1]]))
    with pytest.raises(ValueError, match="integer counts"):
        nbumi.fit_nbumi_model(adata, logger=logger)


def test_fit_totals_and_sizes(nbumi_fit, counts_adata):
    X = counts_adata.X

    np.testing.assert_allclose(nbumi_fit.tjs, X.sum(axis=0))
    np.testing.assert_allclose(nbumi_fit.tis, X.sum(axis=1))
    assert nbumi_fit.total == pytest.approx(X.sum())
    np.testing.assert_array_equal(nbumi_fit.djs, (X == 0).sum(axis=0))
    np.testing.assert_allclose(nbumi_fit.expected_means().sum(axis=0), X.sum(axis=0))

    assert (nbumi_fit.sizes >= nbumi.MIN_SIZE).all()
    np.testing.assert_allclose(counts_adata.var["danb_size"], nbumi_fit.sizes)

    # Housekeeping genes were simulated with size 5
    housekeeping = ~counts_adata.var_names.str.startswith("Marker")
    assert 2.5 < np.median(nbumi_fit.sizes[housekeeping]) < 10


def test_dispersion_trend_and_fit_check(nbumi_fit, logger):
    intercept, slope = nbumi.fit_dispersion_vs_mean(nbumi_fit, logger=logger)
    assert np.isfinite(intercept) and np.isfinite(slope)

    check = nbumi.check_fit(nbumi_fit, logger=logger)
    assert check["gene_expected"].shape == (nbumi_fit.n_genes,)
    assert check["cell_expected"].shape == (nbumi_fit.n_cells,)
    assert check["gene_error"] >= 0 and check["cell_error"] >= 0
    housekeeping = ~nbumi_fit.genes.str.startswith("Marker")
    assert np.corrcoef(
        check["gene_expected"][housekeeping], check["gene_observed"][housekeeping]
    )[0, 1] > 0.9


def test_dropout_selection_ranks_markers_first(nbumi_fit, marker_genes, logger):
    table = nbumi.nbumi_feature_selection_dropouts(nbumi_fit, ntop=40, logger=logger)

    assert len(table) == 40
    assert len(set(table.index) & set(marker_genes)) >= 27
    assert list(table.columns) == ["effect_size", "p_value", "q_value"]
    assert table["p_value"].is_monotonic_increasing


def test_dropout_selection_threshold(nbumi_fit, logger):
    everything = nbumi.nbumi_feature_selection_dropouts(nbumi_fit, logger=logger)
    assert len(everything) == nbumi_fit.n_genes

    significant = nbumi.nbumi_feature_selection_dropouts(
        nbumi_fit, method="bon", qval_threshold=0.01, logger=logger
    )
    assert (significant["q_value"] < 0.01).all()
    assert len(significant) < nbumi_fit.n_genes

    with pytest.raises(ValueError, match="Unknown multiple testing method"):
        nbumi.nbumi_feature_selection_dropouts(nbumi_fit, method="sidak", logger=logger)


def test_high_var_selection_ranks_markers_first(nbumi_fit, marker_genes, logger):
    table = nbumi.nbumi_feature_selection_high_var(nbumi_fit, logger=logger)

    assert len(table) == nbumi_fit.n_genes
    assert table["score"].is_monotonic_decreasing
    assert len(set(table.index[:40]) & set(marker_genes)) >= 27


def test_pearson_residuals(nbumi_fit):
    residuals = nbumi.pearson_residuals(nbumi_fit)
    assert residuals.shape == nbumi_fit.counts.shape
    assert np.isfinite(residuals).all()
