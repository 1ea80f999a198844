from __future__ import annotations

import pytest

from scfeatsel import dropout, evaluation, hvg, nbumi, pca, visualization as viz


def test_method_plots_are_written(counts_adata, tmp_path, logger):
    hvg.brennecke_variable_genes(counts_adata, logger=logger)
    dropout.m3drop_feature_selection(counts_adata, logger=logger)

    viz.plot_mean_cv2(counts_adata, tmp_path / "figs" / "cv2.png", logger=logger)
    viz.plot_dropout_fit(counts_adata, tmp_path / "figs" / "m3drop.png", logger=logger)
    viz.plot_michaelis_menten_curves(tmp_path / "figs" / "mm.png", logger=logger)

    for name in ("cv2.png", "m3drop.png", "mm.png"):
        assert (tmp_path / "figs" / name).stat().st_size > 0


def test_plots_require_fitted_methods(counts_adata, tmp_path, logger):
    with pytest.raises(KeyError, match="brennecke_variable_genes"):
        viz.plot_mean_cv2(counts_adata, tmp_path / "cv2.png", logger=logger)
    with pytest.raises(KeyError, match="m3drop_feature_selection"):
        viz.plot_dropout_fit(counts_adata, tmp_path / "m3drop.png", logger=logger)


def test_nbumi_and_pca_plots(counts_adata, tmp_path, logger):
    fit = nbumi.fit_nbumi_model(counts_adata, logger=logger)
    check = nbumi.check_fit(fit, logger=logger)
    coefficients = nbumi.fit_dispersion_vs_mean(fit, logger=logger)
    viz.plot_nbumi_fit(fit, check, coefficients, tmp_path / "danb.pdf", logger=logger)

    table = pca.pca_loading_scores(counts_adata, logger=logger)
    viz.plot_pca_loadings(table, tmp_path / "pca.pdf", ntop=30, logger=logger)
    viz.plot_pca_loadings(table[["score"]], tmp_path / "pca_rank.pdf", ntop=30, logger=logger)

    for name in ("danb.pdf", "pca.pdf", "pca_rank.pdf"):
        assert (tmp_path / name).exists()


def test_expression_heatmap(counts_adata, marker_genes, tmp_path, logger):
    path = tmp_path / "heatmap.png"
    viz.plot_expression_heatmap(
        counts_adata, marker_genes, path, label_key="cell_type", logger=logger
    )
    assert path.exists()


def test_expression_heatmap_skips_missing_genes(counts_adata, tmp_path, logger, caplog):
    path = tmp_path / "heatmap.png"
    with caplog.at_level("ERROR", logger=logger.name):
        viz.plot_expression_heatmap(counts_adata, ["NotAGene"], path, logger=logger)
    assert not path.exists()
    assert "No selected genes" in caplog.text


def test_method_comparison_plot(tmp_path, logger):
    gene_sets = {"M3Drop": ["A", "B"], "HVG": ["A", "X"]}
    comparison = evaluation.compare_methods(gene_sets, ["A", "B"], logger=logger)
    overlap = evaluation.overlap_matrix(gene_sets)

    path = tmp_path / "comparison.png"
    viz.plot_method_comparison(comparison, overlap, path, logger=logger)
    assert path.exists()
