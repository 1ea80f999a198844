from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scfeatsel import pipeline
from scfeatsel.cleaning import clean_data
from scfeatsel.correlation import correlation_scores
from scfeatsel.dropout import m3drop_feature_selection
from scfeatsel.hvg import brennecke_variable_genes, scanpy_variable_genes
from scfeatsel.nbumi import fit_nbumi_model
from scfeatsel.pca import pca_loading_scores
from scfeatsel.utils import load_checkpoint


def test_select_gene_sets_truncates_ranked_methods():
    tables = {
        "M3Drop": pd.DataFrame(index=["a", "b", "c"]),
        "PCA": pd.DataFrame({"score": [3, 2, 1]}, index=["x", "y", "z"]),
    }
    gene_sets = pipeline.select_gene_sets(tables, ntop=2)
    assert gene_sets == {"M3Drop": ["a", "b", "c"], "PCA": ["x", "y"]}


@pytest.fixture
def result(counts_adata, marker_genes, small_config, tmp_path, logger):
    return pipeline.feature_selection_pipeline(
        counts_adata,
        small_config,
        de_genes=marker_genes,
        output_dir=tmp_path / "results",
        logger=logger,
    )


def test_pipeline_runs_every_method(result, counts_adata):
    assert set(result.tables) == {
        "Brennecke", "M3Drop", "DANB", "Correlation", "PCA", "scanpy"
    }
    assert len(result.gene_sets["Correlation"]) == 40
    assert len(result.gene_sets["PCA"]) == 40
    assert list(result.overlap.index) == list(result.tables)
    assert result.nbumi_fit is not None
    # The input is left untouched
    assert "counts" not in counts_adata.layers
    assert "counts" in result.adata.layers


def test_pipeline_leaves_cleaned_data_in_cpm(result):
    np.testing.assert_allclose(result.adata.X.sum(axis=1), 1e6)
    assert result.adata.X.max() > 20


def test_pipeline_precision_against_markers(result):
    comparison = result.comparison
    assert set(comparison.index) == set(result.tables)
    assert comparison["precision"].between(0, 1).all()
    assert comparison.loc["M3Drop", "n_in_reference"] >= 25
    assert comparison.loc["DANB", "n_in_reference"] >= 25
    assert comparison.loc["Correlation", "precision"] >= 0.6


def test_pipeline_writes_tables_and_figures(result, tmp_path):
    tables_dir = tmp_path / "results" / "tables"
    for method in result.tables:
        assert (tables_dir / f"{method.lower()}_genes.csv").exists()
    assert (tables_dir / "method_overlap.csv").exists()
    assert (tables_dir / "method_comparison.csv").exists()

    figures_dir = tmp_path / "results" / "figures"
    names = {path.name for path in result.figures}
    assert {
        "brennecke_mean_cv2.png",
        "michaelis_menten_curves.png",
        "m3drop_dropouts.png",
        "danb_fit.png",
        "pca_loadings.png",
        "method_comparison.png",
        "heatmap_m3drop.png",
    } <= names
    assert all(path.parent == figures_dir and path.exists() for path in result.figures)


def test_pipeline_without_reference(counts_adata, small_config, logger):
    small_config["scanpy_hvg"]["enabled"] = False
    result = pipeline.feature_selection_pipeline(counts_adata, small_config, logger=logger)

    assert result.comparison is None
    assert "scanpy" not in result.tables
    assert result.figures == []


def test_pipeline_checkpoints_cleaned_data(result, tmp_path):
    cleaned = load_checkpoint(tmp_path / "results" / "cleaned.h5ad")

    assert list(cleaned.obs_names) == list(result.adata.obs_names)
    np.testing.assert_allclose(cleaned.X.sum(axis=1), 1e6)
    assert {"brennecke_hvg", "m3drop_q", "correlation_score", "pca_score"} <= set(
        cleaned.var.columns
    )
    assert cleaned.uns["m3drop"]["K"] == pytest.approx(result.adata.uns["m3drop"]["K"])


@pytest.mark.parametrize(
    "select",
    [
        lambda adata, logger: brennecke_variable_genes(adata, logger=logger),
        lambda adata, logger: m3drop_feature_selection(adata, logger=logger),
        lambda adata, logger: correlation_scores(adata, chunk_size=64, logger=logger),
        lambda adata, logger: pca_loading_scores(adata, logger=logger),
        lambda adata, logger: scanpy_variable_genes(adata, n_top_genes=50, logger=logger),
    ],
    ids=["brennecke", "m3drop", "correlation", "pca", "scanpy"],
)
def test_methods_leave_expression_unchanged(select, counts_adata, logger):
    cleaned = clean_data(counts_adata, min_detected_genes=50, logger=logger)
    before = cleaned.X.copy()

    select(cleaned, logger)

    np.testing.assert_array_equal(cleaned.X, before)


def test_danb_fit_leaves_counts_unchanged(counts_adata, logger):
    before = counts_adata.X.copy()
    fit_nbumi_model(counts_adata, logger=logger)
    np.testing.assert_array_equal(counts_adata.X, before)
