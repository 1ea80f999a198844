from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from scfeatsel import dropout


def test_michaelis_menten_curve():
    np.testing.assert_allclose(
        dropout.michaelis_menten([0.0, 5.0, 45.0], 5.0), [1.0, 0.5, 0.1]
    )


def test_calc_dropout_variables():
    adata = ad.AnnData(
        X=np.array([[0.0, 2.0], [4.0, 2.0], [0.0, 2.0], [4.0, 2.0]]),
        var=pd.DataFrame(index=["g1", "g2"]),
    )

    variables = dropout.calc_dropout_variables(adata)

    assert variables.attrs["n_cells"] == 4
    assert variables.loc["g1", "s"] == pytest.approx(2.0)
    assert variables.loc["g1", "p"] == pytest.approx(0.5)
    assert variables.loc["g1", "s_stderr"] == pytest.approx(1.0)
    assert variables.loc["g1", "p_stderr"] == pytest.approx(0.25)
    assert variables.loc["g2", "p"] == 0
    assert variables.loc["g2", "s_stderr"] == 0


def test_fit_michaelis_menten_recovers_K(logger):
    rng = np.random.default_rng(0)
    s = np.logspace(-2, 3, 400)
    p = np.clip(dropout.michaelis_menten(s, 5.0) + rng.normal(0, 0.01, s.size), 0, 1)

    fit = dropout.fit_michaelis_menten(p, s, logger=logger)

    assert fit.K == pytest.approx(5.0, rel=0.05)
    assert 0 < fit.K_err < 1
    assert fit.sigma == pytest.approx(0.01, rel=0.3)
    assert fit.predictions.shape == s.shape


def test_fit_michaelis_menten_input_errors(logger):
    with pytest.raises(ValueError, match="same length"):
        dropout.fit_michaelis_menten(np.array([0.5, 0.2]), np.array([1.0]), logger=logger)
    with pytest.raises(ValueError, match="At least 2 genes"):
        dropout.fit_michaelis_menten(np.array([0.5, 1.0]), np.array([1.0, 0.0]), logger=logger)


def test_dropout_excess_pvalues_untestable_genes(logger):
    variables = pd.DataFrame(
        {
            "s": [5.0, 0.0, 1.0, 2.0],
            "s_stderr": [0.5, 0.0, 0.2, 0.3],
            "p": [0.0, 1.0, 0.5, 0.3],
            "p_stderr": [0.0, 0.0, 0.05, 0.05],
        },
        index=["always", "never", "g3", "g4"],
    )
    fit = dropout.MichaelisMentenFit(
        K=1.0, K_err=0.1, sigma=0.05, predictions=np.zeros(4), ssr=0.0, sar=0.0
    )

    tested = dropout.dropout_excess_pvalues(variables, fit, logger=logger)

    assert tested["p_value"][0] == 1.0 and tested["effect_size"][0] == 1.0
    assert tested["p_value"][1] == 1.0 and tested["effect_size"][1] == 1.0
    # K_equiv = 0.5 * 1 / 0.5 = K
    assert tested["effect_size"][2] == pytest.approx(1.0)
    assert tested["p_value"][2] == pytest.approx(0.5)


def test_dropout_excess_pvalues_warns_on_zero_dropout(logger, caplog):
    variables = pd.DataFrame(
        {
            "s": [8.0, 6.0, 1.0, 2.0],
            "s_stderr": [0.5, 0.4, 0.2, 0.3],
            "p": [0.0, 0.0, 0.5, 0.3],
            "p_stderr": [0.0, 0.0, 0.05, 0.05],
        },
        index=["always1", "always2", "g3", "g4"],
    )
    fit = dropout.MichaelisMentenFit(
        K=1.0, K_err=0.1, sigma=0.05, predictions=np.zeros(4), ssr=0.0, sar=0.0
    )

    with caplog.at_level("WARNING", logger=logger.name):
        tested = dropout.dropout_excess_pvalues(variables, fit, logger=logger)

    assert "2 genes have a dropout rate of 0" in caplog.text
    assert (tested["p_value"][:2] == 1.0).all()


def test_m3drop_selects_markers(counts_adata, marker_genes, logger):
    table = dropout.m3drop_feature_selection(
        counts_adata, mt_method="fdr", mt_threshold=0.01, logger=logger
    )

    assert len(set(table.index) & set(marker_genes)) >= 27
    assert (table["q_value"] < 0.01).all()
    assert table["p_value"].is_monotonic_increasing
    assert counts_adata.uns["m3drop"]["K"] > 0
    assert counts_adata.var["m3drop_selected"].sum() == len(table)
    assert (counts_adata.var.loc[marker_genes, "m3drop_effect"] > 1).all()


def test_m3drop_accepts_multiple_testing_aliases(counts_adata, logger):
    bonferroni = dropout.m3drop_feature_selection(counts_adata, mt_method="bon", logger=logger)
    holm = dropout.m3drop_feature_selection(counts_adata, mt_method="holm", logger=logger)
    assert set(bonferroni.index) <= set(holm.index)


def test_m3drop_unknown_method_raises(counts_adata, logger):
    with pytest.raises(ValueError, match="Unknown multiple testing method"):
        dropout.m3drop_feature_selection(counts_adata, mt_method="sidak", logger=logger)
