"""
Depth-Adjusted Negative Binomial (DANB) Module
==============================================

Models UMI-style counts as negative binomial with a mean that scales with
each cell's sequencing depth:

    mu_ij = t_j * t_i / T

where t_j is the gene total, t_i the cell total and T the grand total. A
per-gene size (dispersion) parameter is fitted by the method of moments.

This module provides:
- fit_nbumi_model: per-gene size parameters
- fit_dispersion_vs_mean: global log(size) ~ log(mean) trend
- check_fit: expected vs observed dropouts per gene and per cell
- nbumi_feature_selection_dropouts: genes with excess dropouts
- nbumi_feature_selection_high_var: genes more variable than the trend
- pearson_residuals: residuals under the fitted model

"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
import anndata as ad
from scipy.stats import norm, linregress
from statsmodels.stats.multitest import multipletests

from .dropout import MT_METHODS
from .utils import setup_logging, get_expression_matrix


# Lower bound for fitted size parameters
MIN_SIZE = 1e-10


@dataclass
class NBumiFit:
    """Per-gene DANB fit together with the totals it was computed from."""

    counts: np.ndarray
    genes: pd.Index
    sizes: np.ndarray
    variances: np.ndarray
    tjs: np.ndarray
    tis: np.ndarray
    total: float
    djs: np.ndarray
    dis: np.ndarray

    @property
    def n_cells(self) -> int:
        return self.counts.shape[0]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[1]

    @property
    def mean_expression(self) -> np.ndarray:
        return self.tjs / self.n_cells

    def expected_means(self) -> np.ndarray:
        """Depth-adjusted expected counts (cells x genes)."""
        return np.outer(self.tis, self.tjs) / self.total


def _dropout_probability(mu: np.ndarray, size: np.ndarray) -> np.ndarray:
    # (1 + mu/size)^(-size), computed in log space
    return np.exp(-size * np.log1p(mu / size))


def fit_nbumi_model(
    adata: ad.AnnData,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> NBumiFit:
    """
    Fit a depth-adjusted negative binomial model to each gene.

    Parameters
    ----------
    adata : AnnData
        Raw integer counts, cells x genes
    layer : str, optional
        Layer to use instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    NBumiFit
        Fitted sizes and totals. Sizes are also stored in
        `adata.var['danb_size']`.

    Examples
    --------
    >>> counts = convert_to_integer(adata, layer='counts')
    >>> fit = fit_nbumi_model(counts)
    """
    if logger is None:
        logger = setup_logging()

    counts = get_expression_matrix(adata, layer=layer)

    if np.any(counts < 0) or not np.array_equal(counts, np.round(counts)):
        raise ValueError(
            "DANB model requires non-negative integer counts; "
            "use convert_to_integer() first"
        )

    n_cells, n_genes = counts.shape
    if n_cells < 2:
        raise ValueError("DANB model requires at least 2 cells")

    logger.info(
        f"Fitting depth-adjusted negative binomial model "
        f"({n_cells:,} cells x {n_genes:,} genes)..."
    )

    tjs = counts.sum(axis=0)
    tis = counts.sum(axis=1)
    total = float(tis.sum())
    if total <= 0:
        raise ValueError("Count matrix is empty")

    djs = n_cells - (counts > 0).sum(axis=0)
    dis = n_genes - (counts > 0).sum(axis=1)

    mu = np.outer(tis, tjs) / total
    variances = (counts - mu).var(axis=0, ddof=1)

    with np.errstate(divide='ignore', invalid='ignore'):
        sizes = (
            tjs ** 2 * (np.sum(tis ** 2) / total ** 2)
            / ((n_cells - 1) * variances - tjs)
        )

    # Poisson-like genes (non-positive excess variance) get a very large size
    finite = np.isfinite(sizes) & (sizes > 0)
    max_size = 10 * np.max(sizes[finite]) if finite.any() else 1e10
    sizes[~np.isfinite(sizes) | (sizes < 0)] = max_size
    sizes[sizes < MIN_SIZE] = MIN_SIZE

    adata.var['danb_size'] = sizes

    logger.info(
        f"Median size: {np.median(sizes):.3g}; "
        f"{int(np.sum(sizes == max_size)):,} genes without overdispersion"
    )

    return NBumiFit(
        counts=counts,
        genes=pd.Index(adata.var_names, name='gene'),
        sizes=sizes,
        variances=variances,
        tjs=tjs,
        tis=tis,
        total=total,
        djs=djs,
        dis=dis
    )


def fit_dispersion_vs_mean(
    fit: NBumiFit,
    logger: Optional[logging.Logger] = None
) -> Tuple[float, float]:
    """
    Fit log(size) = intercept + slope * log(mean expression).

    Genes at the maximum size (no detectable overdispersion) and genes
    with zero counts are excluded. When more than 2000 genes have a mean
    above 2^4 only those are used.

    Returns
    -------
    tuple of float
        (intercept, slope)
    """
    if logger is None:
        logger = setup_logging()

    means = fit.mean_expression
    use = (fit.sizes < np.max(fit.sizes)) & (fit.tjs > 0) & (fit.sizes > 0)

    with np.errstate(divide='ignore'):
        higher = np.log2(means) > 4
    if np.sum(higher) > 2000:
        use = use & higher

    if use.sum() < 2:
        raise ValueError(
            f"Only {int(use.sum())} overdispersed genes; cannot fit "
            f"dispersion-mean relationship"
        )

    regression = linregress(np.log(means[use]), np.log(fit.sizes[use]))

    logger.info(
        f"Dispersion trend: log(size) = {regression.intercept:.3f} + "
        f"{regression.slope:.3f} * log(mean) ({int(use.sum()):,} genes)"
    )

    return float(regression.intercept), float(regression.slope)


def _expected_sizes(fit: NBumiFit, coefficients: Tuple[float, float]) -> np.ndarray:
    intercept, slope = coefficients
    with np.errstate(divide='ignore'):
        return np.exp(intercept + slope * np.log(fit.mean_expression))


def check_fit(
    fit: NBumiFit,
    logger: Optional[logging.Logger] = None
) -> Dict[str, Any]:
    """
    Compare observed dropouts with those expected under the fitted model.

    Returns
    -------
    dict
        gene_expected, gene_observed, cell_expected, cell_observed arrays
        and the squared errors gene_error and cell_error

    Examples
    --------
    >>> check = check_fit(fit)
    >>> print(check['gene_error'], check['cell_error'])
    """
    if logger is None:
        logger = setup_logging()

    p0 = _dropout_probability(fit.expected_means(), fit.sizes[None, :])

    gene_expected = p0.sum(axis=0)
    cell_expected = p0.sum(axis=1)

    gene_error = float(np.sum((fit.djs - gene_expected) ** 2))
    cell_error = float(np.sum((fit.dis - cell_expected) ** 2))

    logger.info(
        f"DANB fit check: gene dropout error = {gene_error:.4g}, "
        f"cell dropout error = {cell_error:.4g}"
    )

    return {
        'gene_expected': gene_expected,
        'gene_observed': fit.djs.astype(np.float64),
        'cell_expected': cell_expected,
        'cell_observed': fit.dis.astype(np.float64),
        'gene_error': gene_error,
        'cell_error': cell_error,
    }


def nbumi_feature_selection_dropouts(
    fit: NBumiFit,
    ntop: Optional[int] = None,
    method: str = "fdr",
    qval_threshold: float = 2,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Select genes with more dropouts than the DANB trend predicts.

    Expected dropouts use the size predicted by the dispersion-mean trend
    rather than each gene's own size, so genes with heterogeneous expression
    across cell types show an excess of zeros.

    Parameters
    ----------
    fit : NBumiFit
        Output of fit_nbumi_model
    ntop : int, optional
        Return the top `ntop` genes. If None, genes with q-value below
        `qval_threshold` are returned.
    method : str, default "fdr"
        Multiple testing correction ('fdr', 'bon', 'holm')
    qval_threshold : float, default 2
        Q-value cut-off when `ntop` is None (the default keeps every gene)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Genes with effect_size (observed - expected dropout rate), p_value
        and q_value ordered by p-value then effect size

    Examples
    --------
    >>> danb_genes = nbumi_feature_selection_dropouts(fit, ntop=1500)
    """
    if logger is None:
        logger = setup_logging()

    if method not in MT_METHODS:
        raise ValueError(
            f"Unknown multiple testing method '{method}'. "
            f"Use one of: {', '.join(MT_METHODS)}"
        )

    n_cells = fit.n_cells
    exp_size = _expected_sizes(fit, fit_dispersion_vs_mean(fit, logger=logger))

    p_is = _dropout_probability(fit.expected_means(), exp_size[None, :])
    droprate_exp = p_is.sum(axis=0) / n_cells
    droprate_exp_err = np.sqrt((p_is * (1 - p_is)).sum(axis=0) / n_cells ** 2)
    droprate_exp = np.maximum(droprate_exp, 1.0 / n_cells)

    droprate_obs = fit.djs / n_cells
    droprate_obs_err = np.sqrt(droprate_obs * (1 - droprate_obs) / n_cells)

    diff = droprate_obs - droprate_exp
    combined_err = np.sqrt(droprate_exp_err ** 2 + droprate_obs_err ** 2)

    with np.errstate(divide='ignore', invalid='ignore'):
        z = diff / combined_err
    pvals = norm.sf(z)
    pvals[~np.isfinite(pvals)] = 1.0

    table = pd.DataFrame(
        {'effect_size': diff, 'p_value': pvals},
        index=fit.genes
    ).sort_values(['p_value', 'effect_size'], ascending=[True, False])

    _, qvals, _, _ = multipletests(table['p_value'].to_numpy(), method=MT_METHODS[method])
    table['q_value'] = qvals

    if ntop is None:
        table = table[table['q_value'] < qval_threshold]
    else:
        table = table.iloc[:ntop]

    logger.info(
        f"DANB dropouts: {len(table):,} / {fit.n_genes:,} genes selected"
    )

    return table


def nbumi_feature_selection_high_var(
    fit: NBumiFit,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Rank genes by how much more overdispersed they are than the trend.

    Returns
    -------
    pd.DataFrame
        All genes with 'score' = log(expected size) - log(fitted size),
        most variable first
    """
    if logger is None:
        logger = setup_logging()

    exp_size = _expected_sizes(fit, fit_dispersion_vs_mean(fit, logger=logger))
    with np.errstate(divide='ignore', invalid='ignore'):
        score = np.log(exp_size) - np.log(fit.sizes)

    return pd.DataFrame({'score': score}, index=fit.genes).sort_values(
        'score', ascending=False
    )


def pearson_residuals(fit: NBumiFit) -> np.ndarray:
    """Pearson residuals (x - mu) / sqrt(mu + mu^2 / size), cells x genes."""
    mu = fit.expected_means()
    sd = np.sqrt(mu + mu ** 2 / fit.sizes[None, :])
    with np.errstate(divide='ignore', invalid='ignore'):
        residuals = (fit.counts - mu) / sd
    residuals[~np.isfinite(residuals)] = 0.0
    return residuals
