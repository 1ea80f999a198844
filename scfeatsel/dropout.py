"""
Dropout-based Feature Selection Module
======================================

Selects genes with more zeros than expected for their mean expression,
using the Michaelis-Menten relationship between mean expression (S) and
dropout rate (P):

    P = 1 - S / (K + S)

Genes whose dropout rate implies a larger K than the global fit are
enriched for differential expression between cell populations.

"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd
import anndata as ad
from scipy.stats import norm
from scipy.optimize import minimize_scalar
from statsmodels.stats.multitest import multipletests

from .utils import setup_logging, get_expression_matrix


# Multiple testing aliases accepted by m3drop_feature_selection
MT_METHODS = {
    'bon': 'bonferroni',
    'bonferroni': 'bonferroni',
    'fdr': 'fdr_bh',
    'BH': 'fdr_bh',
    'holm': 'holm',
}


@dataclass
class MichaelisMentenFit:
    """Maximum-likelihood fit of the Michaelis-Menten dropout curve."""

    K: float
    K_err: float
    sigma: float
    predictions: np.ndarray
    ssr: float
    sar: float


def michaelis_menten(s, K: float):
    """Expected dropout rate for mean expression `s`."""
    s = np.asarray(s, dtype=np.float64)
    return 1.0 - s / (K + s)


def calc_dropout_variables(
    adata: ad.AnnData,
    layer: Optional[str] = None
) -> pd.DataFrame:
    """
    Per-gene mean expression and dropout rate with standard errors.

    Parameters
    ----------
    adata : AnnData
        Normalized expression, cells x genes
    layer : str, optional
        Layer to use instead of `adata.X`

    Returns
    -------
    pd.DataFrame
        Columns s, s_stderr, p, p_stderr indexed by gene; the number of
        cells is stored in `.attrs['n_cells']`
    """
    X = get_expression_matrix(adata, layer=layer)
    n_cells = X.shape[0]

    s = X.mean(axis=0)
    s_stderr = np.sqrt(np.clip((X ** 2).mean(axis=0) - s ** 2, 0, None) / n_cells)
    p = 1.0 - (X > 0).sum(axis=0) / n_cells
    p_stderr = np.sqrt(p * (1 - p) / n_cells)

    variables = pd.DataFrame(
        {'s': s, 's_stderr': s_stderr, 'p': p, 'p_stderr': p_stderr},
        index=pd.Index(adata.var_names, name='gene')
    )
    variables.attrs['n_cells'] = n_cells

    return variables


def fit_michaelis_menten(
    p: np.ndarray,
    s: np.ndarray,
    logger: Optional[logging.Logger] = None
) -> MichaelisMentenFit:
    """
    Fit K of the Michaelis-Menten dropout curve by maximum likelihood.

    Residuals are assumed normal with a common standard deviation, so K
    minimizes the sum of squared residuals. The standard error of K comes
    from the Fisher information at the optimum.

    Parameters
    ----------
    p : np.ndarray
        Per-gene dropout rates
    s : np.ndarray
        Per-gene mean expression
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    MichaelisMentenFit
        Fitted K, its standard error, residual sd and predictions

    Examples
    --------
    >>> variables = calc_dropout_variables(adata)
    >>> fit = fit_michaelis_menten(variables['p'], variables['s'])
    >>> print(f"K = {fit.K:.2f}")
    """
    if logger is None:
        logger = setup_logging()

    p = np.asarray(p, dtype=np.float64)
    s = np.asarray(s, dtype=np.float64)

    if len(p) != len(s):
        raise ValueError("Dropout rates and means must have the same length")

    use = np.isfinite(p) & np.isfinite(s) & (s > 0)
    if use.sum() < 2:
        raise ValueError(
            "At least 2 genes with positive mean expression are required "
            "to fit the Michaelis-Menten curve"
        )

    p_fit, s_fit = p[use], s[use]

    def ssr(log_k):
        return np.sum((p_fit - michaelis_menten(s_fit, np.exp(log_k))) ** 2)

    # Coarse grid then bounded refinement around the best grid point
    grid = np.linspace(
        np.log(s_fit.min()) - np.log(100),
        np.log(s_fit.max()) + np.log(100),
        200
    )
    grid_ssr = np.array([ssr(g) for g in grid])
    best = int(np.argmin(grid_ssr))
    lower = grid[max(best - 1, 0)]
    upper = grid[min(best + 1, len(grid) - 1)]

    result = minimize_scalar(ssr, bounds=(lower, upper), method='bounded')
    K = float(np.exp(result.x))

    residuals = p_fit - michaelis_menten(s_fit, K)
    sigma = float(np.sqrt(np.mean(residuals ** 2)))

    gradient = s_fit / (K + s_fit) ** 2
    information = np.sum(gradient ** 2)
    K_err = float(sigma / np.sqrt(information)) if information > 0 else np.inf

    predictions = michaelis_menten(s, K)
    all_residuals = p - predictions

    logger.info(
        f"Michaelis-Menten fit: K = {K:.4g} (SE {K_err:.3g}), "
        f"residual sd = {sigma:.3g}"
    )

    return MichaelisMentenFit(
        K=K,
        K_err=K_err,
        sigma=sigma,
        predictions=predictions,
        ssr=float(np.nansum(all_residuals ** 2)),
        sar=float(np.nansum(np.abs(all_residuals)))
    )


def dropout_excess_pvalues(
    variables: pd.DataFrame,
    fit: MichaelisMentenFit,
    logger: Optional[logging.Logger] = None
) -> Dict[str, np.ndarray]:
    """
    Test each gene for a higher dropout rate than the fitted curve predicts.

    Each gene's dropout rate and mean give an equivalent K
    (K_equiv = p * s / (1 - p)). A one-sided z-test compares log K_equiv
    with the fitted log K. Genes that are never zero are reported with
    p-value 1 and effect size 1.

    Parameters
    ----------
    variables : pd.DataFrame
        Output of calc_dropout_variables
    fit : MichaelisMentenFit
        Output of fit_michaelis_menten
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    dict
        'p_value' and 'effect_size' arrays aligned with `variables`
    """
    if logger is None:
        logger = setup_logging()

    p_obs = variables['p'].to_numpy(dtype=np.float64).copy()
    s_mean = variables['s'].to_numpy(dtype=np.float64)
    s_err = variables['s_stderr'].to_numpy(dtype=np.float64)
    p_err = variables['p_stderr'].to_numpy(dtype=np.float64)

    always_detected = p_obs == 0
    never_detected = p_obs >= 1

    if always_detected.any():
        logger.warning(
            f"{int(always_detected.sum())} genes have a dropout rate of 0 "
            f"and are not tested"
        )
        positive = p_obs[p_obs > 0]
        p_obs[always_detected] = positive.min() / 2 if len(positive) else 0.5

    testable = ~never_detected
    K_equiv = np.full(len(p_obs), np.nan)
    K_equiv_err = np.full(len(p_obs), np.nan)

    with np.errstate(divide='ignore', invalid='ignore'):
        K_equiv[testable] = (
            p_obs[testable] * s_mean[testable] / (1 - p_obs[testable])
        )
        K_equiv_err[testable] = np.abs(K_equiv[testable]) * np.sqrt(
            (s_err[testable] / s_mean[testable]) ** 2
            + (p_err[testable] / p_obs[testable]) ** 2
        )
        K_equiv_log = np.log(K_equiv)

        # Log-scale error from the lower bound; unbounded when it is not positive
        lower_bound = K_equiv - K_equiv_err
        K_equiv_err_log = np.where(
            lower_bound > 0,
            np.abs(np.log(np.where(lower_bound > 0, lower_bound, 1.0)) - K_equiv_log),
            1e10
        )

    K_obs_log = np.log(fit.K)
    deviations = (K_equiv_log - K_obs_log)[testable & np.isfinite(K_equiv_log)]
    if len(deviations) > 1:
        K_err_log = np.std(deviations, ddof=1) / np.sqrt(len(deviations))
    else:
        K_err_log = 0.0

    with np.errstate(divide='ignore', invalid='ignore'):
        z = (K_equiv_log - K_obs_log) / np.sqrt(K_equiv_err_log ** 2 + K_err_log ** 2)
        pvals = norm.sf(z)
        effect_size = K_equiv / fit.K

    untested = always_detected | never_detected | ~np.isfinite(pvals)
    pvals[untested] = 1.0
    effect_size[untested] = 1.0

    return {'p_value': pvals, 'effect_size': effect_size}


def m3drop_feature_selection(
    adata: ad.AnnData,
    mt_method: str = "bon",
    mt_threshold: float = 0.05,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Select genes with significantly more dropouts than expected.

    Parameters
    ----------
    adata : AnnData
        Normalized (not log-transformed) expression, cells x genes
    mt_method : str, default "bon"
        Multiple testing correction: 'bon' (Bonferroni), 'fdr'
        (Benjamini-Hochberg) or 'holm'
    mt_threshold : float, default 0.05
        Significance threshold on adjusted p-values
    layer : str, optional
        Layer to use instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Significant genes with effect_size, p_value, q_value, sorted by
        p-value then effect size. Per-gene statistics are stored in
        `adata.var['m3drop_*']` and the fit in `adata.uns['m3drop']`.

    Examples
    --------
    >>> m3drop_genes = m3drop_feature_selection(adata, mt_method="fdr",
    ...                                         mt_threshold=0.01)
    """
    if logger is None:
        logger = setup_logging()

    if mt_method not in MT_METHODS:
        raise ValueError(
            f"Unknown multiple testing method '{mt_method}'. "
            f"Use one of: {', '.join(MT_METHODS)}"
        )

    logger.info("Fitting Michaelis-Menten dropout model...")

    variables = calc_dropout_variables(adata, layer=layer)
    fit = fit_michaelis_menten(variables['p'], variables['s'], logger=logger)
    tested = dropout_excess_pvalues(variables, fit, logger=logger)

    pvals = tested['p_value']
    _, qvals, _, _ = multipletests(pvals, method=MT_METHODS[mt_method])
    significant = qvals < mt_threshold

    adata.var['m3drop_mean'] = variables['s'].to_numpy()
    adata.var['m3drop_dropout'] = variables['p'].to_numpy()
    adata.var['m3drop_effect'] = tested['effect_size']
    adata.var['m3drop_p'] = pvals
    adata.var['m3drop_q'] = qvals
    adata.var['m3drop_selected'] = significant

    adata.uns['m3drop'] = {
        'K': fit.K,
        'K_err': fit.K_err,
        'sigma': fit.sigma,
        'ssr': fit.ssr,
        'sar': fit.sar,
        'mt_method': mt_method,
        'mt_threshold': mt_threshold,
    }

    table = pd.DataFrame(
        {
            'effect_size': tested['effect_size'][significant],
            'p_value': pvals[significant],
            'q_value': qvals[significant],
        },
        index=pd.Index(adata.var_names[significant], name='gene')
    ).sort_values(['p_value', 'effect_size'], ascending=[True, False])

    logger.info(
        f"M3Drop: {len(table):,} / {adata.n_vars:,} genes with excess dropouts "
        f"({mt_method} < {mt_threshold})"
    )

    return table
