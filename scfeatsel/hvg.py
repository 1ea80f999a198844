"""
Highly Variable Gene Module
===========================

This module selects genes whose variability exceeds technical noise:
- Technical noise curve CV^2 = a0 + a1/mean fitted with a gamma GLM
  (Brennecke et al. 2013), optionally on spike-ins
- Chi-squared test for biological variability above the curve
- scanpy highly_variable_genes as a dispersion-based baseline

"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
import statsmodels.api as sm
from scipy.stats import chi2
from statsmodels.stats.multitest import multipletests

from .utils import setup_logging, get_expression_matrix


@dataclass
class TechnicalNoiseFit:
    """Fitted technical noise curve CV^2 = a0 + a1 / mean."""

    a0: float
    a1: float
    min_mean_for_fit: float
    n_used: int

    def predict(self, means: np.ndarray) -> np.ndarray:
        return self.a0 + self.a1 / np.asarray(means, dtype=np.float64)


def _min_mean_for_fit(
    means: np.ndarray,
    cv2: np.ndarray,
    fit_mean_quantile: float
) -> float:
    noisy = np.isfinite(cv2) & (cv2 > 0.3)
    if not noisy.any():
        noisy = np.isfinite(cv2)
    return float(np.quantile(means[noisy], fit_mean_quantile))


def fit_technical_noise(
    means: np.ndarray,
    cv2: np.ndarray,
    fit_mean_quantile: float = 0.8,
    min_mean_for_fit: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> TechnicalNoiseFit:
    """
    Fit the technical noise curve CV^2 = a0 + a1 / mean.

    Only points with mean at or above `min_mean_for_fit` are used. When not
    given, this is the `fit_mean_quantile` quantile of the means of points
    with CV^2 > 0.3. The fit is a gamma GLM with identity link.

    Parameters
    ----------
    means : np.ndarray
        Per-gene (or per spike-in) mean expression
    cv2 : np.ndarray
        Per-gene squared coefficient of variation
    fit_mean_quantile : float, default 0.8
        Quantile defining the minimum mean used for fitting
    min_mean_for_fit : float, optional
        Explicit minimum mean for fitting
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    TechnicalNoiseFit
        Coefficients and fitting summary

    Examples
    --------
    >>> fit = fit_technical_noise(means, cv2)
    >>> expected_cv2 = fit.predict(means)
    """
    if logger is None:
        logger = setup_logging()

    means = np.asarray(means, dtype=np.float64)
    cv2 = np.asarray(cv2, dtype=np.float64)

    valid = np.isfinite(means) & np.isfinite(cv2) & (means > 0)

    if min_mean_for_fit is None:
        if not valid.any():
            raise ValueError("No genes with positive mean expression to fit")
        min_mean_for_fit = _min_mean_for_fit(
            means[valid], cv2[valid], fit_mean_quantile
        )

    use_for_fit = valid & (means >= min_mean_for_fit) & (cv2 > 0)
    n_used = int(use_for_fit.sum())

    if n_used < 2:
        raise ValueError(
            f"Only {n_used} points exceed the minimum mean for fitting "
            f"({min_mean_for_fit:.3g}); cannot fit technical noise curve"
        )
    if n_used < 30:
        logger.warning(
            f"Only {n_used} points used in fitting technical noise, "
            f"may result in poor fit"
        )

    design = np.column_stack([
        np.ones(n_used),
        1.0 / means[use_for_fit]
    ])
    response = cv2[use_for_fit]

    start = np.linalg.lstsq(design, response, rcond=None)[0]
    if np.any(design @ start <= 0):
        start = np.array([response.mean(), 0.0])

    model = sm.GLM(
        response,
        design,
        family=sm.families.Gamma(link=sm.families.links.Identity())
    )
    result = model.fit(start_params=start)
    a0, a1 = (float(v) for v in result.params)

    logger.info(
        f"Technical noise fit: a0 = {a0:.4g}, a1 = {a1:.4g} "
        f"({n_used} points, min mean {min_mean_for_fit:.3g})"
    )

    return TechnicalNoiseFit(
        a0=a0,
        a1=a1,
        min_mean_for_fit=float(min_mean_for_fit),
        n_used=n_used
    )


def _resolve_spikes(
    adata: ad.AnnData,
    spikes: Optional[Union[Sequence[str], np.ndarray]]
) -> np.ndarray:
    if spikes is None:
        return np.zeros(adata.n_vars, dtype=bool)

    spikes = np.asarray(spikes)
    if spikes.dtype == bool:
        if len(spikes) != adata.n_vars:
            raise ValueError("Spike-in mask must have one entry per gene")
        return spikes

    return np.asarray(adata.var_names.isin(list(spikes)), dtype=bool)


def brennecke_variable_genes(
    adata: ad.AnnData,
    spikes: Optional[Union[Sequence[str], np.ndarray]] = None,
    fdr: float = 0.1,
    min_biol_disp: float = 0.5,
    fit_mean_quantile: float = 0.8,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Identify genes more variable than the technical noise curve.

    Technical noise is fitted on spike-ins when more than one is given,
    otherwise on all genes. Genes are tested for a biological coefficient of
    variation above `min_biol_disp` with a chi-squared test.

    Parameters
    ----------
    adata : AnnData
        Normalized (not log-transformed) expression, cells x genes
    spikes : sequence of str or boolean mask, optional
        Spike-in genes used to fit technical noise
    fdr : float, default 0.1
        Benjamini-Hochberg threshold for significance
    min_biol_disp : float, default 0.5
        Minimum biological coefficient of variation
    fit_mean_quantile : float, default 0.8
        Quantile defining the minimum mean used in fitting
    layer : str, optional
        Layer to use instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Significant genes (index) with effect_size, p_value and q_value,
        sorted by effect size. Per-gene statistics for all genes are stored
        in `adata.var['brennecke_*']` and the fit in `adata.uns['brennecke']`.

    Examples
    --------
    >>> hvg_table = brennecke_variable_genes(adata, fdr=0.01, min_biol_disp=0.5)
    >>> print(f"{len(hvg_table)} highly variable genes")
    """
    if logger is None:
        logger = setup_logging()

    X = get_expression_matrix(adata, layer=layer)
    n_cells = X.shape[0]

    spike_mask = _resolve_spikes(adata, spikes)
    use_spikes = spike_mask.sum() > 1

    if use_spikes:
        logger.info(
            f"Fitting technical noise on {int(spike_mask.sum())} spike-ins"
        )
        gene_mask = ~spike_mask
    else:
        logger.info("No spike-ins given, fitting technical noise on all genes")
        spike_mask = np.ones(adata.n_vars, dtype=bool)
        gene_mask = np.ones(adata.n_vars, dtype=bool)

    means = X.mean(axis=0)
    variances = X.var(axis=0, ddof=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        cv2 = variances / means ** 2

    means_sp, cv2_sp = means[spike_mask], cv2[spike_mask]
    valid_sp = np.isfinite(cv2_sp) & (means_sp > 0)
    min_mean = _min_mean_for_fit(
        means_sp[valid_sp], cv2_sp[valid_sp], fit_mean_quantile
    )

    n_spikes_kept = int(np.sum(means_sp[valid_sp] >= min_mean))
    if use_spikes and n_spikes_kept < 20:
        logger.warning(
            "Too few spike-ins exceed minimum mean for fitting, "
            "recomputing using all genes"
        )
        valid_all = np.isfinite(cv2) & (means > 0)
        min_mean = _min_mean_for_fit(
            means[valid_all], cv2[valid_all], fit_mean_quantile
        )
        n_recomputed = int(np.sum(means_sp[valid_sp] >= min_mean))
        if n_recomputed < 2:
            logger.error(
                f"Only {n_recomputed} spike-ins exceed the recomputed minimum "
                f"mean {min_mean:.3g}"
            )
            raise ValueError(
                "Too few spike-ins to fit technical noise "
                f"({n_recomputed} above minimum mean {min_mean:.3g})"
            )
        if n_recomputed < n_spikes_kept:
            logger.warning(
                f"Recomputed minimum mean {min_mean:.3g} keeps {n_recomputed} "
                f"spike-ins, fewer than the {n_spikes_kept} kept before"
            )

    fit = fit_technical_noise(
        means_sp,
        cv2_sp,
        fit_mean_quantile=fit_mean_quantile,
        min_mean_for_fit=min_mean,
        logger=logger
    )

    # Test genes for excess variability
    means_g = means[gene_mask]
    vars_g = variances[gene_mask]
    cv2_g = cv2[gene_mask]

    min_biol_cv2 = min_biol_disp ** 2
    cv2_threshold = fit.a0 + min_biol_cv2 + fit.a0 * min_biol_cv2

    with np.errstate(divide='ignore', invalid='ignore'):
        test_denom = (
            (means_g * fit.a1 + means_g ** 2 * cv2_threshold)
            / (1 + cv2_threshold / n_cells)
        )
        statistic = vars_g * (n_cells - 1) / test_denom
        residual = cv2_g - fit.predict(means_g)

    pvals = chi2.sf(statistic, n_cells - 1)
    testable = np.isfinite(pvals)

    qvals = np.full(len(pvals), np.nan)
    if testable.any():
        _, qvals[testable], _, _ = multipletests(pvals[testable], method='fdr_bh')

    significant = testable & (qvals < fdr)
    effect_size = np.exp(residual)

    # Record per-gene statistics
    genes = adata.var_names[gene_mask]
    for column, values in (
        ('brennecke_mean', means_g),
        ('brennecke_cv2', cv2_g),
        ('brennecke_p', pvals),
        ('brennecke_q', qvals),
    ):
        full = np.full(adata.n_vars, np.nan)
        full[gene_mask] = values
        adata.var[column] = full
    is_hvg = np.zeros(adata.n_vars, dtype=bool)
    is_hvg[gene_mask] = significant
    adata.var['brennecke_hvg'] = is_hvg

    adata.uns['brennecke'] = {
        'a0': fit.a0,
        'a1': fit.a1,
        'min_mean_for_fit': fit.min_mean_for_fit,
        'n_used': fit.n_used,
        'min_biol_disp': min_biol_disp,
        'fdr': fdr,
        'spikes': bool(use_spikes),
    }

    table = pd.DataFrame(
        {
            'effect_size': effect_size[significant],
            'p_value': pvals[significant],
            'q_value': qvals[significant],
        },
        index=pd.Index(genes[significant], name='gene')
    ).sort_values('effect_size', ascending=False)

    logger.info(
        f"Brennecke: {len(table):,} / {int(gene_mask.sum()):,} genes "
        f"significantly variable (FDR < {fdr}, min biol. CV {min_biol_disp})"
    )

    return table


def scanpy_variable_genes(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    flavor: str = "seurat",
    batch_key: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Rank genes by scanpy's normalized dispersion.

    Works on a copy: the data is log-transformed first unless it already
    looks log-transformed (max value < 20). The 'seurat_v3' flavor expects
    counts and reads `.layers['counts']` when present.

    Parameters
    ----------
    adata : AnnData
        Normalized expression, cells x genes
    n_top_genes : int, default 2000
        Number of genes flagged as highly variable
    flavor : str, default "seurat"
        scanpy flavor: 'seurat', 'cell_ranger' or 'seurat_v3'
    batch_key : str, optional
        Column of .obs for batch-aware selection
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Top `n_top_genes` genes with a 'score' column, highest first.
        `adata.var['scanpy_hvg']` marks the selected genes.

    Examples
    --------
    >>> table = scanpy_variable_genes(adata, n_top_genes=1500)
    """
    if logger is None:
        logger = setup_logging()

    logger.info(
        f"Selecting {n_top_genes} highly variable genes with scanpy "
        f"(flavor={flavor})..."
    )

    work = adata.copy()
    if batch_key is not None and batch_key not in work.obs.columns:
        logger.warning(f"Batch key '{batch_key}' not found, ignoring")
        batch_key = None

    kwargs = {}
    if flavor == 'seurat_v3':
        if 'counts' in work.layers:
            kwargs['layer'] = 'counts'
    else:
        work.X = get_expression_matrix(work)
        if work.X.max() >= 20:
            sc.pp.log1p(work)
        else:
            logger.info("Data appears to be log-transformed, skipping log1p")

    sc.pp.highly_variable_genes(
        work,
        n_top_genes=min(n_top_genes, work.n_vars),
        flavor=flavor,
        batch_key=batch_key,
        subset=False,
        **kwargs
    )

    score_column = (
        'variances_norm' if 'variances_norm' in work.var.columns
        else 'dispersions_norm'
    )
    hvg = work.var['highly_variable'].to_numpy(dtype=bool)
    adata.var['scanpy_hvg'] = hvg

    table = pd.DataFrame(
        {'score': work.var.loc[hvg, score_column].to_numpy()},
        index=pd.Index(work.var_names[hvg], name='gene')
    ).sort_values('score', ascending=False)

    logger.info(
        f"Selected {len(table):,} highly variable genes "
        f"({len(table)/adata.n_vars*100:.1f}% of {adata.n_vars} total genes)"
    )

    return table
