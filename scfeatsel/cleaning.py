"""
Data Cleaning Module
====================

This module prepares single-cell expression data for feature selection:
- QC metrics calculation (detected genes, counts, spike-in fraction)
- Low-quality cell removal (detected-gene threshold or zero-count test)
- Gene filtering by detection
- Counts-per-million normalization excluding spike-ins
- Integer conversion for count-based models

"""

import logging
from typing import Optional, Sequence

import numpy as np
import scanpy as sc
import anndata as ad
from scipy.stats import norm
from statsmodels.stats.multitest import multipletests

from .utils import setup_logging, get_expression_matrix


# Genes with mean expression below this are treated as undetected
MIN_MEAN_EXPRESSION = 1e-5

# Genes must be detected in more than this many cells
MIN_DETECTED_CELLS = 3


def spike_in_mask(
    adata: ad.AnnData,
    spike_pattern: str = "ercc"
) -> np.ndarray:
    """Boolean mask of spike-in genes (case-insensitive name match)."""
    return np.asarray(
        adata.var_names.str.contains(spike_pattern, case=False, regex=True),
        dtype=bool
    )


def calculate_qc_metrics(
    adata: ad.AnnData,
    spike_pattern: str = "ercc",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Calculate per-cell and per-gene QC metrics.

    Calculates:
    - n_genes_by_counts: Number of genes detected per cell
    - total_counts: Total counts per cell
    - pct_counts_spike: Percentage of counts from spike-ins
    - n_cells_by_counts: Number of cells detecting each gene

    Parameters
    ----------
    adata : AnnData
        Input AnnData object with raw counts
    spike_pattern : str, default "ercc"
        Case-insensitive pattern identifying spike-in genes
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with QC metrics in .obs and .var

    Examples
    --------
    >>> adata = calculate_qc_metrics(adata, logger=logger)
    >>> print(adata.obs[['n_genes_by_counts', 'total_counts']])
    """
    if logger is None:
        logger = setup_logging()

    logger.info("Calculating QC metrics...")

    adata.var['spike'] = spike_in_mask(adata, spike_pattern)

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=['spike'],
        percent_top=None,
        log1p=False,
        inplace=True
    )

    logger.info("QC metrics summary:")
    logger.info(f"  Median genes/cell: {np.median(adata.obs['n_genes_by_counts']):.0f}")
    logger.info(f"  Median counts/cell: {np.median(adata.obs['total_counts']):.0f}")

    n_spikes = int(adata.var['spike'].sum())
    if n_spikes > 0:
        logger.info(
            f"  {n_spikes} spike-ins, median spike-in%: "
            f"{np.median(adata.obs['pct_counts_spike']):.2f}"
        )

    return adata


def detect_low_quality_cells(
    n_zeros: np.ndarray,
    fdr: float = 0.05
) -> np.ndarray:
    """
    Flag cells with an unusually high number of zero counts.

    The zero count per cell is modelled as normal. If fewer than half of the
    cells lie within one standard deviation of the mean (bimodal data) the
    parameters are re-estimated from the cells below the median. Upper-tail
    p-values are BH-adjusted and cells with q < `fdr` are flagged.

    Parameters
    ----------
    n_zeros : np.ndarray
        Number of zero-count genes per cell
    fdr : float, default 0.05
        False discovery rate threshold

    Returns
    -------
    np.ndarray
        Boolean array where True indicates a low-quality cell
    """
    n_zeros = np.asarray(n_zeros, dtype=np.float64)

    mu = n_zeros.mean()
    sigma = n_zeros.std(ddof=1)

    within_one_sd = np.mean((n_zeros > mu - sigma) & (n_zeros < mu + sigma))
    if within_one_sd < 0.5:
        lower = n_zeros[n_zeros < np.median(n_zeros)]
        if len(lower) > 1:
            mu = lower.mean()
            sigma = lower.std(ddof=1)

    # All cells identical
    if not np.isfinite(sigma) or sigma == 0:
        return np.zeros(len(n_zeros), dtype=bool)

    pvals = norm.sf((n_zeros - mu) / sigma)
    _, qvals, _, _ = multipletests(pvals, method='fdr_bh')

    return qvals < fdr


def clean_data(
    adata: ad.AnnData,
    label_key: Optional[str] = None,
    is_counts: bool = True,
    min_detected_genes: Optional[int] = 100,
    pseudo_genes: Optional[Sequence[str]] = None,
    spike_pattern: str = "ercc",
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Remove low-quality cells and undetected genes, normalizing raw counts.

    Steps:
    1. Drop pseudogenes (if given)
    2. Remove low-quality cells
    3. Remove genes detected in 3 or fewer cells
    4. Normalize counts to CPM using non-spike-in totals (if `is_counts`)
    5. Remove genes with mean expression below 1e-5

    Parameters
    ----------
    adata : AnnData
        Input AnnData (cells x genes)
    label_key : str, optional
        Column of .obs with cell-type labels. Only used to report how many
        cells of each type were kept.
    is_counts : bool, default True
        Whether the matrix holds raw counts that should be CPM-normalized
    min_detected_genes : int or None, default 100
        Minimum genes detected per cell. If None, low-quality cells are
        detected from the distribution of zero counts instead.
    pseudo_genes : sequence of str, optional
        Gene names to remove before cleaning
    spike_pattern : str, default "ercc"
        Case-insensitive pattern identifying spike-in genes
    layer : str, optional
        Layer to read instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Cleaned copy. When `is_counts` the raw counts of the kept cells and
        genes are stored in `.layers['counts']`.

    Examples
    --------
    >>> cleaned = clean_data(adata, label_key='cell_type2', is_counts=False)
    """
    if logger is None:
        logger = setup_logging()

    n_cells_before, n_genes_before = adata.n_obs, adata.n_vars
    logger.info(
        f"Cleaning data: {n_cells_before:,} cells x {n_genes_before:,} genes"
    )

    adata = adata.copy()
    if layer is not None:
        adata.X = get_expression_matrix(adata, layer=layer)

    # 1. Pseudogenes
    if pseudo_genes is not None and len(pseudo_genes) > 0:
        is_pseudo = adata.var_names.isin(list(pseudo_genes))
        adata = adata[:, ~is_pseudo].copy()
        logger.info(f"Removed {int(is_pseudo.sum())} pseudogenes")

    X = get_expression_matrix(adata)

    # 2. Low-quality cells
    detected_per_cell = (X > 0).sum(axis=1)
    if min_detected_genes is not None:
        low_quality = detected_per_cell < min_detected_genes
        logger.info(
            f"Cells detecting < {min_detected_genes} genes: {int(low_quality.sum()):,}"
        )
    else:
        low_quality = detect_low_quality_cells((X == 0).sum(axis=1))
        logger.info(
            f"Cells with excess zeros (FDR < 0.05): {int(low_quality.sum()):,}"
        )

    adata = adata[~low_quality].copy()
    if adata.n_obs == 0:
        raise ValueError(
            "No data left after cleaning (0 cells). "
            "Check min_detected_genes and input values."
        )

    # 3. Undetected genes
    adata = filter_genes(adata, min_cells=MIN_DETECTED_CELLS + 1, logger=logger)
    X = get_expression_matrix(adata)

    # 4. Normalize
    if is_counts:
        adata.layers['counts'] = X.copy()

        spikes = spike_in_mask(adata, spike_pattern)
        if spikes.sum() > 1:
            totals = X[:, ~spikes].sum(axis=1)
            logger.info(f"Excluding {int(spikes.sum())} spike-ins from library size")
        else:
            totals = X.sum(axis=1)

        cpm = np.divide(
            X * 1e6,
            totals[:, None],
            out=np.zeros_like(X),
            where=totals[:, None] > 0
        )
        adata.X = cpm
        X = cpm
        logger.info("Normalized to counts per million")
    else:
        adata.X = X

    # 5. Low expression
    expressed = X.mean(axis=0) >= MIN_MEAN_EXPRESSION
    adata = adata[:, expressed].copy()

    if adata.n_obs == 0 or adata.n_vars == 0:
        raise ValueError(
            f"No data left after cleaning ({adata.n_obs} cells x "
            f"{adata.n_vars} genes). Check min_detected_genes and input values."
        )

    logger.info(
        f"Cells retained: {adata.n_obs:,} / {n_cells_before:,} "
        f"({adata.n_obs/n_cells_before*100:.1f}%)"
    )
    logger.info(
        f"Genes retained: {adata.n_vars:,} / {n_genes_before:,} "
        f"({adata.n_vars/n_genes_before*100:.1f}%)"
    )

    if label_key is not None and label_key in adata.obs.columns:
        label_counts = adata.obs[label_key].value_counts()
        logger.info(f"Cells per {label_key}:")
        for label, count in label_counts.items():
            logger.info(f"  {label}: {count:,}")

    return adata


def convert_to_integer(
    adata: ad.AnnData,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Round expression values up to integers and drop all-zero genes.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    layer : str, optional
        Layer to convert instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Copy with integer counts in `.X`

    Examples
    --------
    >>> counts = convert_to_integer(adata, layer='counts')
    """
    if logger is None:
        logger = setup_logging()

    X = get_expression_matrix(adata, layer=layer)

    if np.any(X < 0):
        raise ValueError("Cannot convert negative values to counts")

    counts = np.ceil(X).astype(np.int64)
    keep = counts.sum(axis=0) > 0

    converted = ad.AnnData(
        X=counts[:, keep],
        obs=adata.obs.copy(),
        var=adata.var.loc[keep].copy()
    )

    logger.info(
        f"Converted to integer counts: kept {int(keep.sum()):,} / "
        f"{adata.n_vars:,} genes with non-zero totals"
    )

    return converted


def filter_genes(
    adata: ad.AnnData,
    min_cells: int = MIN_DETECTED_CELLS + 1,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Drop genes detected (count > 0) in fewer than `min_cells` cells, in place.

    The number of detecting cells is kept in `.var['n_cells']`.

    Examples
    --------
    >>> adata = filter_genes(adata, min_cells=4, logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    n_genes_before = adata.n_vars
    if n_genes_before == 0:
        return adata

    sc.pp.filter_genes(adata, min_cells=min_cells)

    logger.info(
        f"Genes detected in >= {min_cells} cells: {adata.n_vars:,} / "
        f"{n_genes_before:,} ({adata.n_vars/n_genes_before*100:.1f}%)"
    )

    return adata
