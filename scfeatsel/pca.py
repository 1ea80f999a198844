"""
PCA Loading Module
==================

This module ranks genes by their contribution to the leading principal
components:
- run_pca: scanpy PCA with variance-explained logging
- pca_loading_scores: sum of absolute loadings over chosen components

"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

from .utils import setup_logging, get_expression_matrix


def run_pca(
    adata: ad.AnnData,
    n_comps: int = 50,
    use_highly_variable: bool = False,
    random_state: int = 42,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Perform Principal Component Analysis (PCA).

    Parameters
    ----------
    adata : AnnData
        Input AnnData (log-normalized)
    n_comps : int, default 50
        Number of principal components to compute. Reduced when the data
        has fewer cells or genes.
    use_highly_variable : bool, default False
        Whether to use only genes flagged in `.var['highly_variable']`
    random_state : int, default 42
        Seed for the SVD solver
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        AnnData with PCA in .obsm['X_pca'] and loadings in .varm['PCs']

    Examples
    --------
    >>> adata = run_pca(adata, n_comps=50, logger=logger)
    >>> print(adata.obsm['X_pca'].shape)  # (n_cells, 50)
    """
    if logger is None:
        logger = setup_logging()

    mask_var = None
    if use_highly_variable:
        if 'highly_variable' not in adata.var.columns:
            logger.warning("No HVGs selected. Using all genes for PCA.")
        else:
            mask_var = 'highly_variable'
            logger.info(
                f"Using {int(adata.var['highly_variable'].sum())} "
                f"highly variable genes for PCA"
            )

    max_comps = min(adata.n_obs, adata.n_vars) - 1
    if n_comps > max_comps:
        logger.warning(
            f"Requested {n_comps} components but data supports {max_comps}"
        )
        n_comps = max_comps

    logger.info(f"Computing PCA ({n_comps} components)...")

    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var=mask_var,
        svd_solver='arpack',
        random_state=random_state
    )

    var_ratio = adata.uns['pca']['variance_ratio']
    cumsum = np.cumsum(var_ratio)

    logger.info(
        f"Variance explained by first {n_comps} PCs: {cumsum[-1]*100:.1f}%"
    )
    for k in (2, 10, 20):
        if k < n_comps:
            logger.info(f"  PC1-{k}: {cumsum[k - 1]*100:.1f}%")

    return adata


def pca_loading_scores(
    adata: ad.AnnData,
    components: Sequence[int] = (0, 1),
    n_comps: Optional[int] = None,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Score genes by the summed absolute loadings of chosen components.

    PCA runs on a copy of the data, log-transformed first unless it already
    looks log-transformed (max value < 20).

    Parameters
    ----------
    adata : AnnData
        Normalized expression, cells x genes
    components : sequence of int, default (0, 1)
        Zero-based components whose loadings are summed
    n_comps : int, optional
        Number of components to compute; defaults to the highest
        requested component + 1
    layer : str, optional
        Layer to use instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        All genes with 'score' and the loading of each chosen component
        ('PC1', 'PC2', ...), sorted by score descending. Scores are stored
        in `adata.var['pca_score']`.

    Examples
    --------
    >>> pca_table = pca_loading_scores(adata, components=(0, 1))
    >>> pca_genes = pca_table.index[:1500]
    """
    if logger is None:
        logger = setup_logging()

    components = list(components)
    if not components or min(components) < 0:
        raise ValueError("components must be a non-empty list of indices >= 0")

    if n_comps is None:
        n_comps = max(components) + 1
    if max(components) >= n_comps:
        raise ValueError(
            f"Component {max(components)} requested but only {n_comps} computed"
        )

    work = ad.AnnData(
        X=get_expression_matrix(adata, layer=layer),
        obs=pd.DataFrame(index=adata.obs_names),
        var=pd.DataFrame(index=adata.var_names)
    )
    if work.X.max() >= 20:
        sc.pp.log1p(work)

    work = run_pca(work, n_comps=n_comps, logger=logger)
    loadings = np.asarray(work.varm['PCs'])

    if max(components) >= loadings.shape[1]:
        raise ValueError(
            f"Component {max(components)} requested but data supports "
            f"{loadings.shape[1]} components"
        )

    selected = loadings[:, components]
    score = np.abs(selected).sum(axis=1)

    adata.var['pca_score'] = score
    adata.uns['pca_loading'] = {
        'components': np.asarray(components),
        'variance_ratio': np.asarray(work.uns['pca']['variance_ratio']),
    }

    table = pd.DataFrame(
        {'score': score},
        index=pd.Index(adata.var_names, name='gene')
    )
    for idx, component in enumerate(components):
        table[f'PC{component + 1}'] = selected[:, idx]

    table = table.sort_values('score', ascending=False)

    logger.info(
        f"PCA loading scores over components "
        f"{', '.join(f'PC{c + 1}' for c in components)}"
    )

    return table
