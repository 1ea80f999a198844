"""
Evaluation Module
=================

Compares the gene sets of different feature selection methods:
- Precision against a reference list of differentially expressed genes
- Pairwise overlap (Jaccard index) between methods
- Hierarchical clustering of cells on a gene set (heatmap clusters)
- Marker genes per group scored by AUC

"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import anndata as ad
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.stats import mannwhitneyu

from .utils import setup_logging, get_expression_matrix


def top_genes(table: pd.DataFrame, ntop: Optional[int] = None) -> List[str]:
    """First `ntop` gene names of a ranked table (all genes if None)."""
    genes = list(table.index.astype(str))
    return genes if ntop is None else genes[:ntop]


def precision(selected: Iterable[str], reference: Iterable[str]) -> float:
    """
    Fraction of selected genes found in the reference set.

    Examples
    --------
    >>> precision(['A', 'B', 'C', 'D'], ['A', 'C', 'X'])
    0.5
    """
    selected = set(selected)
    if not selected:
        return 0.0
    return len(selected & set(reference)) / len(selected)


def compare_methods(
    gene_sets: Dict[str, Sequence[str]],
    reference: Iterable[str],
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Precision of each method's gene set against a reference DE list.

    Parameters
    ----------
    gene_sets : dict
        Method name -> selected genes
    reference : iterable of str
        Reference DE genes
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        n_selected, n_in_reference and precision per method, sorted by
        precision descending

    Examples
    --------
    >>> comparison = compare_methods(
    ...     {'M3Drop': m3drop_genes, 'HVG': hvg_genes},
    ...     de_genes
    ... )
    """
    if logger is None:
        logger = setup_logging()

    reference = set(reference)

    rows = []
    for method, genes in gene_sets.items():
        genes = set(genes)
        rows.append({
            'method': method,
            'n_selected': len(genes),
            'n_in_reference': len(genes & reference),
            'precision': precision(genes, reference),
        })

    comparison = pd.DataFrame(
        rows, columns=['method', 'n_selected', 'n_in_reference', 'precision']
    ).set_index('method').sort_values('precision', ascending=False)

    logger.info(f"Precision against {len(reference):,} reference DE genes:")
    for method, row in comparison.iterrows():
        logger.info(
            f"  {method}: {row['precision']:.3f} "
            f"({row['n_in_reference']:,} / {row['n_selected']:,})"
        )

    return comparison


def overlap_matrix(gene_sets: Dict[str, Sequence[str]]) -> pd.DataFrame:
    """Pairwise Jaccard index between gene sets (1 on the diagonal)."""
    methods = list(gene_sets)
    sets = {m: set(gene_sets[m]) for m in methods}

    matrix = pd.DataFrame(np.eye(len(methods)), index=methods, columns=methods)
    for i, a in enumerate(methods):
        for b in methods[i + 1:]:
            union = sets[a] | sets[b]
            jaccard = len(sets[a] & sets[b]) / len(union) if union else 0.0
            matrix.loc[a, b] = jaccard
            matrix.loc[b, a] = jaccard

    return matrix


def _log_expression(
    adata: ad.AnnData,
    genes: Sequence[str],
    layer: Optional[str] = None
) -> np.ndarray:
    genes_in_data = [g for g in genes if g in adata.var_names]
    if not genes_in_data:
        raise ValueError("None of the requested genes are present in the data")

    X = get_expression_matrix(adata[:, genes_in_data], layer=layer)
    return np.log2(X + 1)


def get_heatmap_clusters(
    adata: ad.AnnData,
    genes: Sequence[str],
    k: int,
    layer: Optional[str] = None
) -> pd.Series:
    """
    Cluster cells hierarchically on the log-expression of `genes`.

    Parameters
    ----------
    adata : AnnData
        Normalized expression, cells x genes
    genes : sequence of str
        Genes used for clustering (missing genes are ignored)
    k : int
        Number of clusters
    layer : str, optional
        Layer to use instead of `adata.X`

    Returns
    -------
    pd.Series
        Cluster id (1..k) per cell

    Examples
    --------
    >>> clusters = get_heatmap_clusters(adata, m3drop_genes, k=10)
    >>> pd.crosstab(clusters, adata.obs['cell_type2'])
    """
    if k < 1:
        raise ValueError("k must be at least 1")

    expr = _log_expression(adata, genes, layer=layer)
    tree = linkage(expr, method='ward')
    clusters = fcluster(tree, t=k, criterion='maxclust')

    return pd.Series(clusters, index=adata.obs_names, name='heatmap_cluster')


def get_markers(
    adata: ad.AnnData,
    groupby: str,
    genes: Optional[Sequence[str]] = None,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Score each gene as a marker of the group where it is most expressed.

    The AUC compares that group with all other cells; the p-value is from
    a one-sided Mann-Whitney U test.

    Parameters
    ----------
    adata : AnnData
        Normalized expression, cells x genes
    groupby : str
        Column of .obs with group labels
    genes : sequence of str, optional
        Genes to score; all genes when None
    layer : str, optional
        Layer to use instead of `adata.X`
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Columns group, auc, p_value indexed by gene, sorted by AUC

    Examples
    --------
    >>> markers = get_markers(adata, groupby='cell_type2', genes=m3drop_genes)
    """
    if logger is None:
        logger = setup_logging()

    if groupby not in adata.obs.columns:
        raise KeyError(f"Group column '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].astype(str).to_numpy()
    groups = np.unique(labels)
    if len(groups) < 2:
        raise ValueError("At least 2 groups are required to find markers")

    if genes is None:
        genes = list(adata.var_names)
    genes = [g for g in genes if g in adata.var_names]

    X = get_expression_matrix(adata[:, genes], layer=layer)

    logger.info(f"Scoring {len(genes):,} genes as markers of '{groupby}'...")

    group_means = np.vstack([X[labels == g].mean(axis=0) for g in groups])
    best_group = np.argmax(group_means, axis=0)

    aucs = np.empty(len(genes))
    pvals = np.empty(len(genes))
    for j in range(len(genes)):
        in_group = labels == groups[best_group[j]]
        inside, outside = X[in_group, j], X[~in_group, j]
        statistic, pvalue = mannwhitneyu(inside, outside, alternative='greater')
        aucs[j] = statistic / (len(inside) * len(outside))
        pvals[j] = pvalue

    markers = pd.DataFrame(
        {'group': groups[best_group], 'auc': aucs, 'p_value': pvals},
        index=pd.Index(genes, name='gene')
    ).sort_values('auc', ascending=False)

    return markers
