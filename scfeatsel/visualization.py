"""
Visualization Module
====================

Plotting functions for the feature selection walkthrough:
- Mean vs CV^2 with the technical noise fit
- Michaelis-Menten curves and the fitted dropout model
- DANB fit diagnostics
- PCA loadings
- Expression heatmaps of selected genes
- Method comparison against a DE reference

"""

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import anndata as ad

from .dropout import michaelis_menten
from .nbumi import NBumiFit
from .utils import setup_logging, ensure_dir, get_expression_matrix


PathLike = Union[str, Path]

SELECTED_COLOR = '#E74C3C'
BACKGROUND_COLOR = '#AAAAAA'
FIT_COLOR = '#3498DB'


def _prepare_output(output_path: PathLike) -> Path:
    output_path = Path(output_path)
    ensure_dir(output_path.parent)
    return output_path


def _save(fig, output_path: Path, logger: logging.Logger, what: str) -> None:
    fig.tight_layout()
    fig.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"{what} saved to: {output_path}")


def plot_mean_cv2(
    adata: ad.AnnData,
    output_path: PathLike,
    figsize: Tuple[int, int] = (7, 6),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot mean expression vs CV^2 with the technical noise curve.

    Requires brennecke_variable_genes to have been run on `adata`.

    Examples
    --------
    >>> brennecke_variable_genes(adata, fdr=0.01)
    >>> plot_mean_cv2(adata, Path("results/figures/brennecke.pdf"))
    """
    if logger is None:
        logger = setup_logging()

    if 'brennecke' not in adata.uns:
        raise KeyError("Run brennecke_variable_genes before plot_mean_cv2")

    output_path = _prepare_output(output_path)
    logger.info(f"Generating mean vs CV2 plot: {output_path}")

    fit = adata.uns['brennecke']
    var = adata.var.dropna(subset=['brennecke_mean', 'brennecke_cv2'])
    var = var[(var['brennecke_mean'] > 0) & (var['brennecke_cv2'] > 0)]
    hvg = var['brennecke_hvg'].to_numpy(dtype=bool)

    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(
        var.loc[~hvg, 'brennecke_mean'], var.loc[~hvg, 'brennecke_cv2'],
        c=BACKGROUND_COLOR, s=6, alpha=0.5, label=f"Other genes (n={int((~hvg).sum())})"
    )
    ax.scatter(
        var.loc[hvg, 'brennecke_mean'], var.loc[hvg, 'brennecke_cv2'],
        c=SELECTED_COLOR, s=8, alpha=0.7, label=f"Highly variable (n={int(hvg.sum())})"
    )

    grid = np.logspace(
        np.log10(var['brennecke_mean'].min()),
        np.log10(var['brennecke_mean'].max()),
        200
    )
    ax.plot(
        grid, fit['a0'] + fit['a1'] / grid,
        color=FIT_COLOR, linewidth=2, label='Technical noise fit'
    )
    min_biol_cv2 = fit['min_biol_disp'] ** 2
    ax.plot(
        grid, fit['a1'] / grid + fit['a0'] + min_biol_cv2,
        color=FIT_COLOR, linestyle='--', linewidth=1.5,
        label=f"Min. biological CV = {fit['min_biol_disp']}"
    )

    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('Mean expression', fontsize=12)
    ax.set_ylabel('Squared coefficient of variation (CV$^2$)', fontsize=12)
    ax.set_title('Technical noise fit (Brennecke)', fontsize=14)
    ax.legend(loc='lower left', frameon=True, fontsize=9)
    ax.grid(alpha=0.3, linestyle=':')

    _save(fig, output_path, logger, "Mean vs CV2 plot")


def plot_michaelis_menten_curves(
    output_path: PathLike,
    K_values: Sequence[float] = (0.5, 5, 49, 500),
    s_range: Tuple[float, float] = (1e-3, 1e3),
    figsize: Tuple[int, int] = (7, 5),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Illustrate the Michaelis-Menten dropout curve for several K.

    Examples
    --------
    >>> plot_michaelis_menten_curves(Path("results/figures/mm_curves.pdf"))
    """
    if logger is None:
        logger = setup_logging()

    output_path = _prepare_output(output_path)
    logger.info(f"Generating Michaelis-Menten curves: {output_path}")

    s = np.logspace(np.log10(s_range[0]), np.log10(s_range[1]), 600)
    palette = sns.color_palette('viridis', len(K_values))

    fig, ax = plt.subplots(figsize=figsize)
    for K, color in zip(K_values, palette):
        ax.plot(s, michaelis_menten(s, K), color=color, linewidth=2, label=f"K = {K:g}")
        ax.axvline(K, color=color, linestyle=':', linewidth=1)

    ax.set_xscale('log')
    ax.set_xlabel('Mean expression (S)', fontsize=12)
    ax.set_ylabel('Dropout rate (P)', fontsize=12)
    ax.set_title('P = 1 - S / (K + S)', fontsize=14)
    ax.legend(loc='upper right', frameon=True, fontsize=10)
    ax.grid(alpha=0.3, linestyle=':')

    _save(fig, output_path, logger, "Michaelis-Menten curves")


def plot_dropout_fit(
    adata: ad.AnnData,
    output_path: PathLike,
    figsize: Tuple[int, int] = (7, 6),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot mean expression vs dropout rate with the fitted curve.

    Requires m3drop_feature_selection to have been run on `adata`.
    """
    if logger is None:
        logger = setup_logging()

    if 'm3drop' not in adata.uns:
        raise KeyError("Run m3drop_feature_selection before plot_dropout_fit")

    output_path = _prepare_output(output_path)
    logger.info(f"Generating dropout plot: {output_path}")

    K = adata.uns['m3drop']['K']
    var = adata.var[adata.var['m3drop_mean'] > 0]
    selected = var['m3drop_selected'].to_numpy(dtype=bool)

    fig, ax = plt.subplots(figsize=figsize)

    ax.scatter(
        var.loc[~selected, 'm3drop_mean'], var.loc[~selected, 'm3drop_dropout'],
        c=BACKGROUND_COLOR, s=6, alpha=0.5, label=f"Other genes (n={int((~selected).sum())})"
    )
    ax.scatter(
        var.loc[selected, 'm3drop_mean'], var.loc[selected, 'm3drop_dropout'],
        c=SELECTED_COLOR, s=8, alpha=0.7, label=f"Excess dropouts (n={int(selected.sum())})"
    )

    grid = np.logspace(
        np.log10(var['m3drop_mean'].min()),
        np.log10(var['m3drop_mean'].max()),
        300
    )
    ax.plot(
        grid, michaelis_menten(grid, K),
        color=FIT_COLOR, linewidth=2, label=f"Michaelis-Menten fit (K = {K:.3g})"
    )

    ax.set_xscale('log')
    ax.set_xlabel('Mean expression', fontsize=12)
    ax.set_ylabel('Dropout rate', fontsize=12)
    ax.set_title('Dropout-based feature selection (M3Drop)', fontsize=14)
    ax.legend(loc='lower left', frameon=True, fontsize=9)
    ax.grid(alpha=0.3, linestyle=':')

    _save(fig, output_path, logger, "Dropout plot")


def plot_nbumi_fit(
    fit: NBumiFit,
    check: dict,
    coefficients: Tuple[float, float],
    output_path: PathLike,
    figsize: Tuple[int, int] = (13, 5),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot DANB diagnostics: observed vs expected dropouts per gene, and the
    size vs mean trend.

    Parameters
    ----------
    fit : NBumiFit
        Output of fit_nbumi_model
    check : dict
        Output of check_fit
    coefficients : tuple of float
        Output of fit_dispersion_vs_mean
    output_path : str or Path
        Output file path
    """
    if logger is None:
        logger = setup_logging()

    output_path = _prepare_output(output_path)
    logger.info(f"Generating DANB fit plot: {output_path}")

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    expected = check['gene_expected'] / fit.n_cells
    observed = check['gene_observed'] / fit.n_cells
    axes[0].scatter(expected, observed, c=BACKGROUND_COLOR, s=6, alpha=0.6)
    axes[0].plot([0, 1], [0, 1], color=FIT_COLOR, linewidth=1.5, linestyle='--')
    axes[0].set_xlabel('Expected dropout rate', fontsize=12)
    axes[0].set_ylabel('Observed dropout rate', fontsize=12)
    axes[0].set_title(
        f"Dropouts per gene (error = {check['gene_error']:.3g})", fontsize=12
    )
    axes[0].grid(alpha=0.3, linestyle=':')

    means = fit.mean_expression
    use = (means > 0) & (fit.sizes < np.max(fit.sizes))
    axes[1].scatter(
        means[use], fit.sizes[use], c=BACKGROUND_COLOR, s=6, alpha=0.6
    )
    if use.any():
        grid = np.logspace(np.log10(means[use].min()), np.log10(means[use].max()), 200)
        intercept, slope = coefficients
        axes[1].plot(
            grid, np.exp(intercept + slope * np.log(grid)),
            color=FIT_COLOR, linewidth=2,
            label=f"log(size) = {intercept:.2f} + {slope:.2f} log(mean)"
        )
        axes[1].legend(loc='upper left', frameon=True, fontsize=9)
    axes[1].set_xscale('log')
    axes[1].set_yscale('log')
    axes[1].set_xlabel('Mean expression', fontsize=12)
    axes[1].set_ylabel('Size (dispersion)', fontsize=12)
    axes[1].set_title('Dispersion vs mean', fontsize=12)
    axes[1].grid(alpha=0.3, linestyle=':')

    _save(fig, output_path, logger, "DANB fit plot")


def plot_pca_loadings(
    pca_table: pd.DataFrame,
    output_path: PathLike,
    ntop: int = 1500,
    figsize: Tuple[int, int] = (7, 6),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Scatter the loadings of the first two scored components, highlighting
    the top `ntop` genes by score.
    """
    if logger is None:
        logger = setup_logging()

    output_path = _prepare_output(output_path)
    logger.info(f"Generating PCA loadings plot: {output_path}")

    pc_columns = [c for c in pca_table.columns if c.startswith('PC')]
    top = np.zeros(len(pca_table), dtype=bool)
    top[:ntop] = True

    fig, ax = plt.subplots(figsize=figsize)

    if len(pc_columns) >= 2:
        x, y = pc_columns[:2]
        ax.scatter(pca_table.loc[~top, x], pca_table.loc[~top, y],
                   c=BACKGROUND_COLOR, s=6, alpha=0.5, label='Other genes')
        ax.scatter(pca_table.loc[top, x], pca_table.loc[top, y],
                   c=SELECTED_COLOR, s=8, alpha=0.7, label=f"Top {int(top.sum())} genes")
        ax.set_xlabel(f"{x} loading", fontsize=12)
        ax.set_ylabel(f"{y} loading", fontsize=12)
    else:
        rank = np.arange(1, len(pca_table) + 1)
        ax.scatter(rank[~top], pca_table['score'][~top],
                   c=BACKGROUND_COLOR, s=6, alpha=0.5, label='Other genes')
        ax.scatter(rank[top], pca_table['score'][top],
                   c=SELECTED_COLOR, s=8, alpha=0.7, label=f"Top {int(top.sum())} genes")
        ax.set_xlabel('Gene rank', fontsize=12)
        ax.set_ylabel('Loading score', fontsize=12)

    ax.set_title('PCA loadings', fontsize=14)
    ax.legend(loc='best', frameon=True, fontsize=9)
    ax.grid(alpha=0.3, linestyle=':')

    _save(fig, output_path, logger, "PCA loadings plot")


def plot_expression_heatmap(
    adata: ad.AnnData,
    genes: Sequence[str],
    output_path: PathLike,
    label_key: Optional[str] = None,
    layer: Optional[str] = None,
    max_genes: int = 500,
    figsize: Tuple[int, int] = (10, 12),
    cmap: str = 'RdBu_r',
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Clustered heatmap of log-expression of selected genes across cells.

    Rows (genes) are z-scored; cells are annotated with their labels.

    Examples
    --------
    >>> plot_expression_heatmap(
    ...     adata, m3drop_table.index, Path("results/figures/heatmap_m3drop.pdf"),
    ...     label_key='cell_type2'
    ... )
    """
    if logger is None:
        logger = setup_logging()

    output_path = _prepare_output(output_path)
    logger.info(f"Generating heatmap: {output_path}")

    genes = list(genes)
    genes_in_data = [g for g in genes if g in adata.var_names]

    if len(genes_in_data) < len(genes):
        missing = [g for g in genes if g not in adata.var_names]
        logger.warning(
            f"{len(missing)} genes not found in data: {', '.join(missing[:5])}"
        )

    if len(genes_in_data) == 0:
        logger.error("No selected genes found in data. Skipping heatmap.")
        return

    if len(genes_in_data) > max_genes:
        logger.info(f"Plotting the first {max_genes} of {len(genes_in_data)} genes")
        genes_in_data = genes_in_data[:max_genes]

    expr = np.log2(get_expression_matrix(adata[:, genes_in_data], layer=layer) + 1)
    frame = pd.DataFrame(expr.T, index=genes_in_data, columns=adata.obs_names)

    # Constant genes cannot be z-scored
    frame = frame[frame.std(axis=1) > 0]
    if frame.shape[0] < 2:
        logger.error("Fewer than 2 variable genes to cluster. Skipping heatmap.")
        return

    col_colors = None
    if label_key is not None and label_key in adata.obs.columns:
        labels = adata.obs[label_key].astype(str)
        categories = sorted(labels.unique())
        lut = dict(zip(categories, sns.color_palette('tab20', len(categories))))
        col_colors = labels.map(lut)

    grid = sns.clustermap(
        frame,
        z_score=0,
        cmap=cmap,
        center=0,
        col_colors=col_colors,
        xticklabels=False,
        yticklabels=frame.shape[0] <= 60,
        figsize=figsize
    )

    if col_colors is not None:
        for label, color in lut.items():
            grid.ax_col_dendrogram.bar(0, 0, color=color, label=label, linewidth=0)
        grid.ax_col_dendrogram.legend(loc='center', ncol=4, fontsize=8, frameon=False)

    grid.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(grid.figure)

    logger.info(f"Heatmap saved to: {output_path}")


def plot_method_comparison(
    comparison: pd.DataFrame,
    overlap: pd.DataFrame,
    output_path: PathLike,
    figsize: Tuple[int, int] = (13, 5),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Plot precision per method and the Jaccard overlap between methods.

    Parameters
    ----------
    comparison : pd.DataFrame
        Output of compare_methods
    overlap : pd.DataFrame
        Output of overlap_matrix
    output_path : str or Path
        Output file path
    """
    if logger is None:
        logger = setup_logging()

    output_path = _prepare_output(output_path)
    logger.info(f"Generating method comparison plot: {output_path}")

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    comparison['precision'].plot(
        kind='bar', ax=axes[0], color=FIT_COLOR, edgecolor='black'
    )
    axes[0].set_ylim(0, 1)
    axes[0].set_ylabel('Precision vs DE reference', fontsize=12)
    axes[0].set_xlabel('Method', fontsize=12)
    axes[0].set_title('Precision of selected genes', fontsize=12)
    axes[0].set_xticklabels(axes[0].get_xticklabels(), rotation=30, ha='right')
    axes[0].grid(alpha=0.3, axis='y')

    sns.heatmap(
        overlap, ax=axes[1], vmin=0, vmax=1, cmap='viridis',
        annot=True, fmt='.2f', square=True, cbar_kws={'label': 'Jaccard index'}
    )
    axes[1].set_title('Overlap between methods', fontsize=12)

    _save(fig, output_path, logger, "Method comparison plot")
