"""
Feature Selection Pipeline
==========================

Runs the full walkthrough on one dataset:
1. Clean and normalize the data
2. Highly variable genes (technical noise fit)
3. Dropout-based selection (Michaelis-Menten)
4. Depth-adjusted negative binomial selection
5. Correlated expression
6. PCA loadings
7. scanpy HVG baseline (optional)
8. Comparison against a reference DE list, figures and tables

"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd
import anndata as ad

from .cleaning import clean_data, convert_to_integer, spike_in_mask
from .correlation import correlation_scores
from .data import save_gene_table
from .dropout import m3drop_feature_selection
from .evaluation import compare_methods, overlap_matrix, top_genes
from .hvg import brennecke_variable_genes, scanpy_variable_genes
from .nbumi import (
    NBumiFit,
    check_fit,
    fit_dispersion_vs_mean,
    fit_nbumi_model,
    nbumi_feature_selection_dropouts,
)
from .pca import pca_loading_scores
from .utils import (
    setup_logging,
    log_memory_usage,
    cleanup_memory,
    ensure_dir,
    save_checkpoint,
)
from . import visualization as viz


# Methods that rank every gene rather than testing each one
RANKED_METHODS = ('Correlation', 'PCA', 'scanpy')


@dataclass
class FeatureSelectionResult:
    """Outputs of feature_selection_pipeline."""

    adata: ad.AnnData
    tables: Dict[str, pd.DataFrame]
    gene_sets: Dict[str, List[str]]
    overlap: pd.DataFrame
    comparison: Optional[pd.DataFrame] = None
    nbumi_fit: Optional[NBumiFit] = None
    figures: List[Path] = field(default_factory=list)


def select_gene_sets(
    tables: Dict[str, pd.DataFrame],
    ntop: int = 1500
) -> Dict[str, List[str]]:
    """
    Turn per-method tables into gene sets.

    Tested methods keep every significant gene; ranked methods keep their
    top `ntop` genes.
    """
    return {
        method: top_genes(table, ntop if method in RANKED_METHODS else None)
        for method, table in tables.items()
    }


def feature_selection_pipeline(
    adata: ad.AnnData,
    config: Dict[str, Any],
    de_genes: Optional[Sequence[str]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    logger: Optional[logging.Logger] = None
) -> FeatureSelectionResult:
    """
    Run every feature selection method and compare the results.

    Parameters
    ----------
    adata : AnnData
        Expression data, cells x genes (raw counts when
        `cleaning.is_counts` is true)
    config : dict
        Configuration from feature_selection.yaml
    de_genes : sequence of str, optional
        Reference DE genes for the precision comparison
    output_dir : str or Path, optional
        Directory for figures and tables; nothing is written when None
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    FeatureSelectionResult
        Cleaned data, per-method tables and gene sets, overlap and
        comparison

    Examples
    --------
    >>> config = load_config("config/feature_selection.yaml")
    >>> result = feature_selection_pipeline(adata, config, de_genes, "results")
    >>> print(result.comparison)
    """
    if logger is None:
        logger = setup_logging()

    logger.info("=" * 60)
    logger.info("Starting feature selection pipeline")
    logger.info("=" * 60)

    data_params = config.get('data', {})
    clean_params = config.get('cleaning', {})
    brennecke_params = config.get('brennecke', {})
    m3drop_params = config.get('m3drop', {})
    danb_params = config.get('danb', {})
    cor_params = config.get('correlation', {})
    pca_params = config.get('pca', {})
    scanpy_params = config.get('scanpy_hvg', {})
    eval_params = config.get('evaluation', {})
    output_params = config.get('output', {})

    label_key = data_params.get('label_key')
    spike_pattern = clean_params.get('spike_pattern', 'ercc')

    # Step 1: Clean
    cleaned = clean_data(
        adata,
        label_key=label_key,
        is_counts=clean_params.get('is_counts', True),
        min_detected_genes=clean_params.get('min_detected_genes', 100),
        pseudo_genes=clean_params.get('pseudo_genes'),
        spike_pattern=spike_pattern,
        logger=logger
    )

    tables: Dict[str, pd.DataFrame] = {}

    # Step 2: Technical noise / highly variable genes
    spikes = None
    if brennecke_params.get('use_spikes', False):
        spikes = spike_in_mask(cleaned, spike_pattern)
    tables['Brennecke'] = brennecke_variable_genes(
        cleaned,
        spikes=spikes,
        fdr=brennecke_params.get('fdr', 0.1),
        min_biol_disp=brennecke_params.get('min_biol_disp', 0.5),
        fit_mean_quantile=brennecke_params.get('fit_mean_quantile', 0.8),
        logger=logger
    )

    # Step 3: Michaelis-Menten dropouts
    tables['M3Drop'] = m3drop_feature_selection(
        cleaned,
        mt_method=m3drop_params.get('mt_method', 'bon'),
        mt_threshold=m3drop_params.get('mt_threshold', 0.05),
        logger=logger
    )

    # Step 4: Depth-adjusted negative binomial
    counts_layer = 'counts' if 'counts' in cleaned.layers else None
    counts = convert_to_integer(cleaned, layer=counts_layer, logger=logger)
    nbumi_fit = fit_nbumi_model(counts, logger=logger)
    nbumi_check = check_fit(nbumi_fit, logger=logger)
    coefficients = fit_dispersion_vs_mean(nbumi_fit, logger=logger)
    tables['DANB'] = nbumi_feature_selection_dropouts(
        nbumi_fit,
        ntop=danb_params.get('ntop'),
        method=danb_params.get('method', 'fdr'),
        qval_threshold=danb_params.get('qval_threshold', 0.05),
        logger=logger
    )
    del counts
    cleanup_memory(logger)

    # Step 5: Correlated expression
    tables['Correlation'] = correlation_scores(
        cleaned,
        direction=cor_params.get('direction', 'both'),
        chunk_size=cor_params.get('chunk_size', 1000),
        logger=logger
    )

    # Step 6: PCA loadings
    tables['PCA'] = pca_loading_scores(
        cleaned,
        components=pca_params.get('components', [0, 1]),
        n_comps=pca_params.get('n_comps'),
        logger=logger
    )

    # Step 7: scanpy baseline
    if scanpy_params.get('enabled', False):
        tables['scanpy'] = scanpy_variable_genes(
            cleaned,
            n_top_genes=scanpy_params.get('n_top_genes', 2000),
            flavor=scanpy_params.get('flavor', 'seurat'),
            batch_key=scanpy_params.get('batch_key'),
            logger=logger
        )

    # Step 8: Compare
    ntop = eval_params.get('ntop', 1500)
    gene_sets = select_gene_sets(tables, ntop=ntop)
    overlap = overlap_matrix(gene_sets)

    comparison = None
    if de_genes is not None:
        comparison = compare_methods(gene_sets, de_genes, logger=logger)
    else:
        logger.info("No reference DE genes given, skipping precision comparison")

    result = FeatureSelectionResult(
        adata=cleaned,
        tables=tables,
        gene_sets=gene_sets,
        overlap=overlap,
        comparison=comparison,
        nbumi_fit=nbumi_fit
    )

    if output_dir is not None:
        write_outputs(
            result,
            output_dir,
            nbumi_check=nbumi_check,
            coefficients=coefficients,
            label_key=label_key,
            figure_format=output_params.get('figure_format', 'pdf'),
            heatmap_genes=output_params.get('heatmap_genes', 100),
            logger=logger
        )

    logger.info("=" * 60)
    logger.info("Feature selection pipeline complete")
    logger.info("=" * 60)

    log_memory_usage(logger)

    return result


def write_outputs(
    result: FeatureSelectionResult,
    output_dir: Union[str, Path],
    nbumi_check: Optional[dict] = None,
    coefficients: Optional[tuple] = None,
    label_key: Optional[str] = None,
    figure_format: str = 'pdf',
    heatmap_genes: int = 100,
    logger: Optional[logging.Logger] = None
) -> None:
    """Write per-method tables, the comparison and all figures."""
    if logger is None:
        logger = setup_logging()

    output_dir = Path(output_dir)
    tables_dir = ensure_dir(output_dir / 'tables')
    figures_dir = ensure_dir(output_dir / 'figures')

    for method, table in result.tables.items():
        save_gene_table(table, tables_dir / f"{method.lower()}_genes.csv", logger=logger)

    result.overlap.to_csv(tables_dir / 'method_overlap.csv')
    if result.comparison is not None:
        result.comparison.to_csv(tables_dir / 'method_comparison.csv')

    # Cleaned data with every per-gene statistic in .var
    save_checkpoint(result.adata, output_dir / 'cleaned.h5ad', logger=logger)

    def figure(name: str) -> Path:
        path = figures_dir / f"{name}.{figure_format}"
        result.figures.append(path)
        return path

    adata = result.adata

    viz.plot_mean_cv2(adata, figure('brennecke_mean_cv2'), logger=logger)
    viz.plot_michaelis_menten_curves(figure('michaelis_menten_curves'), logger=logger)
    viz.plot_dropout_fit(adata, figure('m3drop_dropouts'), logger=logger)

    if result.nbumi_fit is not None and nbumi_check is not None and coefficients is not None:
        viz.plot_nbumi_fit(
            result.nbumi_fit, nbumi_check, coefficients,
            figure('danb_fit'), logger=logger
        )

    viz.plot_pca_loadings(
        result.tables['PCA'], figure('pca_loadings'),
        ntop=len(result.gene_sets['PCA']), logger=logger
    )

    for method, genes in result.gene_sets.items():
        viz.plot_expression_heatmap(
            adata, genes[:heatmap_genes],
            figure(f"heatmap_{method.lower()}"),
            label_key=label_key, logger=logger
        )

    if result.comparison is not None:
        viz.plot_method_comparison(
            result.comparison, result.overlap,
            figure('method_comparison'), logger=logger
        )

    # Heatmaps are skipped when no selected gene is plottable
    result.figures[:] = [path for path in result.figures if path.exists()]
