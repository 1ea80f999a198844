#!/usr/bin/env python
"""
Feature selection walkthrough
Loads the expression data and DE reference, runs every feature selection
method and compares the selected genes against the reference.

Usage: python run_feature_selection.py [config/feature_selection.yaml]
"""

import sys
from pathlib import Path

from scfeatsel import data, utils
from scfeatsel.pipeline import feature_selection_pipeline


def main(config_path: str = "config/feature_selection.yaml") -> int:
    print("=" * 60)
    print("Unsupervised Feature Selection Walkthrough")
    print("=" * 60)
    print()

    # Step 1: Configuration
    print("[Step 1] Loading configuration...")
    config = utils.load_config(config_path)
    data_params = config['data']
    print(f"✓ Configuration loaded from {config_path}")

    # Step 2: Seeds and logging
    print("\n[Step 2] Setting random seeds and logging...")
    utils.set_random_seeds(config.get('random_seed', 42))
    log_params = config.get('logging', {})
    logger = utils.setup_logging(
        log_file=log_params.get('file'),
        log_level=log_params.get('level', 'INFO')
    )
    run_id = utils.get_timestamp()
    logger.info(f"Feature selection run {run_id} with config {config_path}")
    print(f"✓ Logging configured (run {run_id})")

    # Step 3: Inputs
    print("\n[Step 3] Loading expression data and DE reference...")
    adata = data.load_expression(data_params['expression_path'], logger=logger)
    de_table = data.load_de_table(
        data_params['de_table_path'],
        gene_column=data_params.get('de_gene_column'),
        q_column=data_params.get('de_q_column'),
        q_threshold=data_params.get('de_q_threshold'),
        logger=logger
    )
    de_genes = data.get_de_genes(de_table)
    labels = data.get_cell_labels(adata, data_params['label_key'])
    print(f"✓ {adata.n_obs:,} cells x {adata.n_vars:,} genes, "
          f"{labels.nunique()} cell types")
    print(f"✓ {len(de_genes):,} reference DE genes")

    # Step 4: Feature selection
    print("\n[Step 4] Running feature selection methods...")
    output_dir = Path(config.get('output', {}).get('dir', 'results'))
    result = feature_selection_pipeline(
        adata,
        config,
        de_genes=de_genes,
        output_dir=output_dir,
        logger=logger
    )

    # Summary
    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    for method, genes in result.gene_sets.items():
        print(f"  {method:<12} {len(genes):>6,} genes")

    if result.comparison is not None:
        print("\nPrecision against the DE reference:")
        print(result.comparison.to_string(float_format=lambda v: f"{v:.3f}"))

    print(f"\nCleaned data: {output_dir / 'cleaned.h5ad'}")
    print(f"Tables: {output_dir / 'tables'}")
    print(f"Figures: {output_dir / 'figures'} ({len(result.figures)} files)")
    print("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
