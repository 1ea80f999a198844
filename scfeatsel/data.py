"""
Data Loading Module
===================

This module reads the two inputs of the feature selection walkthrough and
writes its per-gene result tables:
- load_expression: expression counts (H5AD or delimited genes x cells table)
- load_de_table / get_de_genes: reference differential expression results
- get_cell_labels: cell-type labels aligned with the cells
- save_gene_table: write a ranked gene table

"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import anndata as ad

from .utils import setup_logging, ensure_dir


# Column separators for delimited files, keyed by suffix (compression removed)
DELIMITERS = {
    '.csv': ',',
    '.tsv': '\t',
    '.txt': r'\s+',
}


def _table_suffix(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] in ('.gz', '.bz2', '.zip', '.xz'):
        suffixes = suffixes[:-1]
    return suffixes[-1] if suffixes else ''


def _read_delimited(path: Path, **kwargs) -> pd.DataFrame:
    suffix = _table_suffix(path)
    if suffix not in DELIMITERS:
        raise ValueError(
            f"Unsupported table format '{suffix}' for {path}. "
            f"Use one of: {', '.join(sorted(DELIMITERS))}"
        )
    sep = DELIMITERS[suffix]
    engine = 'python' if sep == r'\s+' else 'c'
    return pd.read_csv(path, sep=sep, engine=engine, **kwargs)


def load_expression(
    path: Union[str, Path],
    transpose: Optional[bool] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Load an expression count matrix as AnnData (cells x genes).

    H5AD files are read as stored. Delimited tables are expected to be
    genes x cells with gene names in the first column and are transposed,
    unless `transpose=False`.

    Parameters
    ----------
    path : str or Path
        Path to a .h5ad, .csv, .tsv or .txt file (optionally compressed)
    transpose : bool, optional
        Whether to transpose the matrix after reading. Defaults to False
        for H5AD and True for delimited tables.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Expression data with unique cell and gene names

    Examples
    --------
    >>> adata = load_expression("data/deng/deng-reads.h5ad", logger=logger)
    >>> print(adata.shape)
    """
    if logger is None:
        logger = setup_logging()

    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Expression file not found: {path}")

    logger.info(f"Loading expression data: {path}")

    if path.suffix.lower() == '.h5ad':
        adata = ad.read_h5ad(path)
        if transpose:
            adata = adata.T.copy()
    else:
        table = _read_delimited(path, index_col=0)
        table.index = table.index.astype(str)
        table.columns = table.columns.astype(str)

        if transpose is None or transpose:
            table = table.T

        adata = ad.AnnData(
            X=table.to_numpy(dtype=np.float64),
            obs=pd.DataFrame(index=table.index),
            var=pd.DataFrame(index=table.columns)
        )

    adata.obs_names_make_unique()
    adata.var_names_make_unique()

    logger.info(f"Loaded {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    return adata


def load_de_table(
    path: Union[str, Path],
    gene_column: Optional[str] = None,
    q_column: Optional[str] = None,
    q_threshold: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Load a precomputed differential expression result table.

    Parameters
    ----------
    path : str or Path
        Path to a delimited DE table
    gene_column : str, optional
        Column holding gene names. If None the first column is the index.
    q_column : str, optional
        Column with adjusted p-values used for filtering
    q_threshold : float, optional
        Keep only rows with `q_column` below this value
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        DE table indexed by gene name

    Examples
    --------
    >>> de_table = load_de_table("data/deng/deng_DE.csv", gene_column="Gene")
    >>> de_genes = get_de_genes(de_table)
    """
    if logger is None:
        logger = setup_logging()

    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"DE table not found: {path}")

    logger.info(f"Loading DE reference table: {path}")

    if gene_column is None:
        table = _read_delimited(path, index_col=0)
    else:
        table = _read_delimited(path)
        if gene_column not in table.columns:
            raise KeyError(
                f"Gene column '{gene_column}' not found in DE table. "
                f"Available: {', '.join(map(str, table.columns))}"
            )
        table = table.set_index(gene_column)

    table.index = table.index.astype(str)
    table.index.name = 'gene'

    if q_column is not None and q_threshold is not None:
        if q_column not in table.columns:
            raise KeyError(f"Q-value column '{q_column}' not found in DE table")
        n_before = len(table)
        table = table[table[q_column] < q_threshold]
        logger.info(
            f"Kept {len(table):,} / {n_before:,} DE rows "
            f"with {q_column} < {q_threshold}"
        )

    logger.info(f"DE table contains {table.index.nunique():,} unique genes")

    return table


def get_de_genes(de_table: pd.DataFrame) -> List[str]:
    """Unique reference DE gene names, in table order."""
    return list(pd.unique(de_table.index.astype(str)))


def get_cell_labels(adata: ad.AnnData, label_key: str) -> pd.Series:
    """
    Cell-type labels aligned positionally with the cells of `adata`.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    label_key : str
        Column of `adata.obs` with the labels

    Returns
    -------
    pd.Series
        Labels as strings, indexed by cell name
    """
    if label_key not in adata.obs.columns:
        raise KeyError(
            f"Label column '{label_key}' not found in adata.obs. "
            f"Available: {', '.join(adata.obs.columns)}"
        )
    return adata.obs[label_key].astype(str)


def save_gene_table(
    table: pd.DataFrame,
    output_path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Save a per-gene result table to CSV or TSV (chosen by suffix).

    Parameters
    ----------
    table : pd.DataFrame
        Ranked gene table indexed by gene name
    output_path : str or Path
        Output file path
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Path written

    Examples
    --------
    >>> save_gene_table(m3drop_table, Path("results/tables/m3drop_genes.csv"))
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    sep = '\t' if _table_suffix(output_path) in ('.tsv', '.txt') else ','
    table.to_csv(output_path, sep=sep, index_label='gene')

    logger.info(f"Gene table saved to: {output_path} ({len(table):,} genes)")

    return output_path
