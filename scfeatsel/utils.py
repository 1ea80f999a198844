"""
Utility Functions and Logging Configuration
============================================

This module provides helper functions for:
- Logging setup and management
- Configuration file loading
- Memory monitoring
- Dense expression matrix access
- Random seed setting for reproducibility

"""

import logging
import os
import sys
import gc
import pickle
import random
from pathlib import Path
from typing import Dict, Any, Optional, Union
from datetime import datetime

import yaml
import psutil
import numpy as np
import scipy.sparse as sp
import anndata as ad


def setup_logging(
    log_file: Optional[str] = None,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    Configure logging for the feature selection walkthrough.

    Parameters
    ----------
    log_file : str, optional
        Path to log file. If None, logs only to console.
    log_level : str, default "INFO"
        Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    console_output : bool, default True
        Whether to output logs to console

    Returns
    -------
    logging.Logger
        Configured logger instance

    Examples
    --------
    >>> logger = setup_logging(log_file="results/reports/feature_selection.log")
    >>> logger.info("Walkthrough started")
    """
    logger = logging.getLogger("scfeatsel")
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file is not None:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    config_path : str or Path
        Path to YAML configuration file

    Returns
    -------
    dict
        Configuration dictionary

    Examples
    --------
    >>> config = load_config("config/feature_selection.yaml")
    >>> print(config['m3drop']['mt_threshold'])
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ValueError(
            f"Configuration file must contain a mapping: {config_path}"
        )

    return config


def set_random_seeds(seed: int = 42) -> None:
    """
    Set random seeds for reproducibility (Python random, NumPy, hash seed).

    Parameters
    ----------
    seed : int, default 42
        Random seed value
    """
    random.seed(seed)
    np.random.seed(seed)

    os.environ['PYTHONHASHSEED'] = str(seed)


def get_memory_usage() -> Dict[str, float]:
    """
    Get current memory usage statistics.

    Returns
    -------
    dict
        Dictionary with memory statistics:
        - ram_used_gb: RAM used in GB
        - ram_available_gb: Available RAM in GB
        - ram_percent: RAM usage percentage
    """
    memory = psutil.virtual_memory()
    return {
        'ram_used_gb': memory.used / (1024 ** 3),
        'ram_available_gb': memory.available / (1024 ** 3),
        'ram_percent': memory.percent
    }


def log_memory_usage(logger: logging.Logger) -> None:
    """Log current memory usage."""
    mem = get_memory_usage()

    logger.info(
        f"Memory usage - RAM: {mem['ram_used_gb']:.2f} GB "
        f"({mem['ram_percent']:.1f}%), "
        f"Available: {mem['ram_available_gb']:.2f} GB"
    )


def cleanup_memory(logger: Optional[logging.Logger] = None) -> None:
    """
    Perform garbage collection.

    Parameters
    ----------
    logger : logging.Logger, optional
        Logger instance for logging cleanup operations
    """
    gc.collect()

    if logger is not None:
        logger.debug("Memory cleanup performed (gc)")


def ensure_dir(path: Union[str, Path]) -> Path:
    """
    Create directory if it doesn't exist.

    Parameters
    ----------
    path : str or Path
        Directory path

    Returns
    -------
    Path
        Path object of the directory

    Examples
    --------
    >>> ensure_dir("results/figures")
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_timestamp(format: str = "%Y%m%d_%H%M%S") -> str:
    """Get current timestamp as string."""
    return datetime.now().strftime(format)


def get_expression_matrix(
    adata: ad.AnnData,
    layer: Optional[str] = None
) -> np.ndarray:
    """
    Return the expression values as a dense float array (cells x genes).

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    layer : str, optional
        Layer to read instead of `adata.X`

    Returns
    -------
    np.ndarray
        Dense float64 copy, safe to modify without touching `adata`

    Examples
    --------
    >>> X = get_expression_matrix(adata, layer='counts')
    >>> X.shape == (adata.n_obs, adata.n_vars)
    True
    """
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer not found in AnnData: {layer}")
        matrix = adata.layers[layer]
    else:
        matrix = adata.X

    if sp.issparse(matrix):
        matrix = matrix.toarray()

    return np.array(matrix, dtype=np.float64, copy=True)


def save_checkpoint(
    obj: Any,
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Save checkpoint file (AnnData as h5ad, anything else pickled).

    Parameters
    ----------
    obj : any
        Object to save (typically AnnData or dict)
    filepath : str or Path
        Path to save checkpoint
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> save_checkpoint(adata, "data/processed/cleaned.h5ad", logger)
    """
    filepath = Path(filepath)
    ensure_dir(filepath.parent)

    if hasattr(obj, 'write_h5ad'):
        obj.write_h5ad(filepath, compression='gzip')
    else:
        with open(filepath, 'wb') as f:
            pickle.dump(obj, f)

    if logger is not None:
        logger.info(f"Checkpoint saved: {filepath}")


def load_checkpoint(
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Any:
    """
    Load checkpoint file.

    Parameters
    ----------
    filepath : str or Path
        Path to checkpoint file
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    any
        Loaded object
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    if filepath.suffix == '.h5ad':
        obj = ad.read_h5ad(filepath)
    else:
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)

    if logger is not None:
        logger.info(f"Checkpoint loaded: {filepath}")

    return obj
