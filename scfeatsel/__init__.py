"""
scfeatsel: Unsupervised Feature Selection for scRNA-seq
=======================================================

Feature selection methods for single-cell RNA sequencing data and a
walkthrough comparing them against a reference list of differentially
expressed genes.

Modules:
--------
- data: Loading expression data and DE reference tables
- cleaning: Cell/gene filtering and normalization
- hvg: Technical noise fit (Brennecke) and scanpy HVG baseline
- dropout: Michaelis-Menten dropout model (M3Drop)
- nbumi: Depth-adjusted negative binomial model (DANB)
- correlation: Correlated expression scores
- pca: PCA loading scores
- evaluation: Precision, overlap, heatmap clusters and markers
- visualization: Plots for every method
- pipeline: The complete walkthrough
- utils: Helper functions and logging

License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__description__ = "Unsupervised feature selection for scRNA-seq"

from . import utils
from . import data
from . import cleaning
from . import hvg
from . import dropout
from . import nbumi
from . import correlation
from . import pca
from . import evaluation
from . import visualization
from . import pipeline

__all__ = [
    "utils",
    "data",
    "cleaning",
    "hvg",
    "dropout",
    "nbumi",
    "correlation",
    "pca",
    "evaluation",
    "visualization",
    "pipeline",
]
