"""
WT vs KO single-cell RNA-seq analysis utilities
"""

__version__ = "0.1.0"
